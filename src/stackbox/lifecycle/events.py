"""Commercial status transition events for analytics consumers."""

import json
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from stackbox.core import get_logger
from stackbox.models import TransitionEvent

logger = get_logger(__name__)

EVENT_SOURCE = "stackbox.lifecycle"
DETAIL_TYPE = "TenantStatusTransition"


class EventPublisher(ABC):
    """Destination for TransitionEvents."""

    @abstractmethod
    def publish(self, event: TransitionEvent) -> None:
        """Publish one event. Implementations must not raise."""
        pass


class LoggingEventPublisher(EventPublisher):
    """Logs events and keeps the most recent ones in memory."""

    def __init__(self, max_events: int = 1000):
        self.events: deque[TransitionEvent] = deque(maxlen=max_events)

    def publish(self, event: TransitionEvent) -> None:
        self.events.append(event)
        logger.info(
            "tenant_status_transition",
            tenant_id=event.tenant_id,
            transition=event.name,
            plan_id=event.plan_id,
            reason=event.reason,
        )


class EventBridgePublisher(EventPublisher):
    """Puts events on an EventBridge bus."""

    def __init__(
        self,
        event_bus_name: str,
        events_client: Optional[Any] = None,
        region: Optional[str] = None,
    ):
        self.event_bus_name = event_bus_name
        self.region = region
        self._client = events_client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("events", region_name=self.region)
        return self._client

    def publish(self, event: TransitionEvent) -> None:
        entry = {
            "Source": EVENT_SOURCE,
            "DetailType": DETAIL_TYPE,
            "Detail": json.dumps(event.model_dump(mode="json") | {"transition": event.name}),
            "EventBusName": self.event_bus_name,
        }
        try:
            response = self.client.put_events(Entries=[entry])
        except (ClientError, BotoCoreError) as e:
            # Analytics delivery never blocks a status change
            logger.error(
                "transition_event_publish_failed",
                tenant_id=event.tenant_id,
                transition=event.name,
                error=str(e),
            )
            return
        if response.get("FailedEntryCount"):
            logger.error(
                "transition_event_rejected",
                tenant_id=event.tenant_id,
                transition=event.name,
                entries=response.get("Entries"),
            )
            return
        logger.info(
            "transition_event_published",
            tenant_id=event.tenant_id,
            transition=event.name,
            bus=self.event_bus_name,
        )
