"""Commercial lifecycle: trial state machine and transition events."""

from stackbox.lifecycle.events import (
    EventBridgePublisher,
    EventPublisher,
    LoggingEventPublisher,
)
from stackbox.lifecycle.trial import TrialLifecycleManager, next_status

__all__ = [
    "EventBridgePublisher",
    "EventPublisher",
    "LoggingEventPublisher",
    "TrialLifecycleManager",
    "next_status",
]
