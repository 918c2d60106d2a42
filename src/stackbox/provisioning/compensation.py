"""Compensating actions for partially completed pipeline runs."""

from dataclasses import dataclass, field
from typing import Callable

from botocore.exceptions import BotoCoreError, ClientError

from stackbox.core import get_logger
from stackbox.core.errors import StackBoxError

logger = get_logger(__name__)


@dataclass
class Compensation:
    """Undo action for one created resource.

    ``action`` returns True when the resource was cleaned up and False when
    it was deliberately left in place for an operator.
    """
    name: str
    action: Callable[[], bool]
    note: str = ""


@dataclass
class CompensationOutcome:
    compensated: list[str] = field(default_factory=list)
    pending_cleanup: list[str] = field(default_factory=list)


class CompensationLog:
    """Ordered record of what a pipeline run created.

    Resources that were never created never get an entry, so a rollback
    only touches what this run actually acquired.
    """

    def __init__(self):
        self._entries: list[Compensation] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self._entries]

    def register(self, name: str, action: Callable[[], bool], note: str = "") -> None:
        self._entries.append(Compensation(name=name, action=action, note=note))
        logger.debug("compensation_registered", compensation=name)

    def rollback(self) -> CompensationOutcome:
        """Run every compensation in reverse registration order.

        A failing compensation is logged and reported as pending cleanup;
        the remaining ones still run.
        """
        outcome = CompensationOutcome()
        for entry in reversed(self._entries):
            try:
                cleaned = entry.action()
            except (StackBoxError, ClientError, BotoCoreError, OSError) as e:
                logger.error("compensation_failed", compensation=entry.name, error=str(e))
                outcome.pending_cleanup.append(f"{entry.name}: {e}")
                continue

            if cleaned:
                outcome.compensated.append(entry.name)
                logger.info("compensation_applied", compensation=entry.name)
            else:
                label = f"{entry.name}: {entry.note}" if entry.note else entry.name
                outcome.pending_cleanup.append(label)
                logger.warning("compensation_deferred", compensation=entry.name, note=entry.note)
        self._entries.clear()
        return outcome
