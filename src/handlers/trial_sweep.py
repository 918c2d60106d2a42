"""Lambda handler for the scheduled trial sweep (hourly EventBridge rule)."""

from typing import Any

from handlers.common import get_platform
from stackbox.core import configure_logging, get_logger

configure_logging(json_format=True)
logger = get_logger(__name__)


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Apply due commercial transitions to every trial and grace tenant."""
    report = get_platform().lifecycle.sweep()
    return {
        "evaluated": report.evaluated,
        "transitions": [
            {
                "tenant_id": outcome.tenant_id,
                "from": outcome.previous_status.value,
                "to": outcome.status.value,
                "actions": outcome.suspension_actions,
            }
            for outcome in report.transitions
        ],
        "failures": report.failures,
        "ran_at": report.ran_at.isoformat(),
    }
