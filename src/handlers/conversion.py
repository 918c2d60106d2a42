"""Lambda handler for the conversion-confirmed event.

Accepts an EventBridge event whose ``detail`` (or an API body) holds
``tenantId`` and ``planId``.
"""

import json
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from handlers.common import error_response, get_platform, parse_payload, response
from stackbox.core import configure_logging, get_logger
from stackbox.core.errors import InvalidTransitionError, TenantNotFoundError

configure_logging(json_format=True)
logger = get_logger(__name__)

MIGRATION_MARGIN = 30.0


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Mark a tenant paid and schedule its migration to dedicated compute."""
    try:
        payload = parse_payload(event)
    except (ValueError, json.JSONDecodeError) as e:
        return error_response(400, "invalid_request", str(e))

    tenant_id = payload.get("tenantId") or payload.get("tenant_id")
    plan_id = payload.get("planId") or payload.get("plan_id")
    if not tenant_id or not plan_id:
        return error_response(400, "invalid_request", "tenantId and planId are required")

    lifecycle = get_platform().lifecycle
    try:
        result = lifecycle.convert_to_paid(tenant_id, plan_id)
    except TenantNotFoundError as e:
        return error_response(404, "not_found", e.message)
    except InvalidTransitionError as e:
        return error_response(409, "invalid_transition", e.message)

    if result.migration_scheduled:
        # Lambda freezes background threads once the handler returns
        timeout = None
        if context is not None and hasattr(context, "get_remaining_time_in_millis"):
            timeout = max(1.0, context.get_remaining_time_in_millis() / 1000 - MIGRATION_MARGIN)
        try:
            lifecycle.await_migration(tenant_id, timeout=timeout)
        except FutureTimeoutError:
            # The persisted plan lets the next attempt resume
            logger.warning("migration_still_running", tenant_id=tenant_id)
            return response(202, result.model_dump(mode="json"))
        state = get_platform().store.get_trial_state(tenant_id)
        result = result.model_copy(update={"migration_required": state.migration_required})

    return response(200, result.model_dump(mode="json"))
