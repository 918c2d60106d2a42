"""Lambda handler for tenant configuration submissions.

POST /tenants with the raw tenant configuration runs the provisioning
pipeline and returns the result. Credentials never appear in the
response; they go to the tenant contact through the notifier.
"""

import json
from typing import Any

from handlers.common import error_response, get_platform, parse_payload, response
from stackbox.core import configure_logging, get_logger
from stackbox.core.errors import ConfigValidationError, ProvisioningFailedError

configure_logging(json_format=True)
logger = get_logger(__name__)


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Provision one tenant from a submitted configuration."""
    try:
        raw = parse_payload(event)
    except (ValueError, json.JSONDecodeError) as e:
        return error_response(400, "invalid_request", str(e))

    platform = get_platform()
    try:
        result = platform.orchestrator.run(raw)
    except ConfigValidationError as e:
        return error_response(
            400,
            "validation_failed",
            e.message,
            failed_checks=[
                {"field": check.field_name, "message": check.error_message}
                for check in e.failed_checks
            ],
        )
    except ProvisioningFailedError as e:
        # Operators read the stored result; tenants get the generic notice
        return response(202, {
            "tenant_id": e.result.tenant_id,
            "status": e.result.status.value,
            "message": e.result.user_message,
        })

    return response(201, {
        "tenant_id": result.tenant_id,
        "status": result.status.value,
        "hostname": result.hostname,
        "assignment": result.assignment.kind.value,
        "service_urls": result.service_urls,
        "message": result.user_message,
    })
