"""Lambda handler for deployment status queries.

GET /tenants/{tenantId}/status returns stack health and commercial
status for the operator dashboard; ``?view=tenant`` returns the
tenant-facing notice instead.
"""

from typing import Any

from handlers.common import error_response, get_platform, response
from stackbox.core import configure_logging, get_logger
from stackbox.core.errors import TenantNotFoundError

configure_logging(json_format=True)
logger = get_logger(__name__)


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Return the current deployment status of one tenant."""
    path_params = event.get("pathParameters") or {}
    query = event.get("queryStringParameters") or {}
    tenant_id = path_params.get("tenantId") or event.get("tenantId")
    if not tenant_id:
        return error_response(400, "invalid_request", "tenantId is required")

    platform = get_platform()
    try:
        if query.get("view") == "tenant":
            notice = platform.lifecycle.describe(tenant_id)
            return response(200, notice.model_dump(mode="json"))
        status = platform.orchestrator.get_deployment_status(tenant_id)
    except TenantNotFoundError as e:
        return error_response(404, "not_found", e.message)

    return response(200, status.model_dump(mode="json"))
