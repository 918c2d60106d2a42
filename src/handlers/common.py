"""Shared pieces of the Lambda entry points."""

import json
from typing import Any, Optional

from stackbox.core import get_logger
from stackbox.platform import Platform, build_platform

logger = get_logger(__name__)

# Built on first use and reused across warm invocations
_platform: Optional[Platform] = None


def get_platform() -> Platform:
    """Get or create the platform."""
    global _platform
    if _platform is None:
        _platform = build_platform()
    return _platform


def set_platform(platform: Optional[Platform]) -> None:
    """Replace the cached platform (tests, local runs)."""
    global _platform
    _platform = platform


def parse_payload(event: dict[str, Any]) -> dict[str, Any]:
    """Extract the request payload from API Gateway or EventBridge events.

    Raises:
        ValueError: If the body is not a JSON object.
    """
    if "detail" in event and isinstance(event["detail"], dict):
        return event["detail"]
    body = event.get("body")
    if body is None:
        return {k: v for k, v in event.items() if k not in ("headers", "requestContext")}
    if isinstance(body, str):
        body = json.loads(body) if body else {}
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def response(status_code: int, body: Any) -> dict[str, Any]:
    """Build an API Gateway response."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(body, default=str) if not isinstance(body, str) else body,
    }


def error_response(status_code: int, error: str, message: str, **extra) -> dict[str, Any]:
    return response(status_code, {"error": error, "message": message, **extra})
