"""Custom exception classes for the StackBox provisioning core."""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Tag carried by resource-acquisition failures."""

    CAPACITY_EXHAUSTED = "capacity_exhausted"
    NETWORK_TIMEOUT = "network_timeout"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


class StackBoxError(Exception):
    """Base exception for all StackBox errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ConfigValidationError(StackBoxError):
    """Tenant configuration failed schema validation.

    ``failed_checks`` holds every violated constraint, not just the first.
    """

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        failed_checks: Optional[list] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="VALIDATION", **kwargs)
        self.tenant_id = tenant_id
        self.failed_checks = failed_checks or []
        self.details.update({
            "tenant_id": tenant_id,
            "failed_checks": [
                getattr(check, "field_name", str(check)) for check in self.failed_checks
            ],
        })


class ResourceProvisioningError(StackBoxError):
    """A cloud resource could not be created, updated or removed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        resource: Optional[str] = None,
        error_code: str = "RESOURCE_PROVISIONING",
        **kwargs,
    ):
        super().__init__(message, error_code=error_code, **kwargs)
        self.kind = kind
        self.resource = resource
        self.details.update({
            "kind": kind.value,
            "resource": resource,
        })


class CapacityExhaustedError(ResourceProvisioningError):
    """Shared pool is full and a new instance could not be created."""

    def __init__(self, message: str, resource: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            kind=ErrorKind.CAPACITY_EXHAUSTED,
            resource=resource,
            error_code="CAPACITY_EXHAUSTED",
            **kwargs,
        )


class ProvisioningTimeoutError(ResourceProvisioningError):
    """A resource never reached its ready state within the allowed time.

    The resource is left in place for the caller's rollback logic.
    """

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            kind=ErrorKind.NETWORK_TIMEOUT,
            resource=resource_id,
            error_code="PROVISIONING_TIMEOUT",
            **kwargs,
        )
        self.resource_id = resource_id
        self.timeout = timeout
        self.details.update({"timeout": timeout})


class RemoteCommandError(StackBoxError):
    """A shell command sent to a compute instance failed."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        command_id: Optional[str] = None,
        status: Optional[str] = None,
        stderr: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="REMOTE_COMMAND", **kwargs)
        self.instance_id = instance_id
        self.command_id = command_id
        self.status = status
        self.stderr = stderr
        self.details.update({
            "instance_id": instance_id,
            "command_id": command_id,
            "status": status,
            "stderr": stderr[-500:] if stderr else None,
        })


class DeploymentDegradedError(StackBoxError):
    """The container stack did not become fully healthy."""

    def __init__(self, message: str, report: Any = None, **kwargs):
        super().__init__(message, error_code="DEPLOYMENT_DEGRADED", **kwargs)
        self.report = report
        if report is not None:
            self.details.update({
                "state": getattr(report, "state", None),
                "unhealthy": getattr(report, "unhealthy", []),
            })


class StackStateError(StackBoxError):
    """An operation was attempted in a stack state that does not permit it."""

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        state: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="STACK_STATE", **kwargs)
        self.tenant_id = tenant_id
        self.state = state
        self.details.update({"tenant_id": tenant_id, "state": state})


class MigrationStepFailedError(StackBoxError):
    """A shared-to-dedicated migration step failed.

    ``last_completed_step`` tells a retry where to resume.
    """

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        last_completed_step: Optional[str] = None,
        plan: Any = None,
        **kwargs,
    ):
        super().__init__(message, error_code="MIGRATION_STEP_FAILED", **kwargs)
        self.step = step
        self.last_completed_step = last_completed_step
        self.plan = plan
        self.details.update({
            "step": step,
            "last_completed_step": last_completed_step,
        })


class TenantNotFoundError(StackBoxError):
    """No stored record exists for the tenant."""

    def __init__(self, tenant_id: str, record: str = "tenant", **kwargs):
        super().__init__(
            f"No {record} record for tenant: {tenant_id}",
            error_code="TENANT_NOT_FOUND",
            **kwargs,
        )
        self.tenant_id = tenant_id
        self.details.update({"tenant_id": tenant_id, "record": record})


class InvalidTransitionError(StackBoxError):
    """A commercial-status transition is not allowed from the current state."""

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="INVALID_TRANSITION", **kwargs)
        self.tenant_id = tenant_id
        self.current_status = current_status
        self.requested_status = requested_status
        self.details.update({
            "tenant_id": tenant_id,
            "current_status": current_status,
            "requested_status": requested_status,
        })


class ConcurrentModificationError(StackBoxError):
    """A conditional write lost a race against another writer."""

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CONCURRENT_MODIFICATION", **kwargs)
        self.key = key
        self.details.update({"key": key})


class OperationCancelledError(StackBoxError):
    """A polling wait or pipeline run was cancelled by its caller."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(message, error_code="CANCELLED", **kwargs)
        self.operation = operation
        self.details.update({"operation": operation})


class ProvisioningFailedError(StackBoxError):
    """A pipeline run failed; ``result`` is the recorded failed result."""

    def __init__(self, message: str, result: Any = None, cause: Optional[Exception] = None, **kwargs):
        super().__init__(message, error_code="PROVISIONING_FAILED", **kwargs)
        self.result = result
        self.cause = cause
        if result is not None and getattr(result, "failure", None) is not None:
            self.details.update({
                "tenant_id": result.tenant_id,
                "failed_step": result.failure.failed_step,
            })
