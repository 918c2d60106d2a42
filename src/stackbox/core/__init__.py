"""Core utilities and frameworks for the StackBox provisioning core."""

from stackbox.core.logging import get_logger, configure_logging, bind_tenant
from stackbox.core.config import PlatformSettings
from stackbox.core.errors import (
    StackBoxError,
    ErrorKind,
    ConfigValidationError,
    ResourceProvisioningError,
    CapacityExhaustedError,
    ProvisioningTimeoutError,
    RemoteCommandError,
    DeploymentDegradedError,
    StackStateError,
    MigrationStepFailedError,
    TenantNotFoundError,
    InvalidTransitionError,
    ConcurrentModificationError,
    OperationCancelledError,
    ProvisioningFailedError,
)
from stackbox.core.resilience import (
    RetryConfig,
    RetryHandler,
    PollConfig,
    CancellationToken,
    poll_until,
    classify_client_error,
    translate_client_error,
    is_already_exists,
    is_conditional_check_failure,
    call_ignoring_existing,
)

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "bind_tenant",
    # Config
    "PlatformSettings",
    # Errors
    "StackBoxError",
    "ErrorKind",
    "ConfigValidationError",
    "ResourceProvisioningError",
    "CapacityExhaustedError",
    "ProvisioningTimeoutError",
    "RemoteCommandError",
    "DeploymentDegradedError",
    "StackStateError",
    "MigrationStepFailedError",
    "TenantNotFoundError",
    "InvalidTransitionError",
    "ConcurrentModificationError",
    "OperationCancelledError",
    "ProvisioningFailedError",
    # Resilience
    "RetryConfig",
    "RetryHandler",
    "PollConfig",
    "CancellationToken",
    "poll_until",
    "classify_client_error",
    "translate_client_error",
    "is_already_exists",
    "is_conditional_check_failure",
    "call_ignoring_existing",
]
