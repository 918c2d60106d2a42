"""Resilience patterns for cloud resource operations.

Implements the error handling shared by every component:
- Classification of botocore failures into tagged error kinds
- Recognition of "already exists" responses (treated as success)
- Retry logic with exponential backoff for retryable failures
- Bounded, cancellable polling for "wait until ready" loops
"""

import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

import structlog
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from stackbox.core.errors import (
    CapacityExhaustedError,
    ErrorKind,
    OperationCancelledError,
    ProvisioningTimeoutError,
    ResourceProvisioningError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


ALREADY_EXISTS_CODES = frozenset({
    "BucketAlreadyOwnedByYou",
    "HostedZoneAlreadyExists",
    "AlreadyExistsException",
    "EntityAlreadyExists",
    "ResourceAlreadyExistsException",
    "InvalidPermission.Duplicate",
})

CAPACITY_CODES = frozenset({
    "InsufficientInstanceCapacity",
    "InstanceLimitExceeded",
    "VcpuLimitExceeded",
    "MaxSpotInstanceCountExceeded",
    "LimitExceededException",
})

PERMISSION_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "AuthFailure",
    "InvalidClientTokenId",
    "ExpiredToken",
})

TIMEOUT_CODES = frozenset({
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "PriorRequestNotComplete",
})


def error_code(error: Exception) -> Optional[str]:
    """Return the AWS error code of a ClientError, if any."""
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def is_already_exists(error: Exception) -> bool:
    """Whether a failure only says the resource is already there."""
    code = error_code(error)
    if code in ALREADY_EXISTS_CODES:
        return True
    message = str(error).lower()
    return code is not None and "already exists" in message


def is_conditional_check_failure(error: Exception) -> bool:
    """Whether a DynamoDB conditional write was rejected."""
    return error_code(error) in ("ConditionalCheckFailedException", "TransactionCanceledException")


def classify_client_error(error: Exception) -> ErrorKind:
    """Categorize a cloud API failure.

    Args:
        error: The exception to categorize.

    Returns:
        ErrorKind for the exception.
    """
    if isinstance(error, ResourceProvisioningError):
        return error.kind
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)):
        return ErrorKind.NETWORK_TIMEOUT
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK_TIMEOUT
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION_DENIED

    code = error_code(error)
    if code in CAPACITY_CODES:
        return ErrorKind.CAPACITY_EXHAUSTED
    if code in PERMISSION_CODES:
        return ErrorKind.PERMISSION_DENIED
    if code in TIMEOUT_CODES:
        return ErrorKind.NETWORK_TIMEOUT
    return ErrorKind.UNKNOWN


def translate_client_error(error: Exception, resource: str) -> ResourceProvisioningError:
    """Wrap a raw cloud failure into the tagged error taxonomy."""
    if isinstance(error, ResourceProvisioningError):
        return error
    kind = classify_client_error(error)
    message = f"{resource}: {error}"
    if kind == ErrorKind.CAPACITY_EXHAUSTED:
        return CapacityExhaustedError(message, resource=resource)
    return ResourceProvisioningError(message, kind=kind, resource=resource)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = (CapacityExhaustedError,)
    retryable_kinds: tuple = ()


class RetryHandler:
    """Handles retry logic with exponential backoff."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            # +/- 25%
            jitter = delay * 0.25 * (2 * random.random() - 1)
            delay += jitter

        return max(0, delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an operation should be retried."""
        if attempt >= self.config.max_retries:
            return False
        if isinstance(error, ProvisioningTimeoutError):
            # A resource that never became ready is surfaced, never re-created.
            return False
        if isinstance(error, self.config.retryable_exceptions):
            return True
        return (
            isinstance(error, ResourceProvisioningError)
            and error.kind.value in self.config.retryable_kinds
        )

    def execute(
        self,
        func: Callable[..., T],
        *args,
        component: str = "unknown",
        **kwargs,
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute.
            *args: Positional arguments for func.
            component: Component name for logging.
            **kwargs: Keyword arguments for func.

        Returns:
            Result of the function.

        Raises:
            The last exception if all retries fail.
        """
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if attempt > 0:
                        logger.warning(
                            "retries_exhausted",
                            component=component,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                    raise

                delay = self.calculate_delay(attempt)
                logger.info(
                    "retrying_operation",
                    component=component,
                    attempt=attempt + 1,
                    max_retries=self.config.max_retries,
                    delay=delay,
                    error=str(e),
                )
                self._sleep(delay)
                attempt += 1


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and its waits."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True when cancelled meanwhile."""
        return self._event.wait(timeout=seconds)

    def raise_if_cancelled(self, operation: str) -> None:
        if self.cancelled:
            raise OperationCancelledError(
                f"{operation} cancelled: {self.reason}", operation=operation
            )


@dataclass
class PollConfig:
    """Interval and overall deadline for a polling wait."""

    interval: float = 10.0
    timeout: float = 300.0


def poll_until(
    check: Callable[[], Optional[T]],
    config: PollConfig,
    description: str,
    cancel: Optional[CancellationToken] = None,
    resource_id: Optional[str] = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``check`` until it returns a non-None value.

    Args:
        check: Probe returning the ready value, or None while not ready.
        config: Poll interval and overall timeout.
        description: Human-readable name of the wait, for logs and errors.
        cancel: Optional token; cancellation stops polling promptly.
        resource_id: Identifier reported in the timeout error.
        clock: Monotonic clock (injectable for tests).

    Returns:
        The first non-None value returned by ``check``.

    Raises:
        ProvisioningTimeoutError: If the deadline elapses first.
        OperationCancelledError: If the token is cancelled.
    """
    token = cancel or CancellationToken()
    deadline = clock() + config.timeout
    attempts = 0

    while True:
        token.raise_if_cancelled(description)
        attempts += 1
        value = check()
        if value is not None:
            return value

        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(
                "poll_timed_out",
                wait=description,
                resource_id=resource_id,
                attempts=attempts,
                timeout=config.timeout,
            )
            raise ProvisioningTimeoutError(
                f"{description} not ready within {config.timeout:.0f}s",
                resource_id=resource_id,
                timeout=config.timeout,
            )

        logger.debug("poll_waiting", wait=description, attempt=attempts)
        if token.wait(min(config.interval, remaining)):
            token.raise_if_cancelled(description)


def call_ignoring_existing(func: Callable[..., Any], *args, **kwargs) -> Optional[Any]:
    """Invoke a create call; an "already exists" failure returns None."""
    try:
        return func(*args, **kwargs)
    except ClientError as e:
        if is_already_exists(e):
            logger.info("resource_already_exists", operation=getattr(func, "__name__", "call"))
            return None
        raise
