"""Top-level provisioning pipeline.

One run per tenant, steps strictly in order:

    validate -> provision_resources -> deploy_stack -> await_health
    -> configure_apps -> ssl -> record_state -> notify

A failed run rolls back what it created through its CompensationLog and
stores a failed ProvisioningResult. A cancelled run stops polling and
leaves everything in place for diagnosis.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Union

from botocore.exceptions import BotoCoreError, ClientError

from stackbox.core import bind_tenant, get_logger
from stackbox.core.errors import (
    CapacityExhaustedError,
    ConfigValidationError,
    DeploymentDegradedError,
    OperationCancelledError,
    ProvisioningFailedError,
    ResourceProvisioningError,
    StackBoxError,
    TenantNotFoundError,
)
from stackbox.core.resilience import (
    CancellationToken,
    RetryConfig,
    RetryHandler,
    translate_client_error,
)
from stackbox.models import (
    AdminCredentials,
    CertificateRef,
    DeploymentStatus,
    ProvisioningFailure,
    ProvisioningResult,
    ResultStatus,
    SignupTier,
    StackState,
    TenantConfig,
)
from stackbox.orchestrator.notifications import LoggingNotifier, Notifier
from stackbox.provisioning.compensation import CompensationLog
from stackbox.storage.base import StateStore
from stackbox.validation import ConfigValidator

logger = get_logger(__name__)

STEP_VALIDATE = "validate"
STEP_PROVISION = "provision_resources"
STEP_DEPLOY = "deploy_stack"
STEP_AWAIT_HEALTH = "await_health"
STEP_CONFIGURE = "configure_apps"
STEP_SSL = "ssl"
STEP_RECORD = "record_state"
STEP_NOTIFY = "notify"

# A repeated run leaves a stack in these states running when it fails
LIVE_STACK_STATES = frozenset({StackState.HEALTHY, StackState.DEPLOYING, StackState.AWAITING_HEALTH})

CAPACITY_RETRY = RetryConfig(
    max_retries=3,
    base_delay=5.0,
    max_delay=60.0,
    retryable_exceptions=(CapacityExhaustedError,),
)


class ProvisioningOrchestrator:
    """Runs the provisioning pipeline for tenants."""

    def __init__(
        self,
        store: StateStore,
        provisioner,
        stacks,
        lifecycle,
        validator: Optional[ConfigValidator] = None,
        notifier: Optional[Notifier] = None,
        capacity_retry: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            store: Durable state (configs, results)
            provisioner: ResourceProvisioner
            stacks: ContainerStackService
            lifecycle: TrialLifecycleManager
            validator: Tenant configuration validator
            notifier: Receives credentials or the "setup delayed" notice
            capacity_retry: Backoff for CapacityExhausted on provisioning
            sleep: Sleep function between retries (injectable for tests)
        """
        self.store = store
        self.provisioner = provisioner
        self.stacks = stacks
        self.lifecycle = lifecycle
        self.validator = validator or ConfigValidator()
        self.notifier = notifier or LoggingNotifier()
        self.capacity_retry = RetryHandler(capacity_retry or CAPACITY_RETRY, sleep=sleep)

    def run(
        self,
        raw_config: dict[str, Any],
        cancel: Optional[CancellationToken] = None,
    ) -> ProvisioningResult:
        """Provision one tenant end to end.

        Raises:
            ConfigValidationError: Input rejected; nothing was touched.
            ProvisioningFailedError: A later step failed; ``result`` is the
                stored failed ProvisioningResult.
        """
        try:
            config = self.validator.validate(raw_config)
        except ConfigValidationError as e:
            logger.warning(
                "tenant_config_rejected",
                tenant_id=e.tenant_id,
                failed_checks=e.details.get("failed_checks"),
            )
            raise

        with bind_tenant(config.tenant_id, tier=config.tier.value):
            return self._run(config, cancel)

    def _run(self, config: TenantConfig, cancel: Optional[CancellationToken]) -> ProvisioningResult:
        tenant_id = config.tenant_id
        compensations = CompensationLog()
        hostname = config.hostname(self.provisioner.settings.base_domain)
        bundle = None
        step = STEP_PROVISION
        logger.info("provisioning_started", tenant_id=tenant_id, tier=config.tier.value)

        try:
            self.store.save_tenant_config(config)

            self._checkpoint(cancel, step)
            bundle = self.capacity_retry.execute(
                self.provisioner.provision,
                config,
                compensations=compensations,
                cancel=cancel,
                component=STEP_PROVISION,
            )

            step = STEP_DEPLOY
            self._checkpoint(cancel, step)
            earlier = self.store.get_stack_record(tenant_id)
            stack = self.stacks.render(config)
            self.stacks.deploy(stack, bundle.assignment)
            if earlier is None or earlier.state not in LIVE_STACK_STATES:
                compensations.register("stack", lambda: self.stacks.stop(tenant_id) is not None)

            step = STEP_AWAIT_HEALTH
            self._checkpoint(cancel, step)
            report = self.stacks.await_healthy(tenant_id, cancel=cancel)
            if not report.ok:
                raise DeploymentDegradedError(
                    f"Stack for {tenant_id} finished {report.state.value}: "
                    f"unhealthy {', '.join(report.unhealthy) or 'none'}",
                    report=report,
                )

            step = STEP_CONFIGURE
            self.stacks.configure_apps(config, stack)

            step = STEP_SSL
            # The stack's proxy requests and renews certificates itself
            certificate = CertificateRef(hostnames=self.stacks.certificate_hostnames(stack))

            step = STEP_RECORD
            if config.tier == SignupTier.TRIAL:
                self.lifecycle.create_trial(tenant_id)
            else:
                self.lifecycle.register_paid(tenant_id, config.plan_id or "professional")

            result = ProvisioningResult(
                tenant_id=tenant_id,
                status=ResultStatus.SUCCEEDED,
                hostname=hostname,
                assignment=bundle.assignment,
                storage=bundle.storage,
                dns=bundle.dns,
                email_identity=bundle.email_identity,
                service_urls=stack.service_urls,
                credentials=AdminCredentials(
                    username=stack.admin_username,
                    password=stack.admin_password,
                ),
                certificate=certificate,
            )
            self.store.save_result(result)
        except OperationCancelledError as e:
            # Partially created resources stay for diagnosis
            raise self._fail(config, hostname, bundle, step, e, compensations=None) from e
        except (StackBoxError, ClientError, BotoCoreError) as e:
            raise self._fail(config, hostname, bundle, step, e, compensations) from e

        step = STEP_NOTIFY
        self._notify(self.notifier.notify_ready, config, result)
        logger.info(
            "provisioning_succeeded",
            tenant_id=tenant_id,
            result_id=result.result_id,
            assignment_kind=result.assignment.kind.value,
            services=sorted(result.service_urls),
        )
        return result

    @staticmethod
    def _checkpoint(cancel: Optional[CancellationToken], step: str) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled(step)

    def _fail(
        self,
        config: TenantConfig,
        hostname: str,
        bundle,
        step: str,
        error: Exception,
        compensations: Optional[CompensationLog],
    ) -> ProvisioningFailedError:
        if isinstance(error, ClientError):
            error = translate_client_error(error, step)
        elif isinstance(error, BotoCoreError):
            error = ResourceProvisioningError(str(error), resource=step)

        cancelled = isinstance(error, OperationCancelledError)
        compensated: list[str] = []
        pending: list[str] = []
        if compensations is not None:
            outcome = compensations.rollback()
            compensated, pending = outcome.compensated, outcome.pending_cleanup

        kind = getattr(error, "kind", None)
        result = ProvisioningResult(
            tenant_id=config.tenant_id,
            status=ResultStatus.FAILED,
            hostname=hostname,
            assignment=bundle.assignment if bundle is not None else None,
            storage=bundle.storage if bundle is not None else None,
            dns=bundle.dns if bundle is not None else None,
            failure=ProvisioningFailure(
                failed_step=step,
                error_code=getattr(error, "error_code", None),
                error_kind=kind.value if kind is not None else None,
                detail=str(error),
                compensated=compensated,
                pending_cleanup=pending,
                cancelled=cancelled,
            ),
        )
        self.store.save_result(result)
        logger.error(
            "provisioning_failed",
            tenant_id=config.tenant_id,
            step=step,
            error=str(error),
            cancelled=cancelled,
            compensated=compensated,
            pending_cleanup=pending,
        )
        if not cancelled:
            self._notify(self.notifier.notify_delayed, config, result)
        return ProvisioningFailedError(
            f"Provisioning of {config.tenant_id} failed at {step}",
            result=result,
            cause=error,
        )

    @staticmethod
    def _notify(send: Callable, config: TenantConfig, result: ProvisioningResult) -> None:
        try:
            send(config, result)
        except Exception as e:
            # Delivery problems never change the run's outcome
            logger.error("tenant_notification_failed", tenant_id=config.tenant_id, error=str(e))

    def run_many(
        self,
        raw_configs: list[dict[str, Any]],
        max_workers: int = 4,
        cancel: Optional[CancellationToken] = None,
    ) -> list[Union[ProvisioningResult, StackBoxError]]:
        """Run independent pipelines in parallel, one per tenant.

        Returns one entry per input, in input order: the successful result
        or the error the run raised.
        """
        def run_one(raw: dict[str, Any]) -> Union[ProvisioningResult, StackBoxError]:
            try:
                return self.run(raw, cancel=cancel)
            except (ConfigValidationError, ProvisioningFailedError) as e:
                return e

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stackbox-pipeline") as pool:
            return list(pool.map(run_one, raw_configs))

    def get_deployment_status(self, tenant_id: str) -> DeploymentStatus:
        """Current stack health and commercial status of a tenant."""
        config = self.store.get_tenant_config(tenant_id)
        record = self.store.get_stack_record(tenant_id)
        trial = self.store.get_trial_state(tenant_id)
        assignment = self.store.get_assignment(tenant_id)
        result = self.store.get_latest_result(tenant_id)
        if config is None and record is None and trial is None and result is None:
            raise TenantNotFoundError(tenant_id)

        unhealthy = []
        if record is not None and record.last_report is not None:
            unhealthy = list(record.last_report.unhealthy)
        user_message = result.user_message if result is not None else None
        if record is not None and record.state == StackState.STOPPED and trial is not None:
            user_message = self.lifecycle.describe(tenant_id).message

        return DeploymentStatus(
            tenant_id=tenant_id,
            hostname=(
                config.hostname(self.provisioner.settings.base_domain)
                if config is not None
                else None
            ),
            stack_state=record.state.value if record is not None else None,
            commercial_status=trial.status.value if trial is not None else None,
            assignment_kind=assignment.kind.value if assignment is not None else None,
            instance_id=assignment.instance_id if assignment is not None else None,
            migration_required=trial.migration_required if trial is not None else False,
            last_result_status=result.status.value if result is not None else None,
            unhealthy_services=unhealthy,
            user_message=user_message,
        )
