"""Shared-to-dedicated migration.

Steps run in a fixed order and the plan is persisted after each one, so
a retry resumes at the first incomplete step. The source slot is only
given back after the tenant's DNS record points at the new instance and
Route 53 reports the change ``INSYNC``.
"""

import time
from typing import Callable, Optional
from uuid import uuid4

from botocore.exceptions import BotoCoreError, ClientError

from stackbox.core import get_logger
from stackbox.core.config import PlatformSettings
from stackbox.core.errors import (
    DeploymentDegradedError,
    MigrationStepFailedError,
    OperationCancelledError,
    RemoteCommandError,
    StackBoxError,
    TenantNotFoundError,
)
from stackbox.core.resilience import CancellationToken, RetryConfig, RetryHandler
from stackbox.models import (
    AssignmentKind,
    ComputeAssignment,
    HealthReport,
    MigrationPlan,
    MigrationStatus,
    MigrationStepName,
    ResultStatus,
    ProvisioningResult,
    utcnow,
)
from stackbox.provisioning.compute import ComputeAllocator
from stackbox.provisioning.remote import RemoteCommandRunner, file_write_commands
from stackbox.storage.base import StateStore

logger = get_logger(__name__)

HealthProbe = Callable[[str, ComputeAssignment, Optional[CancellationToken]], HealthReport]
PlacementFiles = Callable[[str, ComputeAssignment], dict[str, str]]

DEFAULT_STEP_RETRY = RetryConfig(
    max_retries=2,
    base_delay=5.0,
    max_delay=60.0,
    retryable_exceptions=(RemoteCommandError,),
    retryable_kinds=("network_timeout", "capacity_exhausted"),
)


class MigrationRunner:
    """Executes and resumes MigrationPlans."""

    def __init__(
        self,
        settings: PlatformSettings,
        store: StateStore,
        allocator: ComputeAllocator,
        provisioner,
        runner: RemoteCommandRunner,
        health_probe: Optional[HealthProbe] = None,
        placement_files: Optional[PlacementFiles] = None,
        retry_config: Optional[RetryConfig] = None,
        manual_intervention_after: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the runner.

        Args:
            settings: Platform settings
            store: Durable state holding plans and assignments
            allocator: Compute placement (launch target, release source)
            provisioner: ResourceProvisioner used to repoint DNS
            runner: Remote command runner for backup and restore
            health_probe: Waits for the restored stack to become healthy
            placement_files: Host-specific stack files for the target
            retry_config: Per-step retry of transient failures
            manual_intervention_after: Failed attempts of one step before
                the plan is handed to an operator
            sleep: Sleep function between retries (injectable for tests)
        """
        self.settings = settings
        self.store = store
        self.allocator = allocator
        self.provisioner = provisioner
        self.runner = runner
        self.health_probe = health_probe
        self.placement_files = placement_files
        self.retry = RetryHandler(retry_config or DEFAULT_STEP_RETRY, sleep=sleep)
        self.manual_intervention_after = manual_intervention_after
        self._handlers = {
            MigrationStepName.BACKUP_SOURCE: self._backup_source,
            MigrationStepName.PROVISION_TARGET: self._provision_target,
            MigrationStepName.RESTORE_TARGET: self._restore_target,
            MigrationStepName.REPOINT_DNS: self._repoint_dns,
            MigrationStepName.DECOMMISSION_SOURCE: self._decommission_source,
        }

    def load_or_create_plan(self, tenant_id: str) -> MigrationPlan:
        plan = self.store.get_migration_plan(tenant_id)
        if plan is not None:
            return plan

        source = self.store.get_assignment(tenant_id)
        if source is None:
            raise TenantNotFoundError(tenant_id, record="assignment")
        plan = MigrationPlan(tenant_id=tenant_id, source=source)
        if source.kind == AssignmentKind.DEDICATED:
            # Paid signups already run on dedicated compute
            for step in plan.steps:
                plan.mark_completed(step.name)
            plan.target = source
            plan.status = MigrationStatus.COMPLETED
            return plan

        self.store.save_migration_plan(plan)
        logger.info("migration_plan_created", tenant_id=tenant_id, plan_id=plan.plan_id)
        return plan

    def migrate(
        self,
        tenant_id: str,
        cancel: Optional[CancellationToken] = None,
    ) -> MigrationPlan:
        """Run the tenant's migration from its first incomplete step.

        Returns:
            The completed plan (already removed from the store).

        Raises:
            MigrationStepFailedError: Carrying the last completed step.
            OperationCancelledError: When cancelled between or during steps.
        """
        plan = self.load_or_create_plan(tenant_id)
        if plan.is_complete:
            logger.info("migration_not_needed", tenant_id=tenant_id)
            return plan

        if plan.status == MigrationStatus.MANUAL_INTERVENTION:
            logger.info("migration_resumed_by_operator", tenant_id=tenant_id, plan_id=plan.plan_id)
        plan.status = MigrationStatus.IN_PROGRESS

        logger.info(
            "migration_started",
            tenant_id=tenant_id,
            plan_id=plan.plan_id,
            resume_from=plan.next_step.value,
        )

        for step in plan.steps:
            if step.completed:
                continue
            if cancel is not None:
                cancel.raise_if_cancelled(f"migration {plan.plan_id}")
            self._run_step(plan, step.name, cancel)

        plan.status = MigrationStatus.COMPLETED
        self.store.delete_migration_plan(tenant_id)
        logger.info("migration_completed", tenant_id=tenant_id, plan_id=plan.plan_id)
        return plan

    def _run_step(
        self,
        plan: MigrationPlan,
        name: MigrationStepName,
        cancel: Optional[CancellationToken],
    ) -> None:
        step = plan.step(name)
        handler = self._handlers[name]

        def attempt():
            step.attempts += 1
            try:
                handler(plan, cancel)
            except (StackBoxError, ClientError, BotoCoreError) as e:
                step.last_error = str(e)
                plan.updated_at = utcnow()
                self.store.save_migration_plan(plan)
                raise

        try:
            self.retry.execute(attempt, component=f"migration.{name.value}")
        except OperationCancelledError:
            logger.info("migration_cancelled", tenant_id=plan.tenant_id, step=name.value)
            raise
        except (StackBoxError, ClientError, BotoCoreError) as e:
            if step.attempts >= self.manual_intervention_after:
                plan.status = MigrationStatus.MANUAL_INTERVENTION
            # Kept, not deleted: the operator resumes from the last completed step
            self.store.save_migration_plan(plan)
            last = plan.last_completed_step
            logger.error(
                "migration_step_failed",
                tenant_id=plan.tenant_id,
                plan_id=plan.plan_id,
                step=name.value,
                attempts=step.attempts,
                last_completed_step=last.value if last else None,
                status=plan.status.value,
                error=str(e),
            )
            raise MigrationStepFailedError(
                f"Migration step {name.value} failed: {e}",
                step=name.value,
                last_completed_step=last.value if last else None,
                plan=plan,
            ) from e

        plan.mark_completed(name)
        self.store.save_migration_plan(plan)
        logger.info(
            "migration_step_completed",
            tenant_id=plan.tenant_id,
            plan_id=plan.plan_id,
            step=name.value,
        )

    # ==================== Steps ====================

    def _bucket(self, plan: MigrationPlan) -> str:
        return self.settings.bucket_name(plan.tenant_id)

    def _backup_source(self, plan: MigrationPlan, cancel: Optional[CancellationToken]) -> None:
        source = plan.source
        key = f"backups/{plan.plan_id}.tar.gz"
        archive = f"/tmp/stackbox-{plan.plan_id}.tar.gz"
        parent, folder = source.stack_dir.rsplit("/", 1)
        commands = [
            "set -euo pipefail",
            f"cd {source.stack_dir}",
            "docker compose stop",
            "trap 'docker compose start' EXIT",
            f"tar -czf {archive} -C {parent} {folder}",
            f"aws s3 cp {archive} s3://{self._bucket(plan)}/{key}",
            f"rm -f {archive}",
        ]
        self.runner.run(
            source.instance_id,
            commands,
            comment=f"backup {plan.tenant_id}",
            cancel=cancel,
        )
        plan.backup_key = key

    def _provision_target(self, plan: MigrationPlan, cancel: Optional[CancellationToken]) -> None:
        if plan.target_instance_id is None:
            plan.target_instance_id = self.allocator.launch_instance(
                AssignmentKind.DEDICATED, tenant_id=plan.tenant_id
            )
            # Persist before waiting so a retry never launches a second instance
            self.store.save_migration_plan(plan)
            logger.info(
                "migration_target_launched",
                tenant_id=plan.tenant_id,
                instance_id=plan.target_instance_id,
            )
        plan.target = self.allocator.dedicated_assignment(
            plan.tenant_id, plan.target_instance_id, cancel
        )

    def _restore_target(self, plan: MigrationPlan, cancel: Optional[CancellationToken]) -> None:
        target = plan.target
        archive = f"/tmp/stackbox-{plan.plan_id}.tar.gz"
        parent = target.stack_dir.rsplit("/", 1)[0]
        commands = [
            "set -euo pipefail",
            f"mkdir -p {parent}",
            f"aws s3 cp s3://{self._bucket(plan)}/{plan.backup_key} {archive}",
            f"tar -xzf {archive} -C {parent}",
            f"rm -f {archive}",
            f"cd {target.stack_dir}",
        ]
        if self.placement_files is not None:
            # Shared-host wiring (edge network, no published ports) does not apply here
            commands.extend(file_write_commands(self.placement_files(plan.tenant_id, target)))
            commands.append("chmod 600 .env")
        commands.append("docker compose up -d --remove-orphans")
        self.runner.run(
            target.instance_id,
            commands,
            comment=f"restore {plan.tenant_id}",
            cancel=cancel,
        )

        if self.health_probe is not None:
            report = self.health_probe(plan.tenant_id, target, cancel)
            if not report.ok:
                raise DeploymentDegradedError(
                    f"Restored stack for {plan.tenant_id} is {report.state.value}",
                    report=report,
                )

    def _repoint_dns(self, plan: MigrationPlan, cancel: Optional[CancellationToken]) -> None:
        dns = self.provisioner.repoint_dns(plan.tenant_id, plan.target.address)
        plan.dns_change_id = dns.change_id
        self.store.save_migration_plan(plan)
        self.provisioner.wait_for_dns(dns.change_id, cancel=cancel)
        self.store.save_assignment(plan.target)
        self._supersede_result(plan, dns)

    def _decommission_source(self, plan: MigrationPlan, cancel: Optional[CancellationToken]) -> None:
        source = plan.source
        commands = [
            f"if [ -d {source.stack_dir} ]; then",
            f"  cd {source.stack_dir} && docker compose down --remove-orphans",
            f"  rm -rf {source.stack_dir}",
            "fi",
        ]
        self.runner.run(
            source.instance_id,
            commands,
            comment=f"decommission {plan.tenant_id}",
            cancel=cancel,
        )
        # Idempotent: a second release is a no-op
        self.allocator.release(source)

        record = self.store.get_stack_record(plan.tenant_id)
        if record is not None:
            self.store.save_stack_record(record.model_copy(update={
                "instance_id": plan.target.instance_id,
                "stack_dir": plan.target.stack_dir,
                "updated_at": utcnow(),
            }))

    def _supersede_result(self, plan: MigrationPlan, dns) -> None:
        previous = self.store.get_latest_result(plan.tenant_id)
        if previous is None:
            result = ProvisioningResult(
                tenant_id=plan.tenant_id,
                status=ResultStatus.SUCCEEDED,
                assignment=plan.target,
                dns=dns,
            )
        else:
            result = previous.model_copy(update={
                "result_id": str(uuid4()),
                "assignment": plan.target,
                "dns": dns,
                "supersedes": previous.result_id,
                "created_at": utcnow(),
            })
        self.store.save_result(result)
        logger.info(
            "provisioning_result_superseded",
            tenant_id=plan.tenant_id,
            result_id=result.result_id,
            supersedes=result.supersedes,
        )
