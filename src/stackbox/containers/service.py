"""Deploys and operates tenant container stacks over SSM.

Starting a stack and the stack becoming healthy are separate, separately
recorded states: ``deploy`` returns once the start command is accepted,
and only ``await_healthy`` decides ``healthy``, ``degraded`` or
``timed_out`` by observing ``docker compose ps`` on the instance.
"""

import json
import shlex
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import ClientError

from stackbox.containers.renderer import StackRenderer
from stackbox.core import get_logger
from stackbox.core.config import PlatformSettings
from stackbox.core.errors import (
    OperationCancelledError,
    ProvisioningTimeoutError,
    StackBoxError,
    StackStateError,
    TenantNotFoundError,
)
from stackbox.core.resilience import (
    CancellationToken,
    PollConfig,
    error_code,
    poll_until,
    translate_client_error,
)
from stackbox.models import (
    ComputeAssignment,
    ConfigureReport,
    DeployResult,
    HealthReport,
    ServiceHealth,
    StackDefinition,
    StackRecord,
    StackState,
    TenantConfig,
    utcnow,
)
from stackbox.provisioning.compute import EDGE_NETWORK
from stackbox.provisioning.remote import RemoteCommandRunner, file_write_commands
from stackbox.storage.base import StateStore

logger = get_logger(__name__)

SECRETS_KEY = "stack/secrets.env"
PS_COMMAND = "docker compose ps --all --format json"
PLACEMENT_FILES = ("docker-compose.yml", ".env", "traefik/traefik.yml")


def parse_compose_ps(output: str) -> dict[str, ServiceHealth]:
    """Parse ``docker compose ps --format json`` output.

    Older compose releases print one JSON array, newer ones one object
    per line.
    """
    text = output.strip()
    if not text:
        return {}
    if text.startswith("["):
        entries = json.loads(text)
    else:
        entries = [json.loads(line) for line in text.splitlines() if line.strip()]

    services = {}
    for entry in entries:
        name = entry.get("Service") or entry.get("Name")
        if not name:
            continue
        services[name] = ServiceHealth(
            name=name,
            state=(entry.get("State") or "missing").lower(),
            health=(entry.get("Health") or "").lower(),
        )
    return services


def _parse_env(text: str) -> dict[str, str]:
    values = {}
    for line in text.splitlines():
        if not line.strip() or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values


class ContainerStackService:
    """Renders, deploys and operates one container stack per tenant."""

    def __init__(
        self,
        settings: PlatformSettings,
        store: StateStore,
        runner: RemoteCommandRunner,
        renderer: Optional[StackRenderer] = None,
        s3_client: Optional[Any] = None,
        release_compute: Optional[Callable[[ComputeAssignment], bool]] = None,
    ):
        """Initialize the service.

        Args:
            settings: Platform settings
            store: Durable state holding stack records
            runner: Remote command runner for the tenant's instance
            renderer: Stack renderer (built from settings when omitted)
            s3_client: Optional S3 client (for testing)
            release_compute: Gives a tenant's compute back on teardown
        """
        self.settings = settings
        self.store = store
        self.runner = runner
        self.renderer = renderer or StackRenderer(settings)
        self._s3 = s3_client
        self.release_compute = release_compute

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client("s3", region_name=self.settings.aws_region)
        return self._s3

    def _record(self, tenant_id: str) -> StackRecord:
        record = self.store.get_stack_record(tenant_id)
        if record is None:
            raise TenantNotFoundError(tenant_id, record="stack")
        return record

    def _save(self, record: StackRecord, **changes) -> StackRecord:
        updated = record.model_copy(update={**changes, "updated_at": utcnow()})
        self.store.save_stack_record(updated)
        if "state" in changes and changes["state"] != record.state:
            logger.info(
                "stack_state_changed",
                tenant_id=record.tenant_id,
                from_state=record.state.value,
                to_state=updated.state.value,
            )
        return updated

    # ==================== Render ====================

    def render(self, config: TenantConfig) -> StackDefinition:
        """Render the tenant's stack, reusing secrets from an earlier render.

        Placement follows the stored compute assignment when there is one,
        so a migrated tenant re-renders for its dedicated instance.
        """
        existing = self.load_secrets(config.tenant_id)
        assignment = self.store.get_assignment(config.tenant_id)
        stack = self.renderer.render(
            config,
            existing_secrets=existing,
            shared=assignment.is_shared if assignment is not None else None,
        )
        self.save_secrets(config.tenant_id, {
            key: stack.environment[key] for key in stack.secret_keys
        })

        previous = self.store.get_stack_record(config.tenant_id)
        record = StackRecord(
            tenant_id=config.tenant_id,
            state=StackState.RENDERED,
            instance_id=previous.instance_id if previous else None,
            stack_dir=previous.stack_dir if previous else None,
            project_name=stack.project_name,
            services=stack.service_names,
        )
        self.store.save_stack_record(record)
        logger.info(
            "stack_rendered",
            tenant_id=config.tenant_id,
            services=stack.service_names,
            reused_secrets=bool(existing),
        )
        return stack

    def placement_files(self, tenant_id: str, assignment: ComputeAssignment) -> dict[str, str]:
        """Compose, env and proxy files for running the stack on ``assignment``.

        Used when a stack moves between hosts: the data directories travel
        with the backup, the host-specific wiring is rendered again.
        """
        config = self.store.get_tenant_config(tenant_id)
        if config is None:
            raise TenantNotFoundError(tenant_id, record="config")
        stack = self.renderer.render(
            config,
            existing_secrets=self.load_secrets(tenant_id),
            shared=assignment.is_shared,
        )
        return {
            path: content for path, content in stack.files.items()
            if path in PLACEMENT_FILES
        }

    def load_secrets(self, tenant_id: str) -> Optional[dict[str, str]]:
        bucket = self.settings.bucket_name(tenant_id)
        try:
            response = self.s3.get_object(Bucket=bucket, Key=SECRETS_KEY)
        except ClientError as e:
            if error_code(e) in ("NoSuchKey", "NoSuchBucket", "404"):
                return None
            raise translate_client_error(e, f"s3:{bucket}/{SECRETS_KEY}") from e
        return _parse_env(response["Body"].read().decode("utf-8"))

    def save_secrets(self, tenant_id: str, values: dict[str, str]) -> None:
        bucket = self.settings.bucket_name(tenant_id)
        body = "".join(f"{key}={value}\n" for key, value in values.items())
        try:
            self.s3.put_object(
                Bucket=bucket,
                Key=SECRETS_KEY,
                Body=body.encode("utf-8"),
                ServerSideEncryption="AES256",
                ContentType="text/plain",
            )
        except ClientError as e:
            raise translate_client_error(e, f"s3:{bucket}/{SECRETS_KEY}") from e

    # ==================== Deploy ====================

    def deploy(self, stack: StackDefinition, assignment: ComputeAssignment) -> DeployResult:
        """Write the stack's files on the instance and start it.

        Returns as soon as the start command is accepted; health is
        observed separately by ``await_healthy``.
        """
        record = self._record(stack.tenant_id)
        if record.state != StackState.RENDERED:
            raise StackStateError(
                f"Stack for {stack.tenant_id} must be rendered before deploy",
                tenant_id=stack.tenant_id,
                state=record.state.value,
            )

        commands = self.deploy_commands(stack, assignment)
        command_id = self.runner.send(
            assignment.instance_id,
            commands,
            comment=f"deploy {stack.tenant_id}",
        )
        self._save(
            record,
            state=StackState.DEPLOYING,
            instance_id=assignment.instance_id,
            stack_dir=assignment.stack_dir,
            deploy_command_id=command_id,
            last_report=None,
        )
        logger.info(
            "stack_deploy_accepted",
            tenant_id=stack.tenant_id,
            instance_id=assignment.instance_id,
            command_id=command_id,
        )
        return DeployResult(
            tenant_id=stack.tenant_id,
            instance_id=assignment.instance_id,
            stack_dir=assignment.stack_dir,
            command_id=command_id,
        )

    @staticmethod
    def deploy_commands(stack: StackDefinition, assignment: ComputeAssignment) -> list[str]:
        root = assignment.stack_dir
        commands = [
            "set -euo pipefail",
            f"mkdir -p {root}",
            f"cd {root}",
        ]
        commands.extend(file_write_commands(stack.files))
        commands.extend([
            "chmod 600 .env",
            # Certificates survive redeploys
            "mkdir -p ssl && touch ssl/acme.json && chmod 600 ssl/acme.json",
        ])
        if assignment.is_shared:
            commands.append(
                f"docker network inspect {EDGE_NETWORK} >/dev/null 2>&1"
                f" || docker network create {EDGE_NETWORK}"
            )
        commands.append("docker compose pull && docker compose up -d --remove-orphans")
        return commands

    # ==================== Health ====================

    def await_healthy(
        self,
        tenant_id: str,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> HealthReport:
        """Poll service health until every service is healthy or time runs out.

        Args:
            tenant_id: Tenant whose stack was deployed
            timeout: Overall wait in seconds (``health_timeout`` by default)
            cancel: Stops polling without touching the stack

        Returns:
            HealthReport in state ``healthy``, ``degraded`` (some services
            healthy, or the start command failed) or ``timed_out``.
        """
        record = self._record(tenant_id)
        if record.state not in (StackState.DEPLOYING, StackState.AWAITING_HEALTH):
            raise StackStateError(
                f"Stack for {tenant_id} is not starting",
                tenant_id=tenant_id,
                state=record.state.value,
            )
        record = self._save(record, state=StackState.AWAITING_HEALTH)

        poll = PollConfig(
            interval=self.settings.health_poll_interval,
            timeout=timeout if timeout is not None else self.settings.health_timeout,
        )
        report = self._wait_for_services(
            tenant_id,
            record.instance_id,
            record.stack_dir,
            record.services,
            poll,
            cancel,
            deploy_command_id=record.deploy_command_id,
        )
        self._save(record, state=report.state, last_report=report)
        log = logger.info if report.ok else logger.warning
        log(
            "stack_health_settled",
            tenant_id=tenant_id,
            state=report.state.value,
            healthy=report.healthy,
            unhealthy=report.unhealthy,
            checks=report.checks,
        )
        return report

    def probe_health(
        self,
        tenant_id: str,
        assignment: ComputeAssignment,
        cancel: Optional[CancellationToken] = None,
    ) -> HealthReport:
        """Wait for a stack started outside ``deploy`` (restore, restart)."""
        record = self._record(tenant_id)
        return self._wait_for_services(
            tenant_id,
            assignment.instance_id,
            assignment.stack_dir,
            record.services,
            self.settings.health_poll,
            cancel,
        )

    def _wait_for_services(
        self,
        tenant_id: str,
        instance_id: str,
        stack_dir: str,
        expected: list[str],
        poll: PollConfig,
        cancel: Optional[CancellationToken],
        deploy_command_id: Optional[str] = None,
    ) -> HealthReport:
        observed: dict[str, ServiceHealth] = {}
        checks = 0
        start_confirmed = deploy_command_id is None

        def report(state: StackState, detail: Optional[str] = None) -> HealthReport:
            services = [observed.get(name) or ServiceHealth(name=name) for name in expected]
            return HealthReport(
                tenant_id=tenant_id,
                state=state,
                healthy=[s.name for s in services if s.healthy],
                unhealthy=[s.name for s in services if not s.healthy],
                services=services,
                checks=checks,
                detail=detail,
            )

        def check() -> Optional[HealthReport]:
            nonlocal checks, start_confirmed
            checks += 1
            if not start_confirmed:
                outcome = self.runner.get_outcome(deploy_command_id, instance_id)
                if outcome is None:
                    return None
                if not outcome.succeeded:
                    return report(
                        StackState.DEGRADED,
                        detail=f"start command {outcome.status}: {outcome.stderr[-300:]}",
                    )
                start_confirmed = True

            try:
                outcome = self.runner.run(
                    instance_id,
                    [f"cd {stack_dir}", PS_COMMAND],
                    comment=f"health {tenant_id}",
                    poll=self.settings.command_poll,
                    cancel=cancel,
                )
                observed.clear()
                observed.update(parse_compose_ps(outcome.stdout))
            except OperationCancelledError:
                raise
            except (StackBoxError, ValueError) as e:
                # One failed observation is not a verdict
                logger.warning("stack_health_check_failed", tenant_id=tenant_id, error=str(e))
                return None

            if all(name in observed and observed[name].healthy for name in expected):
                return report(StackState.HEALTHY)
            return None

        try:
            return poll_until(
                check,
                poll,
                description=f"stack {tenant_id} health",
                cancel=cancel,
                resource_id=instance_id,
            )
        except ProvisioningTimeoutError:
            partial = report(StackState.TIMED_OUT)
            if partial.healthy:
                return report(StackState.DEGRADED, detail="timed out with some services healthy")
            return report(StackState.TIMED_OUT, detail=f"no service healthy after {poll.timeout}s")

    # ==================== Post-start configuration ====================

    def configure_apps(self, config: TenantConfig, stack: StackDefinition) -> ConfigureReport:
        """Seed branding into the CRM and the file portal.

        Best-effort: failures are logged and returned, never raised.
        """
        record = self._record(config.tenant_id)
        if record.state != StackState.HEALTHY:
            raise StackStateError(
                f"Stack for {config.tenant_id} is not healthy",
                tenant_id=config.tenant_id,
                state=record.state.value,
            )

        result = ConfigureReport(tenant_id=config.tenant_id)
        actions = []
        if "crm" in stack.services:
            # Company name and sender come from ESPOCRM_CONFIG_* at startup
            actions.append(("crm_branding", ["docker compose exec -T crm php command.php rebuild"]))
        if "files" in stack.services:
            occ = "docker compose exec -T -u www-data files php occ"
            actions.append(("files_branding", [
                f"{occ} theming:config name {shlex.quote(config.display_name)}",
                f"{occ} theming:config color {shlex.quote(config.branding.theme_color)}",
                f"{occ} theming:config url {shlex.quote(f'https://{stack.hostname}')}",
            ]))

        for name, commands in actions:
            try:
                self.runner.run(
                    record.instance_id,
                    [f"cd {record.stack_dir}", *commands],
                    comment=f"{name} {config.tenant_id}",
                    poll=self.settings.command_poll,
                )
                result.applied.append(name)
            except StackBoxError as e:
                logger.warning(
                    "app_configuration_failed",
                    tenant_id=config.tenant_id,
                    action=name,
                    error=str(e),
                )
                result.failed[name] = str(e)

        logger.info(
            "apps_configured",
            tenant_id=config.tenant_id,
            applied=result.applied,
            failed=list(result.failed),
        )
        return result

    # ==================== Stop / start / teardown ====================

    def stop(self, tenant_id: str) -> StackRecord:
        """Stop the containers; files, volumes and storage stay in place."""
        record = self._record(tenant_id)
        if record.state == StackState.STOPPED:
            return record
        if record.state == StackState.TORN_DOWN or record.instance_id is None:
            raise StackStateError(
                f"Stack for {tenant_id} is not deployed",
                tenant_id=tenant_id,
                state=record.state.value,
            )
        self.runner.run(
            record.instance_id,
            [f"cd {record.stack_dir}", "docker compose stop"],
            comment=f"stop {tenant_id}",
            poll=self.settings.command_poll,
        )
        return self._save(record, state=StackState.STOPPED)

    def start(self, tenant_id: str) -> StackRecord:
        """Restart a stopped stack; health is observed with ``await_healthy``."""
        record = self._record(tenant_id)
        if record.state != StackState.STOPPED:
            raise StackStateError(
                f"Stack for {tenant_id} is not stopped",
                tenant_id=tenant_id,
                state=record.state.value,
            )
        command_id = self.runner.send(
            record.instance_id,
            [f"cd {record.stack_dir}", "docker compose up -d"],
            comment=f"start {tenant_id}",
        )
        return self._save(
            record,
            state=StackState.DEPLOYING,
            deploy_command_id=command_id,
            last_report=None,
        )

    def teardown(self, tenant_id: str) -> StackRecord:
        """Remove the composition and give the compute slot back.

        Shared compute only has its counter decremented; the tenant
        bucket is left untouched.
        """
        record = self._record(tenant_id)
        if record.state == StackState.TORN_DOWN:
            return record

        if record.instance_id is not None and record.stack_dir:
            directory = record.stack_dir
            self.runner.run(
                record.instance_id,
                [
                    f"if [ -d {directory} ]; then",
                    f"  cd {directory} && docker compose down --remove-orphans",
                    f"  cd / && rm -rf {directory}",
                    "fi",
                ],
                comment=f"teardown {tenant_id}",
                poll=self.settings.command_poll,
            )

        assignment = self.store.get_assignment(tenant_id)
        if assignment is not None and self.release_compute is not None:
            self.release_compute(assignment)

        return self._save(record, state=StackState.TORN_DOWN, deploy_command_id=None)

    def status(self, tenant_id: str) -> StackRecord:
        return self._record(tenant_id)

    @staticmethod
    def certificate_hostnames(stack: StackDefinition) -> list[str]:
        """Hostnames the proxy requests certificates for."""
        hosts = {url.removeprefix("https://") for url in stack.service_urls.values()}
        return sorted(hosts or {stack.hostname})
