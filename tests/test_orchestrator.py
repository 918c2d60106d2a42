"""End-to-end tests of the provisioning pipeline against in-memory clouds."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from fakes import (
    FakeEC2,
    FakeRoute53,
    FakeRunner,
    FakeS3,
    FakeSES,
    all_healthy,
    client_error,
    compose_ps,
    make_settings,
)
from stackbox.containers import ContainerStackService
from stackbox.core.errors import (
    CapacityExhaustedError,
    ConfigValidationError,
    ProvisioningFailedError,
    TenantNotFoundError,
)
from stackbox.core.resilience import CancellationToken, RetryConfig
from stackbox.lifecycle import LoggingEventPublisher, TrialLifecycleManager
from stackbox.models import SETUP_DELAYED_MESSAGE, AssignmentKind, ResultStatus, TrialStatus
from stackbox.orchestrator import Notifier, ProvisioningOrchestrator
from stackbox.provisioning import ComputeAllocator, ResourceProvisioner
from stackbox.storage import InMemoryStateStore

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
SERVICES = ("proxy", "website", "crm", "files", "database")


class Pipeline:
    """Every real component wired to fake AWS clients."""

    def __init__(self, settings=None, ps_output=None):
        self.settings = settings or make_settings()
        self.store = InMemoryStateStore()
        self.ec2 = FakeEC2()
        self.route53 = FakeRoute53(zones=[self.settings.base_domain])
        self.s3 = FakeS3()
        self.ses = FakeSES()
        self.runner = FakeRunner(ps_output=all_healthy(*SERVICES) if ps_output is None else ps_output)
        self.allocator = ComputeAllocator(self.settings, self.store, ec2_client=self.ec2)
        self.provisioner = ResourceProvisioner(
            self.settings,
            self.store,
            self.allocator,
            route53_client=self.route53,
            s3_client=self.s3,
            ses_client=self.ses,
        )
        self.stacks = ContainerStackService(
            self.settings,
            self.store,
            self.runner,
            s3_client=self.s3,
            release_compute=self.provisioner.release_compute,
        )
        self.publisher = LoggingEventPublisher()
        self.lifecycle = TrialLifecycleManager(
            self.settings,
            self.store,
            stacks=self.stacks,
            provisioner=self.provisioner,
            publisher=self.publisher,
            clock=lambda: NOW,
        )
        self.notifier = MagicMock(spec=Notifier)
        self.sleeps = []
        self.orchestrator = ProvisioningOrchestrator(
            self.store,
            self.provisioner,
            self.stacks,
            self.lifecycle,
            notifier=self.notifier,
            capacity_retry=RetryConfig(
                max_retries=2, jitter=False, retryable_exceptions=(CapacityExhaustedError,)
            ),
            sleep=self.sleeps.append,
        )


@pytest.fixture
def pipeline():
    pipeline = Pipeline()
    yield pipeline
    pipeline.lifecycle.shutdown()


class TestSuccessfulRuns:
    """Tests for runs that end with a healthy stack."""

    def test_trial_signup(self, pipeline, raw_config):
        result = pipeline.orchestrator.run(raw_config)

        assert result.status == ResultStatus.SUCCEEDED
        assert result.hostname == "acme01.stackbox.io"
        assert result.assignment.kind == AssignmentKind.SHARED
        assert sorted(result.service_urls) == ["crm", "files", "website"]
        assert result.credentials.username == "admin"
        assert result.credentials.password
        assert result.certificate.hostnames == [
            "acme01.stackbox.io", "crm.acme01.stackbox.io", "files.acme01.stackbox.io",
        ]

        trial = pipeline.store.get_trial_state("acme01")
        assert trial.status == TrialStatus.TRIAL
        assert trial.trial_ends_at == NOW + timedelta(days=14)
        pipeline.notifier.notify_ready.assert_called_once()

    def test_tenants_keep_their_own_hostnames(self, pipeline, raw_config):
        first = pipeline.orchestrator.run(raw_config)
        second = pipeline.orchestrator.run({**raw_config, "tenantId": "beta02"})

        with pytest.raises(ConfigValidationError):
            pipeline.orchestrator.run({**raw_config, "tenantId": "evil03", "subdomain": "acme01"})

        assert second.hostname == "beta02.stackbox.io"
        assert len(pipeline.route53.records) == 4
        assert pipeline.route53.value_of("acme01.stackbox.io") == first.assignment.address
        assert pipeline.route53.value_of("beta02.stackbox.io") == second.assignment.address
        assert pipeline.store.get_tenant_config("evil03") is None

    def test_stored_result_has_no_credentials(self, pipeline, raw_config):
        pipeline.orchestrator.run(raw_config)

        stored = pipeline.store.get_latest_result("acme01")
        assert stored.succeeded
        assert stored.credentials is None

    def test_steps_run_in_order(self, pipeline, raw_config):
        pipeline.orchestrator.run(raw_config)

        comments = pipeline.runner.comments()
        assert comments[0] == "deploy acme01"
        assert comments[1] == "health acme01"
        assert comments[-2:] == ["crm_branding acme01", "files_branding acme01"]

    def test_paid_signup_gets_dedicated_compute(self, pipeline, raw_config):
        raw_config.update({"tier": "paid", "planId": "professional"})

        result = pipeline.orchestrator.run(raw_config)

        assert result.assignment.kind == AssignmentKind.DEDICATED
        assert "ports" in pipeline.stacks.render(
            pipeline.store.get_tenant_config("acme01")
        ).compose["services"]["proxy"]
        trial = pipeline.store.get_trial_state("acme01")
        assert trial.status == TrialStatus.PAID
        assert trial.plan_id == "professional"

    def test_capacity_exhaustion_retried(self, pipeline, raw_config):
        pipeline.ec2.launch_error = client_error("InsufficientInstanceCapacity")
        pipeline.orchestrator.capacity_retry._sleep = lambda delay: setattr(
            pipeline.ec2, "launch_error", None
        )

        result = pipeline.orchestrator.run(raw_config)

        assert result.succeeded
        assert len(pipeline.ec2.launched) == 1

    def test_notifier_failure_does_not_fail_run(self, pipeline, raw_config):
        pipeline.notifier.notify_ready.side_effect = RuntimeError("smtp down")

        result = pipeline.orchestrator.run(raw_config)

        assert result.succeeded
        assert pipeline.store.get_latest_result("acme01").succeeded

    def test_run_many(self, pipeline, raw_config):
        second = dict(raw_config, tenantId="beta02", email="owner@beta.example")
        invalid = dict(raw_config, tenantId="X")

        outcomes = pipeline.orchestrator.run_many([raw_config, second, invalid], max_workers=3)

        assert outcomes[0].tenant_id == "acme01"
        assert outcomes[1].tenant_id == "beta02"
        assert isinstance(outcomes[2], ConfigValidationError)
        assert outcomes[0].assignment.instance_id == outcomes[1].assignment.instance_id
        assert pipeline.store.list_pool_instances()[0].tenant_count == 2

    def test_deployment_status(self, pipeline, raw_config):
        pipeline.orchestrator.run(raw_config)

        status = pipeline.orchestrator.get_deployment_status("acme01")

        assert status.stack_state == "healthy"
        assert status.commercial_status == "trial"
        assert status.assignment_kind == "shared"
        assert status.last_result_status == "succeeded"
        assert status.user_message == "Your business tools are ready at https://acme01.stackbox.io"

    def test_deployment_status_unknown_tenant(self, pipeline):
        with pytest.raises(TenantNotFoundError):
            pipeline.orchestrator.get_deployment_status("ghost1")


class TestFailedRuns:
    """Tests for rejected, failed and cancelled runs."""

    def test_invalid_config_touches_nothing(self, pipeline, raw_config):
        raw_config["email"] = "not-an-email"

        with pytest.raises(ConfigValidationError) as exc_info:
            pipeline.orchestrator.run(raw_config)

        assert exc_info.value.details["failed_checks"] == ["email"]
        assert pipeline.s3.buckets == {}
        assert pipeline.ec2.launched == []
        assert pipeline.store.get_tenant_config("acme01") is None

    def test_degraded_stack_rolls_back_in_reverse(self, raw_config):
        pipeline = Pipeline(
            settings=make_settings(health_timeout=0.05),
            ps_output=compose_ps({
                "proxy": "healthy", "website": "healthy", "crm": "unhealthy",
                "files": "healthy", "database": "healthy",
            }),
        )

        with pytest.raises(ProvisioningFailedError) as exc_info:
            pipeline.orchestrator.run(raw_config)

        failure = exc_info.value.result.failure
        assert failure.failed_step == "await_health"
        assert failure.error_code == "DEPLOYMENT_DEGRADED"
        assert failure.compensated == ["stack", "dns_record", "shared_slot"]
        # The bucket already holds the stack secrets
        assert failure.pending_cleanup[0].startswith("storage_bucket")

        assert pipeline.route53.records == {}
        assert pipeline.store.list_pool_instances()[0].tenant_count == 0
        assert pipeline.runner.find("stop acme01")

        stored = pipeline.store.get_latest_result("acme01")
        assert stored.status == ResultStatus.FAILED
        assert stored.user_message == SETUP_DELAYED_MESSAGE
        assert pipeline.store.get_trial_state("acme01") is None
        pipeline.notifier.notify_delayed.assert_called_once()
        pipeline.lifecycle.shutdown()

    def test_failed_repeat_run_keeps_live_tenant(self, raw_config):
        """A duplicate submission that fails must not tear down the running tenant."""
        pipeline = Pipeline(settings=make_settings(health_timeout=0.05))
        first = pipeline.orchestrator.run(raw_config)
        pipeline.runner.ps_output = compose_ps({
            "proxy": "healthy", "website": "healthy", "crm": "unhealthy",
            "files": "healthy", "database": "healthy",
        })

        with pytest.raises(ProvisioningFailedError) as exc_info:
            pipeline.orchestrator.run(raw_config)

        failure = exc_info.value.result.failure
        assert failure.failed_step == "await_health"
        assert failure.compensated == []
        assert pipeline.store.list_pool_instances()[0].tenant_count == 1
        assert pipeline.store.get_assignment("acme01").instance_id == first.assignment.instance_id
        assert pipeline.route53.value_of("acme01.stackbox.io") == first.assignment.address
        assert len(pipeline.route53.records) == 2
        assert not pipeline.runner.find("stop acme01")
        pipeline.lifecycle.shutdown()

    def test_failure_message_hides_infrastructure(self, raw_config):
        pipeline = Pipeline(settings=make_settings(health_timeout=0.05), ps_output="")

        with pytest.raises(ProvisioningFailedError) as exc_info:
            pipeline.orchestrator.run(raw_config)

        result = exc_info.value.result
        assert "i-0" not in result.user_message
        assert "timed_out" in result.failure.detail
        pipeline.lifecycle.shutdown()

    def test_cancelled_run_leaves_resources(self, raw_config):
        pipeline = Pipeline(settings=make_settings(health_timeout=30.0), ps_output="")
        token = CancellationToken()
        threading.Timer(0.1, token.cancel, args=("operator abort",)).start()

        with pytest.raises(ProvisioningFailedError) as exc_info:
            pipeline.orchestrator.run(raw_config, cancel=token)

        failure = exc_info.value.result.failure
        assert failure.cancelled
        assert failure.failed_step == "await_health"
        assert failure.compensated == []
        assert len(pipeline.route53.records) == 2
        assert pipeline.store.list_pool_instances()[0].tenant_count == 1
        pipeline.notifier.notify_delayed.assert_not_called()
        pipeline.lifecycle.shutdown()

    def test_capacity_exhausted_after_retries(self, pipeline, raw_config):
        pipeline.ec2.launch_error = client_error("InsufficientInstanceCapacity")

        with pytest.raises(ProvisioningFailedError) as exc_info:
            pipeline.orchestrator.run(raw_config)

        failure = exc_info.value.result.failure
        assert failure.failed_step == "provision_resources"
        assert failure.error_kind == "capacity_exhausted"
        assert pipeline.sleeps == [1.0, 2.0]
        assert failure.compensated == ["storage_bucket"]
