"""Tests for the commercial trial lifecycle."""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from hypothesis import given, strategies as st

from fakes import client_error, make_settings
from stackbox.core.errors import InvalidTransitionError, MigrationStepFailedError, TenantNotFoundError
from stackbox.lifecycle import EventBridgePublisher, LoggingEventPublisher, TrialLifecycleManager, next_status
from stackbox.models import (
    STATUS_ORDER,
    AssignmentKind,
    ComputeAssignment,
    ReminderType,
    StackRecord,
    StackState,
    TransitionEvent,
    TrialState,
    TrialStatus,
)
from stackbox.storage import InMemoryStateStore

START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def trial_state(status=TrialStatus.TRIAL, started=START):
    return TrialState(
        tenant_id="acme01",
        status=status,
        trial_started_at=started,
        trial_ends_at=started + timedelta(days=14),
        grace_ends_at=started + timedelta(days=17),
    )


def shared_assignment(tenant_id="acme01"):
    return ComputeAssignment(
        tenant_id=tenant_id,
        kind=AssignmentKind.SHARED,
        instance_id="i-shared01",
        pool_instance_id="i-shared01",
        stack_dir=f"/opt/stackbox/trial-clients/{tenant_id}",
    )


class RacingStore(InMemoryStateStore):
    """Runs ``interloper`` once, just before the next trial-state write."""

    def __init__(self):
        super().__init__()
        self.interloper = None

    def save_trial_state(self, state, expected_version=None):
        interloper, self.interloper = self.interloper, None
        if interloper is not None:
            interloper()
        return super().save_trial_state(state, expected_version)


@pytest.fixture
def publisher():
    return LoggingEventPublisher()


@pytest.fixture
def stacks():
    return MagicMock()


@pytest.fixture
def provisioner():
    return MagicMock()


@pytest.fixture
def manager(platform_settings, store, stacks, provisioner, publisher):
    manager = TrialLifecycleManager(
        platform_settings,
        store,
        stacks=stacks,
        provisioner=provisioner,
        publisher=publisher,
        executor=ThreadPoolExecutor(max_workers=1),
        clock=lambda: START,
    )
    yield manager
    manager.shutdown()


class TestNextStatus:
    """Tests for the pure status computation."""

    @pytest.mark.parametrize("days,expected", [
        (0, TrialStatus.TRIAL),
        (13, TrialStatus.TRIAL),
        (14, TrialStatus.GRACE),
        (16, TrialStatus.GRACE),
        (17, TrialStatus.SUSPENDED),
        (20, TrialStatus.SUSPENDED),
    ])
    def test_status_by_age(self, days, expected):
        assert next_status(trial_state(), START + timedelta(days=days)) == expected

    def test_never_moves_backwards(self):
        grace = trial_state(status=TrialStatus.GRACE)
        assert next_status(grace, START + timedelta(days=1)) == TrialStatus.GRACE

    @given(hours=st.integers(min_value=-1000, max_value=5000))
    def test_paid_is_sticky(self, hours):
        """Property: no point in time moves a paid tenant."""
        state = trial_state(status=TrialStatus.PAID)
        assert next_status(state, START + timedelta(hours=hours)) == TrialStatus.PAID

    @given(
        first=st.integers(min_value=0, max_value=1000),
        gap=st.integers(min_value=0, max_value=1000),
    )
    def test_monotonic_in_time(self, first, gap):
        """Property: a later evaluation is never earlier on the path."""
        state = trial_state()
        earlier = next_status(state, START + timedelta(hours=first))
        later = next_status(state, START + timedelta(hours=first + gap))
        assert STATUS_ORDER[earlier] <= STATUS_ORDER[later]

    @given(hours=st.integers(min_value=0, max_value=1000))
    def test_pure(self, hours):
        state = trial_state()
        before = state.model_dump()
        now = START + timedelta(hours=hours)
        assert next_status(state, now) == next_status(state, now)
        assert state.model_dump() == before


class TestTransitions:
    """Tests for stored transitions and the sweep."""

    def test_create_trial_windows(self, manager):
        state = manager.create_trial("acme01")

        assert state.status == TrialStatus.TRIAL
        assert state.trial_ends_at == START + timedelta(days=14)
        assert state.grace_ends_at == START + timedelta(days=17)
        assert state.version == 1

    def test_create_trial_is_idempotent(self, manager):
        first = manager.create_trial("acme01")
        again = manager.create_trial("acme01", now=START + timedelta(days=3))

        assert again.trial_ends_at == first.trial_ends_at

    def test_evaluate_writes_nothing(self, manager, store):
        manager.create_trial("acme01")

        assert manager.evaluate("acme01", START + timedelta(days=15)).status == TrialStatus.GRACE
        assert store.get_trial_state("acme01").status == TrialStatus.TRIAL

    def test_late_sweep_lands_on_suspended(self, manager, store, stacks):
        manager.create_trial("acme01")
        store.save_stack_record(StackRecord(tenant_id="acme01", state=StackState.HEALTHY))
        now = START + timedelta(days=20)

        outcome = manager.apply_transition("acme01", now)

        assert outcome.changed
        assert outcome.status == TrialStatus.SUSPENDED
        stacks.stop.assert_called_once_with("acme01")
        state = store.get_trial_state("acme01")
        assert state.suspended_at == now
        assert state.retention_ends_at == now + timedelta(days=30)
        assert "stack_stopped" in outcome.suspension_actions
        assert "data_retained_until:2025-04-20" in outcome.suspension_actions

    def test_reapplying_is_a_noop(self, manager, publisher):
        manager.create_trial("acme01")
        now = START + timedelta(days=15)

        manager.apply_transition("acme01", now)
        outcome = manager.apply_transition("acme01", now)

        assert not outcome.changed
        assert [event.name for event in publisher.events] == ["trial->grace"]

    def test_failed_stop_is_reported_not_raised(self, manager, store, stacks):
        manager.create_trial("acme01")
        store.save_stack_record(StackRecord(tenant_id="acme01", state=StackState.HEALTHY))
        stacks.stop.side_effect = client_error("InvalidInstanceId")

        outcome = manager.apply_transition("acme01", START + timedelta(days=18))

        assert outcome.status == TrialStatus.SUSPENDED
        assert "stack_stop_failed" in outcome.suspension_actions

    def test_conversion_wins_race_with_sweep(self, platform_settings, stacks):
        store = RacingStore()
        manager = TrialLifecycleManager(platform_settings, store, stacks=stacks, clock=lambda: START)
        manager.create_trial("acme01")

        def convert():
            current = store.get_trial_state("acme01")
            InMemoryStateStore.save_trial_state(
                store,
                current.model_copy(update={"status": TrialStatus.PAID, "plan_id": "pro"}),
                expected_version=current.version,
            )

        store.interloper = convert
        outcome = manager.apply_transition("acme01", START + timedelta(days=30))

        assert outcome.status == TrialStatus.PAID
        assert not outcome.changed
        assert store.get_trial_state("acme01").status == TrialStatus.PAID
        stacks.stop.assert_not_called()
        manager.shutdown()

    def test_sweep_skips_paid_and_suspended(self, platform_settings):
        store = InMemoryStateStore()
        manager = TrialLifecycleManager(platform_settings, store, clock=lambda: START)
        manager.create_trial("fresh1", now=START)
        manager.create_trial("grace1", now=START - timedelta(days=15))
        manager.create_trial("gone01", now=START - timedelta(days=40))
        manager.register_paid("paid01", "pro", now=START - timedelta(days=60))

        report = manager.sweep(START)

        assert report.evaluated == 3
        assert {t.tenant_id: t.status for t in report.transitions} == {
            "grace1": TrialStatus.GRACE,
            "gone01": TrialStatus.SUSPENDED,
        }
        assert manager.sweep(START).transitions == []
        assert store.get_trial_state("paid01").status == TrialStatus.PAID
        manager.shutdown()

    def test_unknown_tenant(self, manager):
        with pytest.raises(TenantNotFoundError):
            manager.apply_transition("ghost1")


class TestConversion:
    """Tests for conversion to paid and the follow-up migration."""

    def test_conversion_from_trial_schedules_migration(self, manager, store, provisioner, publisher):
        manager.create_trial("acme01")
        store.save_assignment(shared_assignment())

        result = manager.convert_to_paid("acme01", "professional")

        assert result.status == TrialStatus.PAID
        assert result.migration_required
        assert result.migration_scheduled
        assert manager.await_migration("acme01", timeout=5) is True
        provisioner.migrate_to_dedicated.assert_called_once_with("acme01")
        state = store.get_trial_state("acme01")
        assert state.is_paid
        assert state.migration_required is False
        assert publisher.events[-1].name == "trial->paid"

    def test_migration_failure_keeps_paid(self, manager, store, provisioner):
        manager.create_trial("acme01")
        store.save_assignment(shared_assignment())
        provisioner.migrate_to_dedicated.side_effect = MigrationStepFailedError(
            "backup failed", step="backup_source"
        )

        manager.convert_to_paid("acme01", "professional")

        assert manager.await_migration("acme01", timeout=5) is False
        state = store.get_trial_state("acme01")
        assert state.status == TrialStatus.PAID
        assert state.migration_required is True
        assert "backup failed" in state.migration_error

    def test_retry_migration_clears_flag(self, manager, store, provisioner):
        manager.create_trial("acme01")
        store.save_assignment(shared_assignment())
        provisioner.migrate_to_dedicated.side_effect = [MigrationStepFailedError("boom"), None]
        manager.convert_to_paid("acme01", "professional")
        manager.await_migration("acme01", timeout=5)

        assert manager.retry_migration("acme01") is True
        assert store.get_trial_state("acme01").migration_required is False

    def test_retry_without_pending_migration(self, manager):
        manager.create_trial("acme01")
        with pytest.raises(InvalidTransitionError):
            manager.retry_migration("acme01")

    def test_conversion_from_grace(self, manager, store):
        manager.create_trial("acme01")
        manager.apply_transition("acme01", START + timedelta(days=15))

        result = manager.convert_to_paid("acme01", "starter", now=START + timedelta(days=15))

        assert result.previous_status == TrialStatus.GRACE
        assert not result.migration_required

    def test_conversion_is_idempotent(self, manager, publisher):
        manager.create_trial("acme01")
        manager.convert_to_paid("acme01", "professional")

        again = manager.convert_to_paid("acme01", "enterprise")

        assert again.already_paid
        assert again.plan_id == "professional"
        assert [event.name for event in publisher.events] == ["trial->paid"]

    def test_conversion_from_suspended_rejected(self, manager):
        manager.create_trial("acme01")
        manager.apply_transition("acme01", START + timedelta(days=18))

        with pytest.raises(InvalidTransitionError) as exc_info:
            manager.convert_to_paid("acme01", "professional")
        assert exc_info.value.current_status == "suspended"


class TestReactivation:
    """Tests for manual reactivation of suspended tenants."""

    def test_reactivate_into_trial_restarts_stack(self, manager, store, stacks):
        manager.create_trial("acme01")
        store.save_stack_record(StackRecord(tenant_id="acme01", state=StackState.STOPPED))
        manager.apply_transition("acme01", START + timedelta(days=18))
        now = START + timedelta(days=25)

        state = manager.reactivate("acme01", TrialStatus.TRIAL, now=now)

        assert state.status == TrialStatus.TRIAL
        assert state.trial_ends_at == now + timedelta(days=14)
        assert state.retention_ends_at is None
        stacks.start.assert_called_once_with("acme01")
        stacks.await_healthy.assert_called_once_with("acme01")

    def test_reactivate_into_paid_schedules_migration(self, manager, store, provisioner):
        manager.create_trial("acme01")
        store.save_assignment(shared_assignment())
        manager.apply_transition("acme01", START + timedelta(days=18))

        state = manager.reactivate("acme01", "paid", plan_id="starter")

        assert state.is_paid
        assert state.migration_required
        assert manager.await_migration("acme01", timeout=5) is True

    def test_only_suspended_tenants_reactivate(self, manager):
        manager.create_trial("acme01")
        with pytest.raises(InvalidTransitionError):
            manager.reactivate("acme01", TrialStatus.TRIAL)


class TestDescribe:
    """Tests for tenant-facing status messages."""

    def test_trial_reminder(self, manager):
        manager.create_trial("acme01")

        notice = manager.describe("acme01", now=START + timedelta(days=7))

        assert notice.days_remaining == 7
        assert notice.reminder == ReminderType.SEVEN_DAYS
        assert notice.message == "Your free trial ends in 7 days on March 15, 2025."

    def test_grace_message(self, manager):
        manager.create_trial("acme01")

        notice = manager.describe("acme01", now=START + timedelta(days=15))

        assert notice.status == TrialStatus.GRACE
        assert notice.reminder == ReminderType.EXPIRED
        assert "March 18, 2025" in notice.message

    def test_suspended_message_names_retention(self):
        store = InMemoryStateStore()
        manager = TrialLifecycleManager(make_settings(retention_days=30), store, clock=lambda: START)
        manager.create_trial("acme01")
        manager.apply_transition("acme01", START + timedelta(days=20))

        notice = manager.describe("acme01", now=START + timedelta(days=20))

        assert notice.status == TrialStatus.SUSPENDED
        assert notice.days_remaining == 30
        assert "kept for 30 days" in notice.message
        manager.shutdown()

    def test_paid_message(self, manager, store):
        manager.register_paid("acme01", "professional")
        assert manager.describe("acme01").message == "Your professional plan is active."


class TestEventBridgePublisher:
    """Tests for transition event delivery."""

    @pytest.fixture
    def event(self):
        return TransitionEvent(
            tenant_id="acme01",
            from_status=TrialStatus.TRIAL,
            to_status=TrialStatus.GRACE,
            occurred_at=START,
            reason="schedule",
        )

    def test_publishes_entry(self, event):
        client = MagicMock()
        client.put_events.return_value = {"FailedEntryCount": 0}

        EventBridgePublisher("stackbox-events", events_client=client).publish(event)

        entry = client.put_events.call_args.kwargs["Entries"][0]
        assert entry["EventBusName"] == "stackbox-events"
        assert entry["Source"] == "stackbox.lifecycle"
        assert json.loads(entry["Detail"])["transition"] == "trial->grace"

    def test_delivery_errors_swallowed(self, event):
        client = MagicMock()
        client.put_events.side_effect = client_error("AccessDeniedException")

        EventBridgePublisher("stackbox-events", events_client=client).publish(event)

        client.put_events.assert_called_once()
