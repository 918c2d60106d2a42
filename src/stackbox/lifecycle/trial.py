"""Commercial lifecycle of tenants: trial, grace, suspended, paid.

Statuses are computed from stored timestamps, so a late sweep still
lands on the right status. ``paid`` is a one-way gate: the sweep's
``evaluate`` never moves a paid tenant, and a lost write race re-reads
the stored state before deciding again.
"""

import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stackbox.core import get_logger
from stackbox.core.config import PlatformSettings
from stackbox.core.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    StackBoxError,
    TenantNotFoundError,
)
from stackbox.lifecycle.events import EventPublisher, LoggingEventPublisher
from stackbox.models import (
    ConversionResult,
    ReminderType,
    STATUS_ORDER,
    StackState,
    StatusNotice,
    SweepReport,
    TransitionEvent,
    TransitionOutcome,
    TrialState,
    TrialStatus,
    utcnow,
)
from stackbox.storage.base import StateStore

logger = get_logger(__name__)

REMINDERS = {
    7: ReminderType.SEVEN_DAYS,
    3: ReminderType.THREE_DAYS,
    1: ReminderType.FINAL_WARNING,
}

FAILURE_TYPES = (StackBoxError, ClientError, BotoCoreError)


def _days_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds() / 86400))


def next_status(state: TrialState, now: datetime) -> TrialStatus:
    """Status the stored timestamps call for at ``now``.

    ``paid`` and ``suspended`` only change through explicit actions, and
    the automatic path never moves backwards.
    """
    if state.status in (TrialStatus.PAID, TrialStatus.SUSPENDED):
        return state.status
    if now < state.trial_ends_at:
        computed = TrialStatus.TRIAL
    elif now < state.grace_ends_at:
        computed = TrialStatus.GRACE
    else:
        computed = TrialStatus.SUSPENDED
    return max(computed, state.status, key=STATUS_ORDER.__getitem__)


class TrialLifecycleManager:
    """Owns every tenant's TrialState."""

    def __init__(
        self,
        settings: PlatformSettings,
        store: StateStore,
        stacks=None,
        provisioner=None,
        publisher: Optional[EventPublisher] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], datetime] = utcnow,
        max_write_attempts: int = 10,
    ):
        """Initialize the manager.

        Args:
            settings: Platform settings (trial, grace and retention lengths)
            store: Durable state holding trial states
            stacks: ContainerStackService used to stop and restart stacks
            provisioner: ResourceProvisioner used for migrations
            publisher: Destination of transition events
            executor: Runs migrations in the background
            clock: Source of "now" when callers pass none
            max_write_attempts: Conditional-write attempts before giving up
        """
        self.settings = settings
        self.store = store
        self.stacks = stacks
        self.provisioner = provisioner
        self.publisher = publisher or LoggingEventPublisher()
        self.executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="stackbox-migration"
        )
        self.clock = clock
        self.max_write_attempts = max_write_attempts
        self._migrations: dict[str, Future] = {}
        self._lock = threading.Lock()

    def _load(self, tenant_id: str) -> TrialState:
        state = self.store.get_trial_state(tenant_id)
        if state is None:
            raise TenantNotFoundError(tenant_id, record="trial")
        return state

    def _emit(self, state: TrialState, previous: TrialStatus, now: datetime, reason: str) -> None:
        self.publisher.publish(TransitionEvent(
            tenant_id=state.tenant_id,
            from_status=previous,
            to_status=state.status,
            occurred_at=now,
            plan_id=state.plan_id,
            reason=reason,
        ))

    # ==================== Creation ====================

    def create_trial(self, tenant_id: str, now: Optional[datetime] = None) -> TrialState:
        """Start a trial; an existing record is returned unchanged."""
        existing = self.store.get_trial_state(tenant_id)
        if existing is not None:
            return existing

        now = now or self.clock()
        trial_ends = now + timedelta(days=self.settings.trial_days)
        state = TrialState(
            tenant_id=tenant_id,
            status=TrialStatus.TRIAL,
            trial_started_at=now,
            trial_ends_at=trial_ends,
            grace_ends_at=trial_ends + timedelta(days=self.settings.grace_days),
            updated_at=now,
        )
        try:
            saved = self.store.save_trial_state(state, expected_version=None)
        except ConcurrentModificationError:
            return self._load(tenant_id)
        logger.info("trial_created", tenant_id=tenant_id, trial_ends_at=trial_ends.isoformat())
        return saved

    def register_paid(
        self,
        tenant_id: str,
        plan_id: str,
        now: Optional[datetime] = None,
    ) -> TrialState:
        """Record a tenant that signed up on a paid plan directly."""
        existing = self.store.get_trial_state(tenant_id)
        if existing is not None:
            return existing

        now = now or self.clock()
        state = TrialState(
            tenant_id=tenant_id,
            status=TrialStatus.PAID,
            trial_started_at=now,
            trial_ends_at=now,
            grace_ends_at=now,
            plan_id=plan_id,
            converted_at=now,
            updated_at=now,
        )
        try:
            saved = self.store.save_trial_state(state, expected_version=None)
        except ConcurrentModificationError:
            return self._load(tenant_id)
        logger.info("paid_tenant_registered", tenant_id=tenant_id, plan_id=plan_id)
        return saved

    # ==================== Time-driven transitions ====================

    def evaluate(self, tenant_id: str, now: datetime) -> TrialState:
        """Would-be state at ``now``; nothing is written."""
        state = self._load(tenant_id)
        return state.model_copy(update={"status": next_status(state, now)})

    def apply_transition(self, tenant_id: str, now: Optional[datetime] = None) -> TransitionOutcome:
        """Persist what ``evaluate`` computes.

        Entering ``suspended`` stops the stack and starts the retention
        window; storage and DNS stay in place. Re-applying is a no-op.
        """
        now = now or self.clock()
        for _ in range(self.max_write_attempts):
            state = self._load(tenant_id)
            status = next_status(state, now)
            if status == state.status:
                actions = []
                if status == TrialStatus.SUSPENDED:
                    actions = self._enforce_suspension(tenant_id)
                return TransitionOutcome(
                    tenant_id=tenant_id,
                    previous_status=state.status,
                    status=status,
                    changed=False,
                    suspension_actions=actions,
                )

            changes = {"status": status, "updated_at": now}
            if status == TrialStatus.SUSPENDED:
                changes["suspended_at"] = now
                changes["retention_ends_at"] = now + timedelta(days=self.settings.retention_days)
            try:
                saved = self.store.save_trial_state(
                    state.model_copy(update=changes),
                    expected_version=state.version,
                )
            except ConcurrentModificationError:
                logger.info("trial_transition_raced", tenant_id=tenant_id, attempted=status.value)
                continue

            logger.info(
                "trial_status_changed",
                tenant_id=tenant_id,
                from_status=state.status.value,
                to_status=status.value,
            )
            self._emit(saved, state.status, now, reason="schedule")
            actions = []
            if status == TrialStatus.SUSPENDED:
                actions = self._enforce_suspension(tenant_id)
                actions.append(f"data_retained_until:{saved.retention_ends_at.date().isoformat()}")
            return TransitionOutcome(
                tenant_id=tenant_id,
                previous_status=state.status,
                status=status,
                changed=True,
                suspension_actions=actions,
            )

        raise ConcurrentModificationError(
            f"Could not apply transition for {tenant_id}",
            key=f"TENANT#{tenant_id}",
        )

    def _enforce_suspension(self, tenant_id: str) -> list[str]:
        """Stop a suspended tenant's stack if it still runs."""
        if self.stacks is None:
            return []
        record = self.store.get_stack_record(tenant_id)
        if record is None or record.state in (StackState.STOPPED, StackState.TORN_DOWN):
            return []
        try:
            self.stacks.stop(tenant_id)
        except FAILURE_TYPES as e:
            # Retried by the next sweep
            logger.error("suspension_stop_failed", tenant_id=tenant_id, error=str(e))
            return ["stack_stop_failed"]
        logger.info("suspended_stack_stopped", tenant_id=tenant_id)
        return ["stack_stopped"]

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Apply transitions to every tenant still on the automatic path."""
        now = now or self.clock()
        report = SweepReport(ran_at=now)
        for state in self.store.list_trial_states([TrialStatus.TRIAL, TrialStatus.GRACE]):
            report.evaluated += 1
            try:
                outcome = self.apply_transition(state.tenant_id, now)
            except FAILURE_TYPES as e:
                logger.error("trial_sweep_tenant_failed", tenant_id=state.tenant_id, error=str(e))
                report.failures[state.tenant_id] = str(e)
                continue
            if outcome.changed:
                report.transitions.append(outcome)

        logger.info(
            "trial_sweep_completed",
            evaluated=report.evaluated,
            transitions=len(report.transitions),
            failures=len(report.failures),
        )
        return report

    # ==================== Conversion ====================

    def convert_to_paid(
        self,
        tenant_id: str,
        plan_id: str,
        now: Optional[datetime] = None,
    ) -> ConversionResult:
        """Mark the tenant paid, then migrate it off shared compute.

        The status write happens first and is never undone; a failed
        migration only leaves ``migration_required`` set.
        """
        now = now or self.clock()
        for _ in range(self.max_write_attempts):
            state = self._load(tenant_id)
            if state.status == TrialStatus.PAID:
                return ConversionResult(
                    tenant_id=tenant_id,
                    plan_id=state.plan_id or plan_id,
                    previous_status=TrialStatus.PAID,
                    converted_at=state.converted_at or now,
                    migration_required=state.migration_required,
                    already_paid=True,
                )
            if state.status == TrialStatus.SUSPENDED:
                raise InvalidTransitionError(
                    f"Tenant {tenant_id} is suspended; reactivate it instead",
                    tenant_id=tenant_id,
                    current_status=state.status.value,
                    requested_status=TrialStatus.PAID.value,
                )

            assignment = self.store.get_assignment(tenant_id)
            needs_migration = assignment is not None and assignment.is_shared
            try:
                saved = self.store.save_trial_state(
                    state.model_copy(update={
                        "status": TrialStatus.PAID,
                        "plan_id": plan_id,
                        "converted_at": now,
                        "migration_required": needs_migration,
                        "migration_error": None,
                        "updated_at": now,
                    }),
                    expected_version=state.version,
                )
            except ConcurrentModificationError:
                logger.info("conversion_raced", tenant_id=tenant_id)
                continue
            break
        else:
            raise ConcurrentModificationError(
                f"Could not record conversion for {tenant_id}",
                key=f"TENANT#{tenant_id}",
            )

        logger.info(
            "tenant_converted",
            tenant_id=tenant_id,
            plan_id=plan_id,
            previous_status=state.status.value,
            migration_required=needs_migration,
        )
        self._emit(saved, state.status, now, reason="conversion")

        scheduled = False
        if needs_migration:
            scheduled = self._schedule_migration(tenant_id)
        return ConversionResult(
            tenant_id=tenant_id,
            plan_id=plan_id,
            previous_status=state.status,
            converted_at=now,
            migration_required=needs_migration,
            migration_scheduled=scheduled,
        )

    def _schedule_migration(self, tenant_id: str) -> bool:
        if self.provisioner is None:
            logger.warning("migration_not_configured", tenant_id=tenant_id)
            return False
        with self._lock:
            running = self._migrations.get(tenant_id)
            if running is not None and not running.done():
                return True
            self._migrations[tenant_id] = self.executor.submit(self._run_migration, tenant_id)
        return True

    def _run_migration(self, tenant_id: str) -> bool:
        try:
            self.provisioner.migrate_to_dedicated(tenant_id)
        except FAILURE_TYPES as e:
            logger.error("tenant_migration_failed", tenant_id=tenant_id, error=str(e))
            self._set_migration_flag(tenant_id, required=True, error=str(e))
            return False
        self._set_migration_flag(tenant_id, required=False, error=None)
        logger.info("tenant_migration_finished", tenant_id=tenant_id)
        return True

    def _set_migration_flag(self, tenant_id: str, required: bool, error: Optional[str]) -> None:
        for _ in range(self.max_write_attempts):
            state = self._load(tenant_id)
            try:
                self.store.save_trial_state(
                    state.model_copy(update={
                        "migration_required": required,
                        "migration_error": error,
                        "updated_at": self.clock(),
                    }),
                    expected_version=state.version,
                )
                return
            except ConcurrentModificationError:
                continue
        logger.error("migration_flag_not_written", tenant_id=tenant_id, required=required)

    def await_migration(self, tenant_id: str, timeout: Optional[float] = None) -> Optional[bool]:
        """Wait for a scheduled migration; None when none was scheduled."""
        with self._lock:
            future = self._migrations.get(tenant_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def retry_migration(self, tenant_id: str) -> bool:
        """Operator retry of a failed migration; resumes where it stopped."""
        state = self._load(tenant_id)
        if not (state.is_paid and state.migration_required):
            raise InvalidTransitionError(
                f"Tenant {tenant_id} has no pending migration",
                tenant_id=tenant_id,
                current_status=state.status.value,
            )
        return self._run_migration(tenant_id)

    # ==================== Manual reactivation ====================

    def reactivate(
        self,
        tenant_id: str,
        status: TrialStatus,
        now: Optional[datetime] = None,
        plan_id: Optional[str] = None,
    ) -> TrialState:
        """Bring a suspended tenant back into ``trial`` or ``paid``."""
        now = now or self.clock()
        status = TrialStatus(status)
        state = self._load(tenant_id)
        if state.status != TrialStatus.SUSPENDED or status not in (TrialStatus.TRIAL, TrialStatus.PAID):
            raise InvalidTransitionError(
                f"Cannot reactivate {tenant_id} from {state.status.value} into {status.value}",
                tenant_id=tenant_id,
                current_status=state.status.value,
                requested_status=status.value,
            )

        changes = {
            "status": status,
            "suspended_at": None,
            "retention_ends_at": None,
            "reactivated_at": now,
            "updated_at": now,
        }
        needs_migration = False
        if status == TrialStatus.TRIAL:
            trial_ends = now + timedelta(days=self.settings.trial_days)
            changes.update({
                "trial_started_at": now,
                "trial_ends_at": trial_ends,
                "grace_ends_at": trial_ends + timedelta(days=self.settings.grace_days),
            })
        else:
            assignment = self.store.get_assignment(tenant_id)
            needs_migration = assignment is not None and assignment.is_shared
            changes.update({
                "plan_id": plan_id or state.plan_id,
                "converted_at": now,
                "migration_required": needs_migration,
                "migration_error": None,
            })

        saved = self.store.save_trial_state(
            state.model_copy(update=changes),
            expected_version=state.version,
        )
        logger.info("tenant_reactivated", tenant_id=tenant_id, status=status.value)
        self._emit(saved, TrialStatus.SUSPENDED, now, reason="reactivation")

        if self.stacks is not None:
            record = self.store.get_stack_record(tenant_id)
            if record is not None and record.state == StackState.STOPPED:
                self.stacks.start(tenant_id)
                # Leaves the stack healthy, degraded or timed_out instead of deploying
                report = self.stacks.await_healthy(tenant_id)
                log = logger.info if report.ok else logger.warning
                log("reactivated_stack_settled", tenant_id=tenant_id, state=report.state.value)
        if needs_migration:
            self._schedule_migration(tenant_id)
        return saved

    # ==================== Tenant-facing status ====================

    def describe(self, tenant_id: str, now: Optional[datetime] = None) -> StatusNotice:
        """Tenant-facing description of the status and what happens next."""
        now = now or self.clock()
        state = self.evaluate(tenant_id, now)

        if state.status == TrialStatus.TRIAL:
            days = _days_until(state.trial_ends_at, now)
            return StatusNotice(
                tenant_id=tenant_id,
                status=state.status,
                days_remaining=days,
                suspends_at=state.grace_ends_at,
                reminder=REMINDERS.get(days),
                message=(
                    f"Your free trial ends in {days} day{'s' if days != 1 else ''} "
                    f"on {state.trial_ends_at:%B %d, %Y}."
                ),
            )

        if state.status == TrialStatus.GRACE:
            days = _days_until(state.grace_ends_at, now)
            return StatusNotice(
                tenant_id=tenant_id,
                status=state.status,
                days_remaining=days,
                suspends_at=state.grace_ends_at,
                reminder=ReminderType.EXPIRED,
                message=(
                    "Your free trial has ended. Your services keep running until "
                    f"{state.grace_ends_at:%B %d, %Y}; upgrade before then to avoid suspension."
                ),
            )

        if state.status == TrialStatus.SUSPENDED:
            retention_ends = state.retention_ends_at or (
                state.grace_ends_at + timedelta(days=self.settings.retention_days)
            )
            days = _days_until(retention_ends, now)
            return StatusNotice(
                tenant_id=tenant_id,
                status=state.status,
                days_remaining=days,
                retention_ends_at=retention_ends,
                message=(
                    "Your services are suspended. Your files and data are kept for "
                    f"{self.settings.retention_days} days, until {retention_ends:%B %d, %Y} "
                    f"({days} day{'s' if days != 1 else ''} left). Upgrade to restore access."
                ),
            )

        message = f"Your {state.plan_id or 'paid'} plan is active."
        if state.migration_required:
            message += " We're moving your services to dedicated resources."
        return StatusNotice(
            tenant_id=tenant_id,
            status=state.status,
            days_remaining=0,
            message=message,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
