"""
In-memory implementation of StateStore.

This implementation is suitable for local development and testing.
All data is stored in memory and lost when the process terminates.
A single re-entrant lock gives the conditional writes the same
atomicity the DynamoDB implementation gets from condition expressions.
"""
import threading
import time
from typing import Callable, Iterable, Optional

from stackbox.core.errors import ConcurrentModificationError
from stackbox.models import (
    ComputeAssignment,
    InstanceState,
    MigrationPlan,
    PoolInstance,
    ProvisioningResult,
    StackRecord,
    TenantConfig,
    TrialState,
    TrialStatus,
)
from stackbox.storage.base import StateStore


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore.

    Stores copies of every model so callers cannot mutate stored state.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = threading.RLock()
        self._clock = clock
        self._configs: dict[str, TenantConfig] = {}
        self._trials: dict[str, TrialState] = {}
        self._assignments: dict[str, ComputeAssignment] = {}
        self._results: dict[str, list[ProvisioningResult]] = {}
        self._stacks: dict[str, StackRecord] = {}
        self._plans: dict[str, MigrationPlan] = {}
        self._pool: dict[str, PoolInstance] = {}
        self._leases: dict[str, tuple[str, float]] = {}  # name -> (owner, expires_at)

    # ==================== Tenant config ====================

    def save_tenant_config(self, config: TenantConfig) -> None:
        with self._lock:
            self._configs[config.tenant_id] = config

    def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        with self._lock:
            return self._configs.get(tenant_id)

    # ==================== Trial state ====================

    def save_trial_state(
        self,
        state: TrialState,
        expected_version: Optional[int] = None,
    ) -> TrialState:
        with self._lock:
            current = self._trials.get(state.tenant_id)
            stored_version = current.version if current else None
            if stored_version != expected_version:
                raise ConcurrentModificationError(
                    f"Trial state version mismatch: expected {expected_version}, "
                    f"stored {stored_version}",
                    key=state.tenant_id,
                )
            stored = state.model_copy(
                deep=True,
                update={"version": (expected_version or 0) + 1},
            )
            self._trials[state.tenant_id] = stored
            return stored.model_copy(deep=True)

    def get_trial_state(self, tenant_id: str) -> Optional[TrialState]:
        with self._lock:
            state = self._trials.get(tenant_id)
            return state.model_copy(deep=True) if state else None

    def list_trial_states(
        self,
        statuses: Optional[Iterable[TrialStatus]] = None,
    ) -> list[TrialState]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                state.model_copy(deep=True)
                for state in self._trials.values()
                if wanted is None or state.status in wanted
            ]

    # ==================== Compute assignment ====================

    def save_assignment(self, assignment: ComputeAssignment) -> None:
        with self._lock:
            self._assignments[assignment.tenant_id] = assignment.model_copy(deep=True)

    def get_assignment(self, tenant_id: str) -> Optional[ComputeAssignment]:
        with self._lock:
            assignment = self._assignments.get(tenant_id)
            return assignment.model_copy(deep=True) if assignment else None

    # ==================== Provisioning results ====================

    def save_result(self, result: ProvisioningResult) -> None:
        # Credentials are delivered once and never stored
        stored = ProvisioningResult.model_validate(result.to_record())
        with self._lock:
            self._results.setdefault(result.tenant_id, []).append(stored)

    def get_latest_result(self, tenant_id: str) -> Optional[ProvisioningResult]:
        with self._lock:
            results = self._results.get(tenant_id)
            return results[-1].model_copy(deep=True) if results else None

    # ==================== Stack records ====================

    def save_stack_record(self, record: StackRecord) -> None:
        with self._lock:
            self._stacks[record.tenant_id] = record.model_copy(deep=True)

    def get_stack_record(self, tenant_id: str) -> Optional[StackRecord]:
        with self._lock:
            record = self._stacks.get(tenant_id)
            return record.model_copy(deep=True) if record else None

    # ==================== Migration plans ====================

    def save_migration_plan(self, plan: MigrationPlan) -> None:
        with self._lock:
            self._plans[plan.tenant_id] = plan.model_copy(deep=True)

    def get_migration_plan(self, tenant_id: str) -> Optional[MigrationPlan]:
        with self._lock:
            plan = self._plans.get(tenant_id)
            return plan.model_copy(deep=True) if plan else None

    def delete_migration_plan(self, tenant_id: str) -> None:
        with self._lock:
            self._plans.pop(tenant_id, None)

    # ==================== Shared pool ====================

    def register_pool_instance(self, instance: PoolInstance) -> None:
        with self._lock:
            if instance.instance_id in self._pool:
                raise ConcurrentModificationError(
                    f"Pool instance already registered: {instance.instance_id}",
                    key=instance.instance_id,
                )
            self._pool[instance.instance_id] = instance.model_copy(deep=True)

    def get_pool_instance(self, instance_id: str) -> Optional[PoolInstance]:
        with self._lock:
            instance = self._pool.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    def list_pool_instances(self) -> list[PoolInstance]:
        with self._lock:
            return [instance.model_copy(deep=True) for instance in self._pool.values()]

    def update_pool_instance(
        self,
        instance_id: str,
        instance_state: Optional[InstanceState] = None,
        address: Optional[str] = None,
        private_address: Optional[str] = None,
    ) -> None:
        with self._lock:
            instance = self._pool.get(instance_id)
            if instance is None:
                return
            if instance_state is not None:
                instance.instance_state = instance_state
            if address is not None:
                instance.address = address
            if private_address is not None:
                instance.private_address = private_address

    def reserve_slot(self, instance_id: str, tenant_id: str) -> Optional[PoolInstance]:
        with self._lock:
            instance = self._pool.get(instance_id)
            if (
                instance is None
                or not instance.accepts_tenants
                or not instance.has_capacity
                or tenant_id in instance.tenants
            ):
                return None
            instance.tenant_count += 1
            instance.tenants.add(tenant_id)
            return instance.model_copy(deep=True)

    def release_slot(self, instance_id: str, tenant_id: str) -> bool:
        with self._lock:
            instance = self._pool.get(instance_id)
            if instance is None or tenant_id not in instance.tenants:
                return False
            instance.tenants.discard(tenant_id)
            instance.tenant_count -= 1
            return True

    # ==================== Leases ====================

    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool:
        now = self._clock()
        with self._lock:
            held = self._leases.get(name)
            if held and held[0] != owner and held[1] > now:
                return False
            self._leases[name] = (owner, now + ttl)
            return True

    def release_lock(self, name: str, owner: str) -> None:
        with self._lock:
            held = self._leases.get(name)
            if held and held[0] == owner:
                del self._leases[name]
