"""
Abstract base class for StackBox durable state.

This module defines the StateStore interface that all persistence
implementations must follow. Tenant configs, trial states, compute
assignments, provisioning results and migration plans survive process
restarts; the shared-pool capacity counters are the only state shared
between concurrent pipelines and are modified exclusively through
``reserve_slot`` / ``release_slot``.
"""
from abc import ABC, abstractmethod
from typing import Iterable, Optional

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


class StateStore(ABC):
    """
    Abstract base class for StackBox persistence.

    All implementations must provide the same conditional-write semantics:
    trial-state writes are checked against the stored ``version`` and slot
    reservation is an atomic compare-and-swap on the instance's counter.
    """

    # ==================== Tenant config ====================

    @abstractmethod
    def save_tenant_config(self, config: TenantConfig) -> None:
        """Store the validated configuration (overwrites on re-submission)."""
        ...

    @abstractmethod
    def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        ...

    # ==================== Trial state ====================

    @abstractmethod
    def save_trial_state(
        self,
        state: TrialState,
        expected_version: Optional[int] = None,
    ) -> TrialState:
        """
        Conditionally write a trial state.

        Args:
            state: The state to write.
            expected_version: Version currently stored, or None when the
                record must not exist yet.

        Returns:
            The stored state, with ``version`` incremented.

        Raises:
            ConcurrentModificationError: If the stored version differs.
        """
        ...

    @abstractmethod
    def get_trial_state(self, tenant_id: str) -> Optional[TrialState]:
        ...

    @abstractmethod
    def list_trial_states(
        self,
        statuses: Optional[Iterable[TrialStatus]] = None,
    ) -> list[TrialState]:
        """
        List trial states, optionally restricted to the given statuses.

        Args:
            statuses: Statuses to include; all when None.
        """
        ...

    # ==================== Compute assignment ====================

    @abstractmethod
    def save_assignment(self, assignment: ComputeAssignment) -> None:
        ...

    @abstractmethod
    def get_assignment(self, tenant_id: str) -> Optional[ComputeAssignment]:
        ...

    # ==================== Provisioning results ====================

    @abstractmethod
    def save_result(self, result: ProvisioningResult) -> None:
        """Append a result; results are never updated in place."""
        ...

    @abstractmethod
    def get_latest_result(self, tenant_id: str) -> Optional[ProvisioningResult]:
        ...

    # ==================== Stack records ====================

    @abstractmethod
    def save_stack_record(self, record: StackRecord) -> None:
        ...

    @abstractmethod
    def get_stack_record(self, tenant_id: str) -> Optional[StackRecord]:
        ...

    # ==================== Migration plans ====================

    @abstractmethod
    def save_migration_plan(self, plan: MigrationPlan) -> None:
        ...

    @abstractmethod
    def get_migration_plan(self, tenant_id: str) -> Optional[MigrationPlan]:
        ...

    @abstractmethod
    def delete_migration_plan(self, tenant_id: str) -> None:
        ...

    # ==================== Shared pool ====================

    @abstractmethod
    def register_pool_instance(self, instance: PoolInstance) -> None:
        """
        Add a new shared instance row.

        Raises:
            ConcurrentModificationError: If the row already exists.
        """
        ...

    @abstractmethod
    def get_pool_instance(self, instance_id: str) -> Optional[PoolInstance]:
        ...

    @abstractmethod
    def list_pool_instances(self) -> list[PoolInstance]:
        ...

    @abstractmethod
    def update_pool_instance(
        self,
        instance_id: str,
        instance_state: Optional[InstanceState] = None,
        address: Optional[str] = None,
        private_address: Optional[str] = None,
    ) -> None:
        """Update observed attributes; never touches the capacity counter."""
        ...

    @abstractmethod
    def reserve_slot(self, instance_id: str, tenant_id: str) -> Optional[PoolInstance]:
        """
        Atomically take one slot on a shared instance.

        Succeeds only when the instance accepts tenants, is below its
        maximum and does not already host the tenant.

        Returns:
            The updated row, or None if the reservation was rejected.
        """
        ...

    @abstractmethod
    def release_slot(self, instance_id: str, tenant_id: str) -> bool:
        """
        Give back a tenant's slot.

        Idempotent: returns False (and changes nothing) when the tenant
        no longer holds a slot on the instance.
        """
        ...

    def find_slot_for(self, tenant_id: str) -> Optional[PoolInstance]:
        """Return the shared instance already hosting ``tenant_id``, if any."""
        for instance in self.list_pool_instances():
            if tenant_id in instance.tenants:
                return instance
        return None

    # ==================== Leases ====================

    @abstractmethod
    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool:
        """
        Take a named lease for ``ttl`` seconds.

        An expired lease can be taken over by any owner.
        """
        ...

    @abstractmethod
    def release_lock(self, name: str, owner: str) -> None:
        """Drop a lease; ignored when ``owner`` no longer holds it."""
        ...
