"""Compute placement models: where a tenant's stack runs."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from stackbox.models.tenant import utcnow


class AssignmentKind(str, Enum):
    """Shared pool instance or one-tenant instance."""
    SHARED = "shared"
    DEDICATED = "dedicated"


class InstanceState(str, Enum):
    """Lifecycle of a shared pool instance row."""
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    RETIRED = "retired"


class ComputeAssignment(BaseModel):
    """Placement of one tenant's stack.

    A shared assignment's host never exceeds ``max_tenants``; a dedicated
    assignment's host serves exactly one tenant.
    """
    tenant_id: str
    kind: AssignmentKind
    instance_id: str
    address: Optional[str] = None
    private_address: Optional[str] = None
    pool_instance_id: Optional[str] = Field(None, description="Shared pool row (shared only)")
    tenant_count: Optional[int] = Field(None, description="Tenants on the host at assignment time")
    max_tenants: Optional[int] = None
    stack_dir: str
    instance_type: Optional[str] = None
    assigned_at: datetime = Field(default_factory=utcnow)

    @property
    def is_shared(self) -> bool:
        return self.kind == AssignmentKind.SHARED


class PoolInstance(BaseModel):
    """Row of the shared pool: one instance and its capacity counter."""
    instance_id: str
    instance_state: InstanceState = InstanceState.PENDING
    address: Optional[str] = None
    private_address: Optional[str] = None
    tenant_count: int = 0
    tenants: set[str] = Field(default_factory=set)
    max_tenants: int = 10
    instance_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def has_capacity(self) -> bool:
        return self.tenant_count < self.max_tenants

    @property
    def accepts_tenants(self) -> bool:
        return self.instance_state in (InstanceState.PENDING, InstanceState.RUNNING)


class InstanceInfo(BaseModel):
    """Observed state of a compute instance."""
    instance_id: str
    state: str
    address: Optional[str] = None
    private_address: Optional[str] = None
    instance_type: Optional[str] = None
