"""Shared-to-dedicated migration plan.

Steps run strictly in order; completion markers let an interrupted
migration resume at the first incomplete step instead of restarting.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from stackbox.models.compute import ComputeAssignment
from stackbox.models.tenant import utcnow


class MigrationStepName(str, Enum):
    BACKUP_SOURCE = "backup_source"
    PROVISION_TARGET = "provision_target"
    RESTORE_TARGET = "restore_target"
    REPOINT_DNS = "repoint_dns"
    DECOMMISSION_SOURCE = "decommission_source"


MIGRATION_STEP_ORDER = [
    MigrationStepName.BACKUP_SOURCE,
    MigrationStepName.PROVISION_TARGET,
    MigrationStepName.RESTORE_TARGET,
    MigrationStepName.REPOINT_DNS,
    MigrationStepName.DECOMMISSION_SOURCE,
]


class MigrationStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MANUAL_INTERVENTION = "manual_intervention"


class MigrationStep(BaseModel):
    name: MigrationStepName
    completed: bool = False
    completed_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None


def _default_steps() -> list[MigrationStep]:
    return [MigrationStep(name=name) for name in MIGRATION_STEP_ORDER]


class MigrationPlan(BaseModel):
    """Ephemeral record of one shared-to-dedicated move."""
    plan_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    source: ComputeAssignment
    target: Optional[ComputeAssignment] = None
    target_instance_id: Optional[str] = None
    backup_key: Optional[str] = None
    dns_change_id: Optional[str] = None
    steps: list[MigrationStep] = Field(default_factory=_default_steps)
    status: MigrationStatus = MigrationStatus.IN_PROGRESS
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def step(self, name: MigrationStepName) -> MigrationStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    @property
    def last_completed_step(self) -> Optional[MigrationStepName]:
        """Highest step completed so far, in execution order."""
        last = None
        for step in self.steps:
            if not step.completed:
                break
            last = step.name
        return last

    @property
    def next_step(self) -> Optional[MigrationStepName]:
        for step in self.steps:
            if not step.completed:
                return step.name
        return None

    @property
    def is_complete(self) -> bool:
        return all(step.completed for step in self.steps)

    def mark_completed(self, name: MigrationStepName) -> None:
        step = self.step(name)
        step.completed = True
        step.completed_at = utcnow()
        step.last_error = None
        self.updated_at = step.completed_at
