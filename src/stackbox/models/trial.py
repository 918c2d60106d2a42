"""Commercial lifecycle models.

``TrialState`` is owned by the trial lifecycle manager; it is never
deleted so it doubles as an audit trail after suspension or migration.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from stackbox.models.tenant import utcnow


class TrialStatus(str, Enum):
    """Commercial status of a tenant."""
    TRIAL = "trial"
    GRACE = "grace"
    SUSPENDED = "suspended"
    PAID = "paid"


# Position along the automatic path; paid sits outside it.
STATUS_ORDER = {
    TrialStatus.TRIAL: 0,
    TrialStatus.GRACE: 1,
    TrialStatus.SUSPENDED: 2,
}


class TrialState(BaseModel):
    """Per-tenant commercial record."""
    tenant_id: str
    status: TrialStatus = TrialStatus.TRIAL
    trial_started_at: datetime
    trial_ends_at: datetime
    grace_ends_at: datetime
    migration_required: bool = False
    migration_error: Optional[str] = None
    plan_id: Optional[str] = None
    converted_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    retention_ends_at: Optional[datetime] = None
    reactivated_at: Optional[datetime] = None
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_paid(self) -> bool:
        return self.status == TrialStatus.PAID


class TransitionEvent(BaseModel):
    """Commercial status change emitted for analytics consumers."""
    tenant_id: str
    from_status: TrialStatus
    to_status: TrialStatus
    occurred_at: datetime
    plan_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.from_status.value}->{self.to_status.value}"


class ConversionResult(BaseModel):
    """Outcome of a conversion-confirmed event."""
    tenant_id: str
    plan_id: str
    previous_status: TrialStatus
    status: TrialStatus = TrialStatus.PAID
    converted_at: datetime
    migration_required: bool
    migration_scheduled: bool = False
    already_paid: bool = False


class TransitionOutcome(BaseModel):
    """What ``apply_transition`` did for one tenant."""
    tenant_id: str
    previous_status: TrialStatus
    status: TrialStatus
    changed: bool
    suspension_actions: list[str] = Field(default_factory=list)


class SweepReport(BaseModel):
    """Summary of one scheduled trial sweep."""
    evaluated: int = 0
    transitions: list[TransitionOutcome] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
    ran_at: datetime = Field(default_factory=utcnow)


class ReminderType(str, Enum):
    """Trial reminder emails, by days left."""
    SEVEN_DAYS = "trial_reminder_7_days"
    THREE_DAYS = "trial_reminder_3_days"
    FINAL_WARNING = "trial_final_warning"
    EXPIRED = "trial_expired"


class StatusNotice(BaseModel):
    """Descriptive, tenant-facing view of the commercial status."""
    tenant_id: str
    status: TrialStatus
    days_remaining: int
    message: str
    retention_ends_at: Optional[datetime] = None
    suspends_at: Optional[datetime] = None
    reminder: Optional[ReminderType] = None
