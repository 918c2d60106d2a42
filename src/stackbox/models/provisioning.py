"""Resource references and the provisioning result of a pipeline run."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from stackbox.models.compute import ComputeAssignment
from stackbox.models.tenant import utcnow

SETUP_DELAYED_MESSAGE = (
    "Your setup is taking a little longer than expected. "
    "We're on it and will email you as soon as your tools are ready."
)


class HostedZoneRef(BaseModel):
    """Platform DNS zone."""
    zone_id: str
    name: str
    created: bool = False


class StorageRef(BaseModel):
    """Per-tenant storage bucket."""
    bucket_name: str
    region: str
    url: str
    versioned: bool = True
    created: bool = True


class DNSRef(BaseModel):
    """Tenant DNS record in the platform zone."""
    zone_id: str
    record_name: str
    record_type: str = "A"
    value: str
    ttl: int = 300
    change_id: Optional[str] = None
    change_status: Optional[str] = None
    previous_value: Optional[str] = Field(
        None, exclude=True, description="Address the record held before this upsert"
    )
    customer_cname_target: Optional[str] = Field(
        None, description="Target the customer must CNAME their own domain to"
    )


class EmailIdentityRef(BaseModel):
    """Outbound email sending identity (shared by all tenants)."""
    identity: str
    from_email: str
    reply_to_email: Optional[str] = None
    region: str
    created: bool = False


class CertificateRef(BaseModel):
    """TLS certificate managed by the stack's reverse proxy."""
    hostnames: list[str]
    issuer: str = "Let's Encrypt"
    resolver: str = "letsencrypt"
    auto_renew: bool = True


class ResourceBundle(BaseModel):
    """Everything ResourceProvisioner acquires for one tenant."""
    assignment: ComputeAssignment
    storage: StorageRef
    dns: DNSRef
    email_identity: EmailIdentityRef
    hosted_zone: Optional[HostedZoneRef] = None


class AdminCredentials(BaseModel):
    """Administrative login delivered once to the tenant contact."""
    username: str
    password: str = Field(..., repr=False)
    single_use: bool = True


class ResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProvisioningFailure(BaseModel):
    """Operator-facing detail of a failed run."""
    failed_step: str
    error_code: Optional[str] = None
    error_kind: Optional[str] = None
    detail: str
    compensated: list[str] = Field(default_factory=list)
    pending_cleanup: list[str] = Field(default_factory=list)
    cancelled: bool = False


class ProvisioningResult(BaseModel):
    """Output of one pipeline run.

    Superseded, never mutated: a migration stores a new result that points
    at the previous one through ``supersedes``.
    """
    result_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    status: ResultStatus
    hostname: Optional[str] = None
    assignment: Optional[ComputeAssignment] = None
    storage: Optional[StorageRef] = None
    dns: Optional[DNSRef] = None
    email_identity: Optional[EmailIdentityRef] = None
    service_urls: dict[str, str] = Field(default_factory=dict)
    credentials: Optional[AdminCredentials] = None
    certificate: Optional[CertificateRef] = None
    failure: Optional[ProvisioningFailure] = None
    supersedes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCEEDED

    @property
    def user_message(self) -> str:
        """What the tenant sees; never infrastructure detail."""
        if self.succeeded:
            return f"Your business tools are ready at https://{self.hostname}"
        return SETUP_DELAYED_MESSAGE

    def to_record(self) -> dict:
        """Persistable form; one-time credentials are never stored."""
        return self.model_dump(mode="json", exclude={"credentials"})


class DeploymentStatus(BaseModel):
    """Per-tenant status for the operator dashboard."""
    tenant_id: str
    hostname: Optional[str] = None
    stack_state: Optional[str] = None
    commercial_status: Optional[str] = None
    assignment_kind: Optional[str] = None
    instance_id: Optional[str] = None
    migration_required: bool = False
    last_result_status: Optional[str] = None
    unhealthy_services: list[str] = Field(default_factory=list)
    user_message: Optional[str] = None
    checked_at: datetime = Field(default_factory=utcnow)
