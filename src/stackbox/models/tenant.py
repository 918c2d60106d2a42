"""Tenant configuration models.

A ``TenantConfig`` is the validated, immutable input to a provisioning run.
Its ``tenant_id`` is the primary key of every downstream resource name.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HostnameMode(str, Enum):
    """How the tenant's public hostname is chosen."""
    MANAGED_SUBDOMAIN = "managed_subdomain"
    CUSTOM_DOMAIN = "custom_domain"


class SignupTier(str, Enum):
    """Commercial tier at signup; decides shared vs dedicated compute."""
    TRIAL = "trial"
    PAID = "paid"


class FeatureFlags(BaseModel):
    """Services enabled for a tenant stack."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    crm: bool = True
    file_portal: bool = Field(default=True, alias="filePortal")
    booking: bool = False
    email_marketing: bool = Field(default=False, alias="emailMarketing")
    static_site: bool = Field(default=True, alias="staticSite")

    def enabled(self) -> list[str]:
        return [name for name, value in self.model_dump().items() if value]


# camelCase keys accepted in raw submissions
FEATURE_KEYS = {
    "crm": "crm",
    "filePortal": "file_portal",
    "booking": "booking",
    "emailMarketing": "email_marketing",
    "staticSite": "static_site",
}


class Branding(BaseModel):
    """Tenant branding seeded into the generated site and apps."""
    model_config = ConfigDict(frozen=True)

    display_name: Optional[str] = None
    theme_color: str = "#003366"
    logo_url: Optional[str] = None


class TenantConfig(BaseModel):
    """Validated tenant configuration."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., description="Unique, URL-safe tenant identifier")
    email: str = Field(..., description="Contact email for credentials and notices")
    hostname_mode: HostnameMode = HostnameMode.MANAGED_SUBDOMAIN
    domain: Optional[str] = Field(None, description="Customer-owned domain")
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    branding: Branding = Field(default_factory=Branding)
    tier: SignupTier = SignupTier.TRIAL
    plan_id: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.branding.display_name or self.tenant_id

    @property
    def subdomain(self) -> str:
        """Managed subdomain label; always the tenant id, so it is unique."""
        return self.tenant_id

    def managed_hostname(self, base_domain: str) -> str:
        """Hostname inside the platform's own DNS zone."""
        return f"{self.subdomain}.{base_domain}"

    def hostname(self, base_domain: str) -> str:
        """Public hostname the tenant's stack is served on."""
        if self.hostname_mode == HostnameMode.CUSTOM_DOMAIN and self.domain:
            return self.domain
        return self.managed_hostname(base_domain)
