"""Container stack models.

A stack moves through ``rendered -> deploying -> awaiting_health ->
{healthy | degraded | timed_out} -> stopped / torn_down``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from stackbox.models.tenant import utcnow


class StackState(str, Enum):
    """State of one tenant's container stack."""
    RENDERED = "rendered"
    DEPLOYING = "deploying"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"
    TORN_DOWN = "torn_down"


class ServiceRole(str, Enum):
    """Why a service is part of the composition."""
    EDGE = "edge"
    APPLICATION = "application"
    SUPPORT = "support"


class ServiceSpec(BaseModel):
    """One service of the composition."""
    name: str
    role: ServiceRole
    image: str
    feature: Optional[str] = Field(None, description="Feature flag that enables the service")
    url: Optional[str] = None


class StackDefinition(BaseModel):
    """Concrete composition rendered for one tenant."""
    tenant_id: str
    hostname: str
    project_name: str
    services: dict[str, ServiceSpec]
    compose: dict[str, Any] = Field(..., description="Rendered compose document")
    environment: dict[str, str] = Field(default_factory=dict, repr=False)
    secret_keys: list[str] = Field(default_factory=list)
    files: dict[str, str] = Field(default_factory=dict, repr=False)
    admin_username: str = "admin"
    admin_password: str = Field(..., repr=False)
    rendered_at: datetime = Field(default_factory=utcnow)

    @property
    def service_names(self) -> list[str]:
        return list(self.services)

    @property
    def application_services(self) -> list[str]:
        return [
            name for name, spec in self.services.items()
            if spec.role == ServiceRole.APPLICATION
        ]

    @property
    def service_urls(self) -> dict[str, str]:
        return {name: spec.url for name, spec in self.services.items() if spec.url}


class DeployResult(BaseModel):
    """Start command accepted on the target compute."""
    tenant_id: str
    instance_id: str
    stack_dir: str
    command_id: str
    accepted_at: datetime = Field(default_factory=utcnow)


class ServiceHealth(BaseModel):
    """Health observed for one service."""
    name: str
    state: str = "missing"
    health: str = ""

    @property
    def healthy(self) -> bool:
        return self.state == "running" and self.health in ("", "healthy")


class HealthReport(BaseModel):
    """Outcome of waiting for a stack to become healthy."""
    tenant_id: str
    state: StackState
    healthy: list[str] = Field(default_factory=list)
    unhealthy: list[str] = Field(default_factory=list)
    services: list[ServiceHealth] = Field(default_factory=list)
    checks: int = 0
    detail: Optional[str] = None
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.state == StackState.HEALTHY


class ConfigureReport(BaseModel):
    """Best-effort post-start configuration outcome."""
    tenant_id: str
    applied: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)


class StackRecord(BaseModel):
    """Persisted state of a tenant's stack."""
    tenant_id: str
    state: StackState
    instance_id: Optional[str] = None
    stack_dir: Optional[str] = None
    project_name: Optional[str] = None
    services: list[str] = Field(default_factory=list)
    deploy_command_id: Optional[str] = None
    last_report: Optional[HealthReport] = None
    updated_at: datetime = Field(default_factory=utcnow)
