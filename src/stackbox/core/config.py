"""Platform settings for the StackBox provisioning core.

Every tunable has a default; deployments override them through
``STACKBOX_*`` environment variables (see ``PlatformSettings.from_env``).
"""

import os
from dataclasses import dataclass, field, fields
from typing import Optional

from stackbox.core.resilience import PollConfig

ENV_PREFIX = "STACKBOX_"


@dataclass
class PlatformSettings:
    """Configuration shared by every provisioning component."""

    base_domain: str = "stackbox.io"
    aws_region: str = "us-west-2"
    ses_region: str = "us-west-2"

    # Compute
    ami_id: str = ""
    shared_instance_type: str = "t3.medium"
    dedicated_instance_type: str = "t3.small"
    security_group_ids: list[str] = field(default_factory=list)
    subnet_id: Optional[str] = None
    instance_profile_arn: Optional[str] = None
    key_pair_name: Optional[str] = None
    max_tenants_per_instance: int = 10
    instance_ready_timeout: float = 300.0
    instance_poll_interval: float = 10.0
    stack_root: str = "/opt/stackbox"

    # Container stacks
    health_timeout: float = 300.0
    health_poll_interval: float = 10.0
    command_timeout: float = 600.0
    command_poll_interval: float = 5.0

    # Storage, DNS, email
    bucket_prefix: str = "stackbox-tenant"
    platform_role_arn: Optional[str] = None
    instance_role_arn: Optional[str] = None
    dns_ttl: int = 300
    dns_sync_timeout: float = 180.0
    dns_poll_interval: float = 10.0
    from_email: Optional[str] = None
    reply_to_email: Optional[str] = None
    acme_email: Optional[str] = None

    # Trial lifecycle
    trial_days: int = 14
    grace_days: int = 3
    retention_days: int = 30

    # Persistence and events
    tenants_table: str = "stackbox-tenants"
    pool_table: str = "stackbox-shared-pool"
    event_bus_name: Optional[str] = None
    email_notifications: bool = False
    pool_lock_ttl: float = 900.0

    def __post_init__(self):
        if self.from_email is None:
            self.from_email = f"noreply@{self.base_domain}"
        if self.acme_email is None:
            self.acme_email = f"ssl@{self.base_domain}"

    @property
    def instance_poll(self) -> PollConfig:
        return PollConfig(interval=self.instance_poll_interval, timeout=self.instance_ready_timeout)

    @property
    def health_poll(self) -> PollConfig:
        return PollConfig(interval=self.health_poll_interval, timeout=self.health_timeout)

    @property
    def dns_poll(self) -> PollConfig:
        return PollConfig(interval=self.dns_poll_interval, timeout=self.dns_sync_timeout)

    @property
    def command_poll(self) -> PollConfig:
        return PollConfig(interval=self.command_poll_interval, timeout=self.command_timeout)

    def bucket_name(self, tenant_id: str) -> str:
        return f"{self.bucket_prefix}-{tenant_id}"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "PlatformSettings":
        """Build settings from ``STACKBOX_<FIELD>`` environment variables.

        Lists are comma separated; numbers and booleans are parsed to the
        field's type.
        """
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name == "security_group_ids":
                values[f.name] = [part.strip() for part in raw.split(",") if part.strip()]
            elif f.type in (bool, "bool"):
                values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        if "aws_region" not in values and env.get("AWS_REGION"):
            values["aws_region"] = env["AWS_REGION"]
        return cls(**values)
