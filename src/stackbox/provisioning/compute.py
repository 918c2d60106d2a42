"""Compute placement for tenant stacks.

Trial tenants are packed onto shared instances up to
``max_tenants_per_instance``; paid tenants get an instance of their own.
The shared-pool counters live in the StateStore and are only changed
through its atomic ``reserve_slot`` / ``release_slot`` operations, so any
number of orchestrator processes can allocate concurrently.
"""

from typing import Any, Optional, Union
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError

from stackbox.core import get_logger
from stackbox.core.config import PlatformSettings
from stackbox.core.errors import (
    CapacityExhaustedError,
    ErrorKind,
    ProvisioningTimeoutError,
    ResourceProvisioningError,
)
from stackbox.core.resilience import (
    CancellationToken,
    PollConfig,
    error_code,
    poll_until,
    translate_client_error,
)
from stackbox.models import (
    AssignmentKind,
    ComputeAssignment,
    InstanceInfo,
    InstanceState,
    PoolInstance,
    TenantConfig,
)
from stackbox.storage.base import StateStore

logger = get_logger(__name__)

POOL_EXPANSION_LOCK = "pool-expansion"
EDGE_NETWORK = "stackbox-edge"
DEAD_STATES = frozenset({"shutting-down", "terminated", "stopping", "stopped"})


def shared_user_data(settings: PlatformSettings) -> str:
    """Bootstrap script for a shared trial instance."""
    root = settings.stack_root
    return f"""#!/bin/bash
# StackBox shared trial instance
set -euo pipefail
dnf update -y
dnf install -y docker git awscli amazon-ssm-agent
mkdir -p /usr/local/lib/docker/cli-plugins
curl -fsSL "https://github.com/docker/compose/releases/latest/download/docker-compose-linux-$(uname -m)" \\
  -o /usr/local/lib/docker/cli-plugins/docker-compose
chmod +x /usr/local/lib/docker/cli-plugins/docker-compose
systemctl enable --now docker amazon-ssm-agent
usermod -a -G docker ec2-user

mkdir -p {root}/trial-clients {root}/shared-data {root}/edge
chown -R ec2-user:ec2-user {root}
chmod -R 755 {root}

# Host-level edge proxy: tenant proxies join this network and keep TLS
docker network inspect {EDGE_NETWORK} >/dev/null 2>&1 || docker network create {EDGE_NETWORK}
cat > {root}/edge/traefik.yml <<'EOF'
entryPoints:
  web:
    address: ":80"
  websecure:
    address: ":443"
providers:
  docker:
    exposedByDefault: false
    network: {EDGE_NETWORK}
    constraints: "Label(`stackbox.edge`,`true`)"
log:
  level: INFO
EOF
docker run -d --name stackbox-edge --restart unless-stopped \\
  --network {EDGE_NETWORK} -p 80:80 -p 443:443 \\
  -v /var/run/docker.sock:/var/run/docker.sock:ro \\
  -v {root}/edge/traefik.yml:/etc/traefik/traefik.yml:ro \\
  traefik:v3.1

echo "StackBox shared trial instance initialized" > /var/log/stackbox-init.log
"""


def dedicated_user_data(settings: PlatformSettings, tenant_id: str) -> str:
    """Bootstrap script for a tenant's dedicated instance."""
    root = settings.stack_root
    return f"""#!/bin/bash
# StackBox dedicated instance for {tenant_id}
set -euo pipefail
dnf update -y
dnf install -y docker git awscli amazon-ssm-agent
mkdir -p /usr/local/lib/docker/cli-plugins
curl -fsSL "https://github.com/docker/compose/releases/latest/download/docker-compose-linux-$(uname -m)" \\
  -o /usr/local/lib/docker/cli-plugins/docker-compose
chmod +x /usr/local/lib/docker/cli-plugins/docker-compose
systemctl enable --now docker amazon-ssm-agent
usermod -a -G docker ec2-user

mkdir -p {root}/clients/{tenant_id}
chown -R ec2-user:ec2-user {root}
chmod -R 755 {root}

echo "StackBox dedicated instance initialized for: {tenant_id}" > /var/log/stackbox-init.log
"""


def stack_dir_for(settings: PlatformSettings, tenant_id: str, kind: AssignmentKind) -> str:
    """Directory holding a tenant's stack files on its instance."""
    folder = "trial-clients" if kind == AssignmentKind.SHARED else "clients"
    return f"{settings.stack_root}/{folder}/{tenant_id}"


class ComputeAllocator:
    """Assigns tenants to shared or dedicated EC2 instances."""

    def __init__(
        self,
        settings: PlatformSettings,
        store: StateStore,
        ec2_client: Optional[Any] = None,
        lock_poll: Optional[PollConfig] = None,
    ):
        """Initialize the allocator.

        Args:
            settings: Platform settings
            store: Durable state holding the shared pool rows
            ec2_client: Optional EC2 client (for testing)
            lock_poll: Wait used while another caller expands the pool
        """
        self.settings = settings
        self.store = store
        self._ec2 = ec2_client
        self.lock_poll = lock_poll or PollConfig(interval=1.0, timeout=settings.pool_lock_ttl)

    @property
    def ec2(self):
        """Get EC2 client."""
        if self._ec2 is None:
            self._ec2 = boto3.client("ec2", region_name=self.settings.aws_region)
        return self._ec2

    # ==================== Assignment ====================

    def assign_compute(
        self,
        config: TenantConfig,
        tier: Union[AssignmentKind, str],
        cancel: Optional[CancellationToken] = None,
    ) -> ComputeAssignment:
        """Place a tenant on compute and block until it is running.

        Args:
            config: Validated tenant configuration
            tier: ``shared`` for trial tenants, ``dedicated`` for paid ones
            cancel: Optional cancellation token for the readiness wait

        Returns:
            ComputeAssignment with a reachable address.

        Raises:
            CapacityExhaustedError: Pool full and no new instance could start.
            ProvisioningTimeoutError: Instance never became ready; it is not
                deleted.
        """
        kind = AssignmentKind(tier)
        if kind == AssignmentKind.SHARED:
            return self._assign_shared(config.tenant_id, cancel)
        return self._assign_dedicated(config.tenant_id, cancel)

    def _assign_shared(
        self,
        tenant_id: str,
        cancel: Optional[CancellationToken],
    ) -> ComputeAssignment:
        instance = self.store.find_slot_for(tenant_id)
        if instance is not None:
            logger.info(
                "shared_slot_reused",
                tenant_id=tenant_id,
                instance_id=instance.instance_id,
            )
        else:
            instance = self._reserve_shared_slot(tenant_id, cancel)

        if instance.instance_state == InstanceState.RUNNING and instance.address:
            address, private_address = instance.address, instance.private_address
        else:
            try:
                info = self.wait_for_instance(instance.instance_id, cancel)
            except ProvisioningTimeoutError:
                # Keep further tenants off an instance that never came up
                self.store.update_pool_instance(instance.instance_id, instance_state=InstanceState.FAILED)
                raise
            self.store.update_pool_instance(
                instance.instance_id,
                instance_state=InstanceState.RUNNING,
                address=info.address,
                private_address=info.private_address,
            )
            address, private_address = info.address, info.private_address

        return ComputeAssignment(
            tenant_id=tenant_id,
            kind=AssignmentKind.SHARED,
            instance_id=instance.instance_id,
            address=address,
            private_address=private_address,
            pool_instance_id=instance.instance_id,
            tenant_count=instance.tenant_count,
            max_tenants=instance.max_tenants,
            stack_dir=stack_dir_for(self.settings, tenant_id, AssignmentKind.SHARED),
            instance_type=instance.instance_type,
        )

    def _reserve_shared_slot(
        self,
        tenant_id: str,
        cancel: Optional[CancellationToken],
    ) -> PoolInstance:
        owner = f"{tenant_id}:{uuid4().hex[:8]}"

        def attempt() -> Optional[PoolInstance]:
            reserved = self._reserve_existing(tenant_id)
            if reserved is not None:
                return reserved
            if not self.store.acquire_lock(POOL_EXPANSION_LOCK, owner, self.settings.pool_lock_ttl):
                logger.debug("pool_expansion_in_progress", tenant_id=tenant_id)
                return None
            try:
                # Another caller may have expanded the pool while we waited
                reserved = self._reserve_existing(tenant_id)
                if reserved is not None:
                    return reserved
                return self._expand_pool(tenant_id)
            finally:
                self.store.release_lock(POOL_EXPANSION_LOCK, owner)

        return poll_until(
            attempt,
            self.lock_poll,
            description="shared pool slot",
            cancel=cancel,
            resource_id=tenant_id,
        )

    def _reserve_existing(self, tenant_id: str) -> Optional[PoolInstance]:
        """Tightest-fit reservation on an instance that still has room."""
        candidates = [
            instance for instance in self.store.list_pool_instances()
            if instance.accepts_tenants and instance.has_capacity
        ]
        candidates.sort(key=lambda i: (i.instance_state != InstanceState.RUNNING, -i.tenant_count))

        for candidate in candidates:
            reserved = self.store.reserve_slot(candidate.instance_id, tenant_id)
            if reserved is not None:
                logger.info(
                    "shared_slot_reserved",
                    tenant_id=tenant_id,
                    instance_id=reserved.instance_id,
                    tenant_count=reserved.tenant_count,
                    max_tenants=reserved.max_tenants,
                )
                return reserved
        return None

    def _expand_pool(self, tenant_id: str) -> PoolInstance:
        try:
            instance_id = self.launch_instance(AssignmentKind.SHARED)
        except ResourceProvisioningError as e:
            if e.kind == ErrorKind.CAPACITY_EXHAUSTED:
                raise CapacityExhaustedError(
                    f"Shared pool is full and a new instance could not be started: {e.message}",
                    resource="shared-pool",
                ) from e
            raise

        instance = PoolInstance(
            instance_id=instance_id,
            instance_state=InstanceState.PENDING,
            tenant_count=1,
            tenants={tenant_id},
            max_tenants=self.settings.max_tenants_per_instance,
            instance_type=self.settings.shared_instance_type,
        )
        self.store.register_pool_instance(instance)
        logger.info("shared_instance_created", tenant_id=tenant_id, instance_id=instance_id)
        return instance

    def _assign_dedicated(
        self,
        tenant_id: str,
        cancel: Optional[CancellationToken],
    ) -> ComputeAssignment:
        existing = self.store.get_assignment(tenant_id)
        if existing is not None and existing.kind == AssignmentKind.DEDICATED:
            instance_id = existing.instance_id
            logger.info("dedicated_instance_reused", tenant_id=tenant_id, instance_id=instance_id)
        else:
            instance_id = self.launch_instance(AssignmentKind.DEDICATED, tenant_id=tenant_id)
            logger.info("dedicated_instance_created", tenant_id=tenant_id, instance_id=instance_id)
        return self.dedicated_assignment(tenant_id, instance_id, cancel)

    def dedicated_assignment(
        self,
        tenant_id: str,
        instance_id: str,
        cancel: Optional[CancellationToken] = None,
    ) -> ComputeAssignment:
        """Wait for a dedicated instance and describe it as an assignment."""
        info = self.wait_for_instance(instance_id, cancel)
        return ComputeAssignment(
            tenant_id=tenant_id,
            kind=AssignmentKind.DEDICATED,
            instance_id=instance_id,
            address=info.address,
            private_address=info.private_address,
            stack_dir=stack_dir_for(self.settings, tenant_id, AssignmentKind.DEDICATED),
            instance_type=info.instance_type or self.settings.dedicated_instance_type,
        )

    # ==================== EC2 ====================

    def launch_instance(self, kind: AssignmentKind, tenant_id: Optional[str] = None) -> str:
        """Start one instance and return its id without waiting."""
        if kind == AssignmentKind.SHARED:
            instance_type = self.settings.shared_instance_type
            user_data = shared_user_data(self.settings)
            tags = [
                {"Key": "Name", "Value": "stackbox-shared-trial"},
                {"Key": "Type", "Value": "SharedTrial"},
                {"Key": "MaxTenants", "Value": str(self.settings.max_tenants_per_instance)},
            ]
        else:
            instance_type = self.settings.dedicated_instance_type
            user_data = dedicated_user_data(self.settings, tenant_id)
            tags = [
                {"Key": "Name", "Value": f"stackbox-dedicated-{tenant_id}"},
                {"Key": "Type", "Value": "Dedicated"},
                {"Key": "Tenant", "Value": tenant_id},
            ]
        tags.append({"Key": "Project", "Value": "StackBox"})

        params: dict[str, Any] = {
            "ImageId": self.settings.ami_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": user_data,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if self.settings.security_group_ids:
            params["SecurityGroupIds"] = self.settings.security_group_ids
        if self.settings.subnet_id:
            params["SubnetId"] = self.settings.subnet_id
        if self.settings.key_pair_name:
            params["KeyName"] = self.settings.key_pair_name
        if self.settings.instance_profile_arn:
            params["IamInstanceProfile"] = {"Arn": self.settings.instance_profile_arn}

        try:
            response = self.ec2.run_instances(**params)
        except ClientError as e:
            raise translate_client_error(e, f"ec2:{kind.value}") from e
        return response["Instances"][0]["InstanceId"]

    def describe_instance(self, instance_id: str) -> Optional[InstanceInfo]:
        """Current state of an instance, or None if EC2 does not know it yet."""
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if error_code(e) == "InvalidInstanceID.NotFound":
                return None
            raise translate_client_error(e, f"ec2:{instance_id}") from e

        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return InstanceInfo(
                    instance_id=instance["InstanceId"],
                    state=instance["State"]["Name"],
                    address=instance.get("PublicIpAddress"),
                    private_address=instance.get("PrivateIpAddress"),
                    instance_type=instance.get("InstanceType"),
                )
        return None

    def wait_for_instance(
        self,
        instance_id: str,
        cancel: Optional[CancellationToken] = None,
    ) -> InstanceInfo:
        """Block until the instance is running with a public address.

        Raises:
            ProvisioningTimeoutError: After ``instance_ready_timeout``.
            ResourceProvisioningError: If the instance died while starting.
        """
        def check() -> Optional[InstanceInfo]:
            info = self.describe_instance(instance_id)
            if info is None:
                return None
            if info.state in DEAD_STATES:
                raise ResourceProvisioningError(
                    f"Instance {instance_id} entered state {info.state} while starting",
                    resource=instance_id,
                )
            if info.state == "running" and info.address:
                return info
            return None

        info = poll_until(
            check,
            self.settings.instance_poll,
            description=f"instance {instance_id}",
            cancel=cancel,
            resource_id=instance_id,
        )
        logger.info("instance_running", instance_id=instance_id, address=info.address)
        return info

    # ==================== Release ====================

    def release(self, assignment: ComputeAssignment) -> bool:
        """Give back a tenant's compute.

        Shared: idempotent counter decrement. Dedicated: terminate.
        """
        if assignment.is_shared:
            released = self.store.release_slot(assignment.pool_instance_id, assignment.tenant_id)
            logger.info(
                "shared_slot_released" if released else "shared_slot_already_released",
                tenant_id=assignment.tenant_id,
                instance_id=assignment.pool_instance_id,
            )
            return released

        try:
            self.ec2.terminate_instances(InstanceIds=[assignment.instance_id])
        except ClientError as e:
            if error_code(e) == "InvalidInstanceID.NotFound":
                return False
            raise translate_client_error(e, f"ec2:{assignment.instance_id}") from e
        logger.info(
            "dedicated_instance_terminated",
            tenant_id=assignment.tenant_id,
            instance_id=assignment.instance_id,
        )
        return True

    def tag_for_reclaim(self, instance_id: str, tenant_id: str, reason: str) -> None:
        """Mark an instance for operator review instead of destroying it."""
        try:
            self.ec2.create_tags(
                Resources=[instance_id],
                Tags=[
                    {"Key": "StackBoxReclaim", "Value": "pending"},
                    {"Key": "StackBoxReclaimReason", "Value": reason[:255]},
                    {"Key": "Tenant", "Value": tenant_id},
                ],
            )
        except ClientError as e:
            raise translate_client_error(e, f"ec2:{instance_id}") from e
        logger.warning("instance_tagged_for_reclaim", instance_id=instance_id, tenant_id=tenant_id)
