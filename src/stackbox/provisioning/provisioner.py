"""Cloud resource lifecycle for tenants.

``ResourceProvisioner.provision`` acquires, in order: the platform DNS
zone, the tenant bucket, compute, the tenant DNS record and the shared
outbound email identity. Every call is safe to repeat: "already exists"
responses count as success so a retried pipeline run re-enters partially
created resources instead of duplicating them.
"""

import json
import threading
from typing import Any, Optional, Union

import boto3
from botocore.exceptions import ClientError

from stackbox.core import get_logger
from stackbox.core.config import PlatformSettings
from stackbox.core.errors import ProvisioningTimeoutError, TenantNotFoundError
from stackbox.core.resilience import (
    CancellationToken,
    call_ignoring_existing,
    error_code,
    is_already_exists,
    poll_until,
    translate_client_error,
)
from stackbox.models import (
    AssignmentKind,
    ComputeAssignment,
    DNSRef,
    EmailIdentityRef,
    HostedZoneRef,
    HostnameMode,
    MigrationPlan,
    ResourceBundle,
    SignupTier,
    StorageRef,
    TenantConfig,
)
from stackbox.provisioning.compensation import CompensationLog
from stackbox.provisioning.compute import ComputeAllocator
from stackbox.storage.base import StateStore

logger = get_logger(__name__)


class ResourceProvisioner:
    """Owns storage, DNS, email and compute resources of every tenant."""

    def __init__(
        self,
        settings: PlatformSettings,
        store: StateStore,
        allocator: ComputeAllocator,
        route53_client: Optional[Any] = None,
        s3_client: Optional[Any] = None,
        ses_client: Optional[Any] = None,
        migrations: Optional[Any] = None,
    ):
        """Initialize the provisioner.

        Args:
            settings: Platform settings
            store: Durable state
            allocator: Compute placement
            route53_client: Optional Route 53 client (for testing)
            s3_client: Optional S3 client (for testing)
            ses_client: Optional SES v2 client (for testing)
            migrations: MigrationRunner used by ``migrate_to_dedicated``
        """
        self.settings = settings
        self.store = store
        self.allocator = allocator
        self._route53 = route53_client
        self._s3 = s3_client
        self._ses = ses_client
        self.migrations = migrations
        self._zone: Optional[HostedZoneRef] = None
        self._email_identity: Optional[EmailIdentityRef] = None
        self._lock = threading.Lock()

    @property
    def route53(self):
        if self._route53 is None:
            self._route53 = boto3.client("route53")
        return self._route53

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client("s3", region_name=self.settings.aws_region)
        return self._s3

    @property
    def ses(self):
        if self._ses is None:
            self._ses = boto3.client("sesv2", region_name=self.settings.ses_region)
        return self._ses

    # ==================== Full acquisition ====================

    def provision(
        self,
        config: TenantConfig,
        compensations: Optional[CompensationLog] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ResourceBundle:
        """Acquire every cloud resource a new tenant needs.

        Args:
            config: Validated tenant configuration
            compensations: Log receiving an undo action per created resource
            cancel: Optional cancellation token for the compute wait

        Returns:
            ResourceBundle with compute, storage, DNS and email references.
        """
        log = compensations if compensations is not None else CompensationLog()
        tenant_id = config.tenant_id

        zone = self.ensure_hosted_zone()

        storage = self.create_bucket(tenant_id)
        if storage.created:
            log.register(
                "storage_bucket",
                lambda: self.delete_bucket_if_empty(storage.bucket_name),
                note=f"bucket {storage.bucket_name} not empty, left for review",
            )

        tier = AssignmentKind.SHARED if config.tier == SignupTier.TRIAL else AssignmentKind.DEDICATED
        # A repeated run must not undo compute an earlier run handed out
        held = self._holds_compute(tenant_id, tier)
        try:
            assignment = self.assign_compute(config, tier, cancel=cancel)
        except ProvisioningTimeoutError as e:
            if not held:
                self._register_stalled_compute(log, tenant_id, tier, e.resource_id)
            raise
        if held:
            logger.info("compute_already_held", tenant_id=tenant_id, instance_id=assignment.instance_id)
        else:
            self._register_compute(log, assignment)

        dns = self.upsert_dns(config, assignment.address, zone)
        self._register_dns(log, dns)

        email_identity = self.ensure_email_identity()

        logger.info(
            "tenant_resources_provisioned",
            tenant_id=tenant_id,
            assignment_kind=assignment.kind.value,
            instance_id=assignment.instance_id,
            bucket=storage.bucket_name,
            record=dns.record_name,
        )
        return ResourceBundle(
            assignment=assignment,
            storage=storage,
            dns=dns,
            email_identity=email_identity,
            hosted_zone=zone,
        )

    def _holds_compute(self, tenant_id: str, tier: AssignmentKind) -> bool:
        if tier == AssignmentKind.SHARED:
            return self.store.find_slot_for(tenant_id) is not None
        existing = self.store.get_assignment(tenant_id)
        return existing is not None and existing.kind == AssignmentKind.DEDICATED

    def _register_dns(self, log: CompensationLog, dns: DNSRef) -> None:
        if dns.previous_value is None:
            log.register("dns_record", lambda: self.delete_dns_record(dns))
        elif dns.previous_value != dns.value:
            previous = dns.model_copy(update={"value": dns.previous_value, "previous_value": None})
            log.register("dns_record", lambda: self.restore_dns_record(previous))

    def _register_compute(self, log: CompensationLog, assignment: ComputeAssignment) -> None:
        if assignment.is_shared:
            log.register("shared_slot", lambda: self.release_compute(assignment) or True)
        else:
            log.register(
                "dedicated_instance",
                lambda: self._tag_dedicated(assignment.instance_id, assignment.tenant_id),
                note=f"instance {assignment.instance_id} tagged for manual reclaim",
            )

    def _register_stalled_compute(
        self,
        log: CompensationLog,
        tenant_id: str,
        tier: AssignmentKind,
        instance_id: Optional[str],
    ) -> None:
        if tier == AssignmentKind.SHARED:
            slot = self.store.find_slot_for(tenant_id)
            if slot is not None:
                log.register(
                    "shared_slot",
                    lambda: self.store.release_slot(slot.instance_id, tenant_id) or True,
                )
        elif instance_id:
            log.register(
                "dedicated_instance",
                lambda: self._tag_dedicated(instance_id, tenant_id),
                note=f"instance {instance_id} tagged for manual reclaim",
            )

    def _tag_dedicated(self, instance_id: str, tenant_id: str) -> bool:
        self.allocator.tag_for_reclaim(instance_id, tenant_id, reason="provisioning rolled back")
        return False

    # ==================== Compute ====================

    def assign_compute(
        self,
        config: TenantConfig,
        tier: Union[AssignmentKind, str],
        cancel: Optional[CancellationToken] = None,
    ) -> ComputeAssignment:
        """Place the tenant on compute and persist the assignment."""
        assignment = self.allocator.assign_compute(config, tier, cancel=cancel)
        self.store.save_assignment(assignment)
        return assignment

    def release_compute(self, assignment: ComputeAssignment) -> bool:
        return self.allocator.release(assignment)

    # ==================== DNS zone ====================

    def ensure_hosted_zone(self) -> HostedZoneRef:
        """Find or create the platform's base-domain zone."""
        with self._lock:
            if self._zone is not None:
                return self._zone

            zone = self._find_zone()
            if zone is None:
                try:
                    response = self.route53.create_hosted_zone(
                        Name=self.settings.base_domain,
                        CallerReference=f"stackbox-{self.settings.base_domain}",
                        HostedZoneConfig={"Comment": "StackBox platform zone"},
                    )
                    zone = HostedZoneRef(
                        zone_id=response["HostedZone"]["Id"].split("/")[-1],
                        name=self.settings.base_domain,
                        created=True,
                    )
                    logger.info("hosted_zone_created", zone_id=zone.zone_id)
                except ClientError as e:
                    if not is_already_exists(e):
                        raise translate_client_error(e, "route53:zone") from e
                    zone = self._find_zone()
                    if zone is None:
                        raise translate_client_error(e, "route53:zone") from e
            self._zone = zone
            return zone

    def _find_zone(self) -> Optional[HostedZoneRef]:
        name = self.settings.base_domain.rstrip(".") + "."
        try:
            response = self.route53.list_hosted_zones_by_name(DNSName=name, MaxItems="1")
        except ClientError as e:
            raise translate_client_error(e, "route53:zone") from e
        for zone in response.get("HostedZones", []):
            if zone["Name"] == name:
                return HostedZoneRef(zone_id=zone["Id"].split("/")[-1], name=self.settings.base_domain)
        return None

    # ==================== Storage ====================

    def create_bucket(self, tenant_id: str) -> StorageRef:
        """Create the tenant bucket: versioned, private, platform-only."""
        bucket = self.settings.bucket_name(tenant_id)
        region = self.settings.aws_region
        params: dict[str, Any] = {"Bucket": bucket}
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}

        try:
            created = call_ignoring_existing(self.s3.create_bucket, **params) is not None
            self.s3.put_bucket_versioning(
                Bucket=bucket,
                VersioningConfiguration={"Status": "Enabled"},
            )
            self.s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
            policy = self.bucket_policy(bucket)
            if policy:
                self.s3.put_bucket_policy(Bucket=bucket, Policy=json.dumps(policy))
            else:
                logger.warning("bucket_policy_skipped", bucket=bucket, reason="no platform role configured")
            self.s3.put_bucket_tagging(
                Bucket=bucket,
                Tagging={"TagSet": [
                    {"Key": "Project", "Value": "StackBox"},
                    {"Key": "Tenant", "Value": tenant_id},
                ]},
            )
        except ClientError as e:
            raise translate_client_error(e, f"s3:{bucket}") from e

        logger.info("tenant_bucket_ready", tenant_id=tenant_id, bucket=bucket, created=created)
        return StorageRef(
            bucket_name=bucket,
            region=region,
            url=f"https://{bucket}.s3.{region}.amazonaws.com",
            created=created,
        )

    def bucket_policy(self, bucket: str) -> Optional[dict]:
        """Deny every principal except the platform's own identities."""
        principals = [
            arn for arn in (self.settings.platform_role_arn, self.settings.instance_role_arn) if arn
        ]
        if not principals:
            return None
        return {
            "Version": "2012-10-17",
            "Statement": [{
                "Sid": "DenyOutsidePlatform",
                "Effect": "Deny",
                "Principal": "*",
                "Action": "s3:*",
                "Resource": [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"],
                "Condition": {"ArnNotLike": {"aws:PrincipalArn": principals}},
            }],
        }

    def delete_bucket_if_empty(self, bucket: str) -> bool:
        """Remove a bucket that holds no object versions.

        Returns:
            False when the bucket holds data and was left in place.
        """
        try:
            listing = self.s3.list_object_versions(Bucket=bucket, MaxKeys=1)
            if listing.get("Versions") or listing.get("DeleteMarkers"):
                logger.warning("bucket_not_empty", bucket=bucket)
                return False
            self.s3.delete_bucket(Bucket=bucket)
        except ClientError as e:
            if error_code(e) == "NoSuchBucket":
                return True
            raise translate_client_error(e, f"s3:{bucket}") from e
        logger.info("tenant_bucket_deleted", bucket=bucket)
        return True

    # ==================== DNS records ====================

    def upsert_dns(
        self,
        config: TenantConfig,
        address: str,
        zone: Optional[HostedZoneRef] = None,
    ) -> DNSRef:
        """Point the tenant's managed hostname at ``address``."""
        zone = zone or self.ensure_hosted_zone()
        record_name = config.managed_hostname(self.settings.base_domain)
        dns = DNSRef(
            zone_id=zone.zone_id,
            record_name=record_name,
            value=address,
            ttl=self.settings.dns_ttl,
        )
        if config.hostname_mode == HostnameMode.CUSTOM_DOMAIN:
            # The customer's own zone is out of our reach
            dns.customer_cname_target = record_name

        try:
            dns.previous_value = self.current_record_value(zone.zone_id, record_name)
            change = self._change_record("UPSERT", dns)
        except ClientError as e:
            raise translate_client_error(e, f"route53:{record_name}") from e
        dns.change_id = change["Id"].split("/")[-1]
        dns.change_status = change.get("Status")
        logger.info(
            "dns_record_upserted",
            tenant_id=config.tenant_id,
            record=record_name,
            value=address,
            change_id=dns.change_id,
        )
        return dns

    def repoint_dns(self, tenant_id: str, address: str) -> DNSRef:
        """Move an existing tenant's record to a new address."""
        config = self.store.get_tenant_config(tenant_id)
        if config is None:
            raise TenantNotFoundError(tenant_id, record="config")
        return self.upsert_dns(config, address)

    def wait_for_dns(self, change_id: str, cancel: Optional[CancellationToken] = None) -> str:
        """Block until a Route 53 change is ``INSYNC``."""
        def check() -> Optional[str]:
            try:
                response = self.route53.get_change(Id=change_id)
            except ClientError as e:
                raise translate_client_error(e, f"route53:{change_id}") from e
            status = response["ChangeInfo"]["Status"]
            return status if status == "INSYNC" else None

        return poll_until(
            check,
            self.settings.dns_poll,
            description=f"dns change {change_id}",
            cancel=cancel,
            resource_id=change_id,
        )

    def current_record_value(self, zone_id: str, record_name: str) -> Optional[str]:
        """Address the tenant's A record holds now, or None when there is none."""
        response = self.route53.list_resource_record_sets(
            HostedZoneId=zone_id,
            StartRecordName=record_name,
            StartRecordType="A",
            MaxItems="1",
        )
        for record_set in response.get("ResourceRecordSets", []):
            if record_set["Name"].rstrip(".") == record_name.rstrip(".") and record_set["Type"] == "A":
                values = record_set.get("ResourceRecords") or [{}]
                return values[0].get("Value")
        return None

    def restore_dns_record(self, dns: DNSRef) -> bool:
        """Point a tenant record back at the address it held before a failed run."""
        try:
            self._change_record("UPSERT", dns)
        except ClientError as e:
            raise translate_client_error(e, f"route53:{dns.record_name}") from e
        logger.info("dns_record_restored", record=dns.record_name, value=dns.value)
        return True

    def delete_dns_record(self, dns: DNSRef) -> bool:
        """Remove a tenant record; a record that is already gone counts as done."""
        try:
            self._change_record("DELETE", dns)
        except ClientError as e:
            if error_code(e) == "InvalidChangeBatch":
                logger.info("dns_record_already_absent", record=dns.record_name)
                return True
            raise translate_client_error(e, f"route53:{dns.record_name}") from e
        logger.info("dns_record_deleted", record=dns.record_name)
        return True

    def _change_record(self, action: str, dns: DNSRef) -> dict:
        # Service subdomains (crm., files., ...) resolve through the wildcard
        changes = [
            {
                "Action": action,
                "ResourceRecordSet": {
                    "Name": name,
                    "Type": dns.record_type,
                    "TTL": dns.ttl,
                    "ResourceRecords": [{"Value": dns.value}],
                },
            }
            for name in (dns.record_name, f"*.{dns.record_name}")
        ]
        request = {
            "HostedZoneId": dns.zone_id,
            "ChangeBatch": {
                "Comment": f"StackBox {action.lower()} {dns.record_name}",
                "Changes": changes,
            },
        }
        return self.route53.change_resource_record_sets(**request)["ChangeInfo"]

    # ==================== Email ====================

    def ensure_email_identity(self) -> EmailIdentityRef:
        """Register the platform domain as a sending identity once."""
        with self._lock:
            if self._email_identity is not None:
                return self._email_identity
            domain = self.settings.base_domain
            try:
                response = call_ignoring_existing(self.ses.create_email_identity, EmailIdentity=domain)
            except ClientError as e:
                raise translate_client_error(e, f"ses:{domain}") from e

            self._email_identity = EmailIdentityRef(
                identity=domain,
                from_email=self.settings.from_email,
                reply_to_email=self.settings.reply_to_email,
                region=self.settings.ses_region,
                created=response is not None,
            )
            logger.info("email_identity_ready", identity=domain, created=response is not None)
            return self._email_identity

    # ==================== Migration ====================

    def migrate_to_dedicated(
        self,
        tenant_id: str,
        cancel: Optional[CancellationToken] = None,
    ) -> MigrationPlan:
        """Move a tenant from shared to dedicated compute (resumable)."""
        if self.migrations is None:
            raise RuntimeError("No migration runner configured")
        return self.migrations.migrate(tenant_id, cancel=cancel)
