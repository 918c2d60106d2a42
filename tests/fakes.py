"""In-memory stand-ins for the AWS clients the provisioning core calls.

Each fake implements only the calls the core makes, with the response
shapes boto3 returns, and records what it was asked to do.
"""

import io
import itertools
import json
import threading
from typing import Optional

from botocore.exceptions import ClientError

from stackbox.core.config import PlatformSettings
from stackbox.core.resilience import PollConfig
from stackbox.provisioning.remote import CommandOutcome, RemoteCommandRunner
from stackbox.containers.service import PS_COMMAND


def make_settings(**overrides) -> PlatformSettings:
    """Settings with every wait shortened for tests."""
    values = {
        "base_domain": "stackbox.io",
        "aws_region": "us-west-2",
        "ami_id": "ami-test",
        "security_group_ids": ["sg-test"],
        "subnet_id": "subnet-test",
        "platform_role_arn": "arn:aws:iam::123456789012:role/stackbox-control",
        "instance_role_arn": "arn:aws:iam::123456789012:role/stackbox-instance",
        "max_tenants_per_instance": 10,
        "instance_ready_timeout": 5.0,
        "instance_poll_interval": 0.0,
        "health_timeout": 1.0,
        "health_poll_interval": 0.0,
        "command_timeout": 1.0,
        "command_poll_interval": 0.0,
        "dns_sync_timeout": 1.0,
        "dns_poll_interval": 0.0,
        "pool_lock_ttl": 30.0,
    }
    values.update(overrides)
    return PlatformSettings(**values)


def client_error(code: str, message: str = "", operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def compose_ps(services: dict) -> str:
    """``docker compose ps --format json`` output, one object per line.

    ``services`` maps a service name to its health ("healthy", "starting",
    "unhealthy", "" for no healthcheck) or to ``(state, health)``.
    """
    lines = []
    for name, value in services.items():
        state, health = value if isinstance(value, tuple) else ("running", value)
        lines.append(json.dumps({
            "Name": f"sbx-{name}-1",
            "Service": name,
            "State": state,
            "Health": health,
        }))
    return "\n".join(lines)


def all_healthy(*names: str) -> str:
    return compose_ps({name: "healthy" for name in names})


class FakeEC2:
    """EC2 client: instances start running with an address on first describe."""

    def __init__(self, running: bool = True):
        self.running = running
        self.instances: dict[str, dict] = {}
        self.terminated: list[str] = []
        self.tags: dict[str, list] = {}
        self.launch_error: Optional[ClientError] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def launched(self) -> list[str]:
        return list(self.instances)

    def run_instances(self, **params):
        if self.launch_error is not None:
            raise self.launch_error
        with self._lock:
            number = next(self._ids)
            instance_id = f"i-{number:08d}"
            self.instances[instance_id] = {
                "params": params,
                "address": f"203.0.113.{number}",
                "private_address": f"10.0.0.{number}",
            }
        return {"Instances": [{"InstanceId": instance_id}]}

    def describe_instances(self, InstanceIds):
        instance_id = InstanceIds[0]
        instance = self.instances.get(instance_id)
        if instance is None:
            raise client_error("InvalidInstanceID.NotFound", operation="DescribeInstances")
        state = "terminated" if instance_id in self.terminated else (
            "running" if self.running else "pending"
        )
        described = {
            "InstanceId": instance_id,
            "State": {"Name": state},
            "PrivateIpAddress": instance["private_address"],
            "InstanceType": instance["params"].get("InstanceType"),
        }
        if state == "running":
            described["PublicIpAddress"] = instance["address"]
        return {"Reservations": [{"Instances": [described]}]}

    def terminate_instances(self, InstanceIds):
        self.terminated.extend(InstanceIds)
        return {"TerminatingInstances": [{"InstanceId": i} for i in InstanceIds]}

    def create_tags(self, Resources, Tags):
        for resource in Resources:
            self.tags.setdefault(resource, []).extend(Tags)
        return {}

    def tag_value(self, instance_id: str, key: str) -> Optional[str]:
        for tag in self.tags.get(instance_id, []):
            if tag["Key"] == key:
                return tag["Value"]
        for spec in self.instances[instance_id]["params"].get("TagSpecifications", []):
            for tag in spec["Tags"]:
                if tag["Key"] == key:
                    return tag["Value"]
        return None


class FakeS3:
    """S3 client holding buckets and objects in memory."""

    def __init__(self):
        self.buckets: dict[str, dict] = {}
        self.objects: dict[tuple[str, str], dict] = {}
        self.create_calls = 0

    def create_bucket(self, Bucket, **kwargs):
        self.create_calls += 1
        if Bucket in self.buckets:
            raise client_error("BucketAlreadyOwnedByYou", operation="CreateBucket")
        self.buckets[Bucket] = {"config": kwargs}
        return {"Location": f"/{Bucket}"}

    def _bucket(self, name: str) -> dict:
        if name not in self.buckets:
            raise client_error("NoSuchBucket")
        return self.buckets[name]

    def put_bucket_versioning(self, Bucket, VersioningConfiguration):
        self._bucket(Bucket)["versioning"] = VersioningConfiguration["Status"]

    def put_public_access_block(self, Bucket, PublicAccessBlockConfiguration):
        self._bucket(Bucket)["public_access_block"] = PublicAccessBlockConfiguration

    def put_bucket_policy(self, Bucket, Policy):
        self._bucket(Bucket)["policy"] = json.loads(Policy)

    def put_bucket_tagging(self, Bucket, Tagging):
        self._bucket(Bucket)["tags"] = Tagging["TagSet"]

    def put_object(self, Bucket, Key, Body, **kwargs):
        self._bucket(Bucket)
        self.objects[(Bucket, Key)] = {"Body": Body, **kwargs}
        return {"ETag": '"etag"'}

    def get_object(self, Bucket, Key):
        self._bucket(Bucket)
        stored = self.objects.get((Bucket, Key))
        if stored is None:
            raise client_error("NoSuchKey", operation="GetObject")
        return {"Body": io.BytesIO(stored["Body"])}

    def list_object_versions(self, Bucket, MaxKeys=1000):
        self._bucket(Bucket)
        keys = [key for bucket, key in self.objects if bucket == Bucket]
        return {"Versions": [{"Key": key, "VersionId": "1"} for key in keys[:MaxKeys]]}

    def delete_bucket(self, Bucket):
        self._bucket(Bucket)
        del self.buckets[Bucket]


class FakeRoute53:
    """Route 53 client with one zone per name and immediate INSYNC."""

    def __init__(self, zones: Optional[list[str]] = None):
        self.zones: dict[str, str] = {}
        self.records: dict[tuple[str, str], dict] = {}
        self.change_batches: list[dict] = []
        self.pending_checks = 0
        self._changes = itertools.count(1)
        for name in zones or []:
            self.zones[name.rstrip(".") + "."] = f"Z{len(self.zones) + 1:04d}"

    def list_hosted_zones_by_name(self, DNSName, MaxItems="100"):
        zones = [
            {"Id": f"/hostedzone/{zone_id}", "Name": name}
            for name, zone_id in sorted(self.zones.items())
            if name >= DNSName
        ]
        return {"HostedZones": zones[: int(MaxItems)]}

    def create_hosted_zone(self, Name, CallerReference, HostedZoneConfig=None):
        name = Name.rstrip(".") + "."
        if name in self.zones:
            raise client_error("HostedZoneAlreadyExists", operation="CreateHostedZone")
        zone_id = f"Z{len(self.zones) + 1:04d}"
        self.zones[name] = zone_id
        return {"HostedZone": {"Id": f"/hostedzone/{zone_id}", "Name": name}}

    def change_resource_record_sets(self, HostedZoneId, ChangeBatch):
        # Route 53 applies a batch atomically
        for change in ChangeBatch["Changes"]:
            record = change["ResourceRecordSet"]
            key = (record["Name"], record["Type"])
            if change["Action"] == "DELETE" and key not in self.records:
                raise client_error(
                    "InvalidChangeBatch",
                    f"Tried to delete resource record set {record['Name']} but it was not found",
                    "ChangeResourceRecordSets",
                )
        for change in ChangeBatch["Changes"]:
            record = change["ResourceRecordSet"]
            key = (record["Name"], record["Type"])
            if change["Action"] == "DELETE":
                del self.records[key]
            else:
                self.records[key] = record
        self.change_batches.append(ChangeBatch)
        change_id = f"C{next(self._changes):04d}"
        return {"ChangeInfo": {"Id": f"/change/{change_id}", "Status": "PENDING"}}

    def list_resource_record_sets(self, HostedZoneId, StartRecordName, StartRecordType=None, MaxItems="300"):
        # Real listings are in reverse-label order; name order is enough here
        start = (StartRecordName.rstrip("."), StartRecordType or "")
        records = [
            {**record, "Name": record["Name"].rstrip(".") + "."}
            for key, record in sorted(self.records.items())
            if (key[0].rstrip("."), key[1]) >= start
        ]
        return {"ResourceRecordSets": records[: int(MaxItems)], "IsTruncated": len(records) > int(MaxItems)}

    def get_change(self, Id):
        if self.pending_checks > 0:
            self.pending_checks -= 1
            return {"ChangeInfo": {"Id": Id, "Status": "PENDING"}}
        return {"ChangeInfo": {"Id": Id, "Status": "INSYNC"}}

    def value_of(self, name: str) -> Optional[str]:
        record = self.records.get((name, "A"))
        return record["ResourceRecords"][0]["Value"] if record else None


class FakeSES:
    """SES v2 client; the platform identity can be created once."""

    def __init__(self):
        self.identities: set[str] = set()
        self.create_calls = 0
        self.sent: list[dict] = []

    def create_email_identity(self, EmailIdentity):
        self.create_calls += 1
        if EmailIdentity in self.identities:
            raise client_error("AlreadyExistsException", operation="CreateEmailIdentity")
        self.identities.add(EmailIdentity)
        return {"IdentityType": "DOMAIN", "VerifiedForSendingStatus": False}

    def send_email(self, **request):
        self.sent.append(request)
        return {"MessageId": f"msg-{len(self.sent)}"}


class SentCommand:
    def __init__(self, command_id: str, instance_id: str, commands: list[str], comment: str):
        self.command_id = command_id
        self.instance_id = instance_id
        self.commands = commands
        self.comment = comment or ""

    @property
    def script(self) -> str:
        return "\n".join(self.commands)


class FakeRunner(RemoteCommandRunner):
    """Remote command runner that never leaves the process.

    ``failures`` maps a comment prefix (``"backup"``, ``"deploy"``, ...) to
    how many more times commands with that comment fail. ``ps_output`` is
    returned for every ``docker compose ps`` call.
    """

    def __init__(self, ps_output: str = ""):
        super().__init__(ssm_client=object(), poll=PollConfig(interval=0.0, timeout=1.0))
        self.ps_output = ps_output
        self.failures: dict[str, int] = {}
        self.sent: list[SentCommand] = []
        self._outcomes: dict[str, CommandOutcome] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, comment_prefix: str, times: int = 1) -> None:
        self.failures[comment_prefix] = times

    def send(self, instance_id, commands, comment=None, working_directory=None):
        with self._lock:
            command_id = f"cmd-{next(self._ids):04d}"
            sent = SentCommand(command_id, instance_id, list(commands), comment)
            self.sent.append(sent)
            self._outcomes[command_id] = self._execute(sent)
        return command_id

    def _execute(self, sent: SentCommand) -> CommandOutcome:
        for prefix, remaining in self.failures.items():
            if remaining and sent.comment.startswith(prefix):
                self.failures[prefix] = remaining - 1
                return CommandOutcome(
                    command_id=sent.command_id,
                    instance_id=sent.instance_id,
                    status="Failed",
                    stderr=f"{prefix} failed on {sent.instance_id}",
                )
        stdout = self.ps_output if PS_COMMAND in sent.commands else ""
        return CommandOutcome(
            command_id=sent.command_id,
            instance_id=sent.instance_id,
            status="Success",
            stdout=stdout,
        )

    def get_outcome(self, command_id, instance_id):
        return self._outcomes.get(command_id)

    def comments(self) -> list[str]:
        return [sent.comment for sent in self.sent]

    def find(self, comment_prefix: str) -> list[SentCommand]:
        return [sent for sent in self.sent if sent.comment.startswith(comment_prefix)]
