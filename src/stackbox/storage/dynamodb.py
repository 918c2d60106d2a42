"""DynamoDB implementation of StateStore.

Two tables:

* tenants table, ``pk = TENANT#<id>`` and ``sk`` one of ``CONFIG``,
  ``TRIAL``, ``ASSIGNMENT``, ``STACK``, ``MIGRATION`` or
  ``RESULT#<iso-ts>#<result-id>``. Model payloads are stored as JSON in
  ``data``; trial items also carry ``trial_status`` for the sparse
  ``trial-status-index`` GSI and ``version`` for conditional writes.
* pool table, ``instance_id`` partition key, holding one row per shared
  instance plus ``LOCK#<name>`` lease items.
"""

import os
import time
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import boto3
from botocore.exceptions import ClientError

from stackbox.core import get_logger
from stackbox.core.errors import ConcurrentModificationError
from stackbox.core.resilience import is_conditional_check_failure
from stackbox.models import (
    ComputeAssignment,
    InstanceState,
    MigrationPlan,
    PoolInstance,
    ProvisioningResult,
    StackRecord,
    TenantConfig,
    TrialState,
    TrialStatus,
    utcnow,
)
from stackbox.storage.base import StateStore

logger = get_logger(__name__)

TRIAL_STATUS_INDEX = "trial-status-index"
RECORD_INSTANCE = "instance"
RECORD_LOCK = "lock"


def _tenant_key(tenant_id: str, sort_key: str) -> dict[str, str]:
    return {"pk": f"TENANT#{tenant_id}", "sk": sort_key}


class DynamoDBStateStore(StateStore):
    """StateStore backed by DynamoDB conditional writes."""

    def __init__(
        self,
        tenants_table: Optional[str] = None,
        pool_table: Optional[str] = None,
        dynamodb_resource: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            tenants_table: Tenants table name
            pool_table: Shared pool table name
            dynamodb_resource: Optional boto3 DynamoDB resource (for testing)
            clock: Epoch-seconds clock used for lease expiry
        """
        self.tenants_table_name = tenants_table or os.environ.get(
            "STACKBOX_TENANTS_TABLE", "stackbox-tenants"
        )
        self.pool_table_name = pool_table or os.environ.get(
            "STACKBOX_POOL_TABLE", "stackbox-shared-pool"
        )
        self._resource = dynamodb_resource
        self._tenants = None
        self._pool = None
        self._clock = clock

    @property
    def resource(self):
        """Get DynamoDB resource."""
        if self._resource is None:
            self._resource = boto3.resource("dynamodb")
        return self._resource

    @property
    def tenants(self):
        if self._tenants is None:
            self._tenants = self.resource.Table(self.tenants_table_name)
        return self._tenants

    @property
    def pool(self):
        if self._pool is None:
            self._pool = self.resource.Table(self.pool_table_name)
        return self._pool

    # ==================== Helpers ====================

    def _put_model(self, tenant_id: str, sort_key: str, model, **extra) -> None:
        item = _tenant_key(tenant_id, sort_key)
        item["data"] = model.model_dump_json()
        item["updated_at"] = utcnow().isoformat()
        item.update(extra)
        self.tenants.put_item(Item=item)

    def _get_data(self, tenant_id: str, sort_key: str) -> Optional[dict]:
        response = self.tenants.get_item(Key=_tenant_key(tenant_id, sort_key))
        return response.get("Item")

    def _query_all(self, table, **kwargs) -> list[dict]:
        items = []
        while True:
            response = table.query(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _scan_all(self, table, **kwargs) -> list[dict]:
        items = []
        while True:
            response = table.scan(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    # ==================== Tenant config ====================

    def save_tenant_config(self, config: TenantConfig) -> None:
        self._put_model(config.tenant_id, "CONFIG", config)

    def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        item = self._get_data(tenant_id, "CONFIG")
        return TenantConfig.model_validate_json(item["data"]) if item else None

    # ==================== Trial state ====================

    def save_trial_state(
        self,
        state: TrialState,
        expected_version: Optional[int] = None,
    ) -> TrialState:
        new_version = (expected_version or 0) + 1
        stored = state.model_copy(update={"version": new_version})
        item = _tenant_key(state.tenant_id, "TRIAL")
        item.update({
            "data": stored.model_dump_json(),
            "trial_status": stored.status.value,
            "version": new_version,
            "updated_at": stored.updated_at.isoformat(),
        })

        if expected_version is None:
            condition = {"ConditionExpression": "attribute_not_exists(pk)"}
        else:
            condition = {
                "ConditionExpression": "#version = :expected",
                "ExpressionAttributeNames": {"#version": "version"},
                "ExpressionAttributeValues": {":expected": expected_version},
            }

        try:
            self.tenants.put_item(Item=item, **condition)
        except ClientError as e:
            if is_conditional_check_failure(e):
                logger.info(
                    "trial_state_write_conflict",
                    tenant_id=state.tenant_id,
                    expected_version=expected_version,
                )
                raise ConcurrentModificationError(
                    f"Trial state changed concurrently (expected version {expected_version})",
                    key=state.tenant_id,
                ) from e
            raise
        return stored

    def get_trial_state(self, tenant_id: str) -> Optional[TrialState]:
        item = self._get_data(tenant_id, "TRIAL")
        if not item:
            return None
        state = TrialState.model_validate_json(item["data"])
        return state.model_copy(update={"version": int(item["version"])})

    def list_trial_states(
        self,
        statuses: Optional[Iterable[TrialStatus]] = None,
    ) -> list[TrialState]:
        wanted = list(statuses) if statuses is not None else list(TrialStatus)
        states = []
        for status in wanted:
            items = self._query_all(
                self.tenants,
                IndexName=TRIAL_STATUS_INDEX,
                KeyConditionExpression="trial_status = :status",
                ExpressionAttributeValues={":status": status.value},
            )
            for item in items:
                state = TrialState.model_validate_json(item["data"])
                states.append(state.model_copy(update={"version": int(item["version"])}))
        return states

    # ==================== Compute assignment ====================

    def save_assignment(self, assignment: ComputeAssignment) -> None:
        self._put_model(
            assignment.tenant_id,
            "ASSIGNMENT",
            assignment,
            assignment_kind=assignment.kind.value,
            instance_id=assignment.instance_id,
        )

    def get_assignment(self, tenant_id: str) -> Optional[ComputeAssignment]:
        item = self._get_data(tenant_id, "ASSIGNMENT")
        return ComputeAssignment.model_validate_json(item["data"]) if item else None

    # ==================== Provisioning results ====================

    def save_result(self, result: ProvisioningResult) -> None:
        item = _tenant_key(
            result.tenant_id,
            f"RESULT#{result.created_at.isoformat()}#{result.result_id}",
        )
        item.update({
            "data": result.model_dump_json(exclude={"credentials"}),
            "result_status": result.status.value,
        })
        self.tenants.put_item(Item=item)

    def get_latest_result(self, tenant_id: str) -> Optional[ProvisioningResult]:
        response = self.tenants.query(
            KeyConditionExpression="pk = :pk AND begins_with(sk, :prefix)",
            ExpressionAttributeValues={":pk": f"TENANT#{tenant_id}", ":prefix": "RESULT#"},
            ScanIndexForward=False,
            Limit=1,
        )
        items = response.get("Items", [])
        return ProvisioningResult.model_validate_json(items[0]["data"]) if items else None

    # ==================== Stack records ====================

    def save_stack_record(self, record: StackRecord) -> None:
        self._put_model(record.tenant_id, "STACK", record, stack_state=record.state.value)

    def get_stack_record(self, tenant_id: str) -> Optional[StackRecord]:
        item = self._get_data(tenant_id, "STACK")
        return StackRecord.model_validate_json(item["data"]) if item else None

    # ==================== Migration plans ====================

    def save_migration_plan(self, plan: MigrationPlan) -> None:
        self._put_model(plan.tenant_id, "MIGRATION", plan, migration_status=plan.status.value)

    def get_migration_plan(self, tenant_id: str) -> Optional[MigrationPlan]:
        item = self._get_data(tenant_id, "MIGRATION")
        return MigrationPlan.model_validate_json(item["data"]) if item else None

    def delete_migration_plan(self, tenant_id: str) -> None:
        self.tenants.delete_item(Key=_tenant_key(tenant_id, "MIGRATION"))

    # ==================== Shared pool ====================

    @staticmethod
    def _pool_item_to_model(item: dict) -> PoolInstance:
        return PoolInstance(
            instance_id=item["instance_id"],
            instance_state=InstanceState(item["instance_state"]),
            address=item.get("address"),
            private_address=item.get("private_address"),
            tenant_count=int(item.get("tenant_count", 0)),
            tenants=set(item.get("tenants", set())),
            max_tenants=int(item["max_tenants"]),
            instance_type=item.get("instance_type"),
            created_at=datetime.fromisoformat(item["created_at"]),
        )

    def register_pool_instance(self, instance: PoolInstance) -> None:
        item = {
            "instance_id": instance.instance_id,
            "record_type": RECORD_INSTANCE,
            "instance_state": instance.instance_state.value,
            "tenant_count": instance.tenant_count,
            "max_tenants": instance.max_tenants,
            "created_at": instance.created_at.isoformat(),
        }
        # DynamoDB rejects empty sets and null strings
        if instance.tenants:
            item["tenants"] = set(instance.tenants)
        for name in ("address", "private_address", "instance_type"):
            value = getattr(instance, name)
            if value:
                item[name] = value

        try:
            self.pool.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(instance_id)",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                raise ConcurrentModificationError(
                    f"Pool instance already registered: {instance.instance_id}",
                    key=instance.instance_id,
                ) from e
            raise
        logger.info(
            "pool_instance_registered",
            instance_id=instance.instance_id,
            tenant_count=instance.tenant_count,
        )

    def get_pool_instance(self, instance_id: str) -> Optional[PoolInstance]:
        response = self.pool.get_item(Key={"instance_id": instance_id})
        item = response.get("Item")
        if not item or item.get("record_type") != RECORD_INSTANCE:
            return None
        return self._pool_item_to_model(item)

    def list_pool_instances(self) -> list[PoolInstance]:
        items = self._scan_all(
            self.pool,
            FilterExpression="record_type = :type",
            ExpressionAttributeValues={":type": RECORD_INSTANCE},
            ConsistentRead=True,
        )
        return [self._pool_item_to_model(item) for item in items]

    def update_pool_instance(
        self,
        instance_id: str,
        instance_state: Optional[InstanceState] = None,
        address: Optional[str] = None,
        private_address: Optional[str] = None,
    ) -> None:
        assignments = []
        values = {}
        if instance_state is not None:
            assignments.append("instance_state = :state")
            values[":state"] = instance_state.value
        if address is not None:
            assignments.append("address = :address")
            values[":address"] = address
        if private_address is not None:
            assignments.append("private_address = :private")
            values[":private"] = private_address
        if not assignments:
            return

        try:
            self.pool.update_item(
                Key={"instance_id": instance_id},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression="attribute_exists(instance_id)",
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                raise
            logger.warning("pool_instance_missing", instance_id=instance_id)

    def reserve_slot(self, instance_id: str, tenant_id: str) -> Optional[PoolInstance]:
        try:
            response = self.pool.update_item(
                Key={"instance_id": instance_id},
                UpdateExpression="ADD tenant_count :one, tenants :tenant_set",
                ConditionExpression=(
                    "record_type = :type "
                    "AND tenant_count < max_tenants "
                    "AND instance_state IN (:pending, :running) "
                    "AND NOT contains(tenants, :tenant)"
                ),
                ExpressionAttributeValues={
                    ":one": 1,
                    ":tenant_set": {tenant_id},
                    ":tenant": tenant_id,
                    ":type": RECORD_INSTANCE,
                    ":pending": InstanceState.PENDING.value,
                    ":running": InstanceState.RUNNING.value,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return None
            raise
        return self._pool_item_to_model(response["Attributes"])

    def release_slot(self, instance_id: str, tenant_id: str) -> bool:
        try:
            self.pool.update_item(
                Key={"instance_id": instance_id},
                UpdateExpression="ADD tenant_count :minus_one DELETE tenants :tenant_set",
                ConditionExpression="contains(tenants, :tenant)",
                ExpressionAttributeValues={
                    ":minus_one": -1,
                    ":tenant_set": {tenant_id},
                    ":tenant": tenant_id,
                },
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise
        return True

    # ==================== Leases ====================

    def acquire_lock(self, name: str, owner: str, ttl: float) -> bool:
        now = self._clock()
        try:
            self.pool.put_item(
                Item={
                    "instance_id": f"LOCK#{name}",
                    "record_type": RECORD_LOCK,
                    "owner": owner,
                    "expires_at": int(now + ttl),
                },
                ConditionExpression=(
                    "attribute_not_exists(instance_id) OR expires_at < :now OR #owner = :owner"
                ),
                ExpressionAttributeNames={"#owner": "owner"},
                ExpressionAttributeValues={":now": int(now), ":owner": owner},
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            raise
        return True

    def release_lock(self, name: str, owner: str) -> None:
        try:
            self.pool.delete_item(
                Key={"instance_id": f"LOCK#{name}"},
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "owner"},
                ExpressionAttributeValues={":owner": owner},
            )
        except ClientError as e:
            if not is_conditional_check_failure(e):
                raise
