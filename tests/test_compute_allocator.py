"""Tests for shared and dedicated compute placement."""

import math
from concurrent.futures import ThreadPoolExecutor

import pytest
from hypothesis import given, settings as hypothesis_settings, strategies as st

from fakes import FakeEC2, client_error, make_settings
from stackbox.core.errors import CapacityExhaustedError, ProvisioningTimeoutError
from stackbox.core.resilience import PollConfig
from stackbox.models import AssignmentKind, InstanceState, TenantConfig
from stackbox.provisioning.compute import ComputeAllocator, EDGE_NETWORK
from stackbox.storage import InMemoryStateStore


def tenant(tenant_id: str) -> TenantConfig:
    return TenantConfig(tenant_id=tenant_id, email=f"owner@{tenant_id}.example")


@pytest.fixture
def ec2():
    return FakeEC2()


@pytest.fixture
def allocator(platform_settings, store, ec2):
    return ComputeAllocator(
        platform_settings,
        store,
        ec2_client=ec2,
        lock_poll=PollConfig(interval=0.01, timeout=10.0),
    )


class TestSharedPlacement:
    """Tests for packing trial tenants onto shared instances."""

    def test_first_tenant_starts_instance(self, allocator, store, ec2):
        assignment = allocator.assign_compute(tenant("acme01"), "shared")

        assert assignment.kind == AssignmentKind.SHARED
        assert assignment.instance_id == "i-00000001"
        assert assignment.address == "203.0.113.1"
        assert assignment.stack_dir == "/opt/stackbox/trial-clients/acme01"
        row = store.get_pool_instance("i-00000001")
        assert row.instance_state == InstanceState.RUNNING
        assert row.tenants == {"acme01"}
        assert ec2.tag_value("i-00000001", "Type") == "SharedTrial"

    def test_shared_bootstrap_starts_edge_proxy(self, allocator, ec2):
        allocator.assign_compute(tenant("acme01"), "shared")

        user_data = ec2.instances["i-00000001"]["params"]["UserData"]
        assert f"docker network create {EDGE_NETWORK}" in user_data
        assert "-p 80:80 -p 443:443" in user_data

    def test_tenants_share_until_full(self, allocator, store, ec2):
        for number in range(10):
            allocator.assign_compute(tenant(f"tenant{number:02d}"), "shared")

        assert ec2.launched == ["i-00000001"]
        assert store.get_pool_instance("i-00000001").tenant_count == 10

        overflow = allocator.assign_compute(tenant("tenant10"), "shared")
        assert overflow.instance_id == "i-00000002"
        assert overflow.tenant_count == 1

    def test_reassignment_reuses_existing_slot(self, allocator, store, ec2):
        first = allocator.assign_compute(tenant("acme01"), "shared")
        again = allocator.assign_compute(tenant("acme01"), "shared")

        assert again.instance_id == first.instance_id
        assert store.get_pool_instance(first.instance_id).tenant_count == 1
        assert len(ec2.launched) == 1

    def test_concurrent_signups_never_overfill(self, allocator, store):
        configs = [tenant(f"rush{number:02d}") for number in range(11)]

        with ThreadPoolExecutor(max_workers=11) as pool:
            assignments = list(pool.map(lambda c: allocator.assign_compute(c, "shared"), configs))

        instances = store.list_pool_instances()
        assert sorted(instance.tenant_count for instance in instances) == [1, 10]
        assert sum(len(instance.tenants) for instance in instances) == 11
        assert len({a.tenant_id for a in assignments}) == 11

    def test_capacity_exhausted_when_launch_rejected(self, allocator, ec2):
        ec2.launch_error = client_error("InsufficientInstanceCapacity", operation="RunInstances")

        with pytest.raises(CapacityExhaustedError) as exc_info:
            allocator.assign_compute(tenant("acme01"), "shared")
        assert exc_info.value.resource == "shared-pool"

    def test_timeout_marks_instance_failed(self, store):
        ec2 = FakeEC2(running=False)
        slow = ComputeAllocator(
            make_settings(instance_ready_timeout=0.05),
            store,
            ec2_client=ec2,
        )

        with pytest.raises(ProvisioningTimeoutError):
            slow.assign_compute(tenant("acme01"), "shared")

        row = store.get_pool_instance("i-00000001")
        assert row.instance_state == InstanceState.FAILED
        # Left in place for diagnosis
        assert ec2.terminated == []

    def test_failed_instance_takes_no_new_tenants(self, store):
        ec2 = FakeEC2(running=False)
        slow = ComputeAllocator(make_settings(instance_ready_timeout=0.05), store, ec2_client=ec2)
        with pytest.raises(ProvisioningTimeoutError):
            slow.assign_compute(tenant("acme01"), "shared")

        ec2.running = True
        assignment = slow.assign_compute(tenant("beta02"), "shared")
        assert assignment.instance_id == "i-00000002"

    def test_release_is_idempotent(self, allocator, store):
        assignment = allocator.assign_compute(tenant("acme01"), "shared")
        allocator.assign_compute(tenant("beta02"), "shared")

        assert allocator.release(assignment) is True
        assert allocator.release(assignment) is False
        row = store.get_pool_instance(assignment.instance_id)
        assert row.tenant_count == 1
        assert row.tenants == {"beta02"}

    @hypothesis_settings(max_examples=25, deadline=None)
    @given(
        tenants=st.integers(min_value=1, max_value=25),
        max_tenants=st.integers(min_value=1, max_value=6),
    )
    def test_never_exceeds_capacity(self, tenants, max_tenants):
        """Property: no shared instance ever holds more than max_tenants."""
        store = InMemoryStateStore()
        allocator = ComputeAllocator(
            make_settings(max_tenants_per_instance=max_tenants),
            store,
            ec2_client=FakeEC2(),
        )

        for number in range(tenants):
            allocator.assign_compute(tenant(f"prop{number:03d}"), "shared")

        instances = store.list_pool_instances()
        assert all(i.tenant_count <= max_tenants for i in instances)
        assert all(i.tenant_count == len(i.tenants) for i in instances)
        assert sum(i.tenant_count for i in instances) == tenants
        assert len(instances) == math.ceil(tenants / max_tenants)


class TestDedicatedPlacement:
    """Tests for one-tenant instances."""

    def test_dedicated_instance_per_tenant(self, allocator, ec2):
        assignment = allocator.assign_compute(tenant("acme01"), AssignmentKind.DEDICATED)

        assert assignment.kind == AssignmentKind.DEDICATED
        assert assignment.pool_instance_id is None
        assert assignment.stack_dir == "/opt/stackbox/clients/acme01"
        assert ec2.tag_value(assignment.instance_id, "Tenant") == "acme01"
        params = ec2.instances[assignment.instance_id]["params"]
        assert params["InstanceType"] == "t3.small"
        assert params["SecurityGroupIds"] == ["sg-test"]
        assert params["SubnetId"] == "subnet-test"

    def test_existing_dedicated_assignment_reused(self, allocator, store, ec2):
        first = allocator.assign_compute(tenant("acme01"), "dedicated")
        store.save_assignment(first)

        again = allocator.assign_compute(tenant("acme01"), "dedicated")

        assert again.instance_id == first.instance_id
        assert len(ec2.launched) == 1

    def test_release_terminates(self, allocator, ec2):
        assignment = allocator.assign_compute(tenant("acme01"), "dedicated")

        assert allocator.release(assignment) is True
        assert ec2.terminated == [assignment.instance_id]

    def test_tag_for_reclaim(self, allocator, ec2):
        assignment = allocator.assign_compute(tenant("acme01"), "dedicated")

        allocator.tag_for_reclaim(assignment.instance_id, "acme01", "migration failed")

        assert ec2.tag_value(assignment.instance_id, "StackBoxReclaim") == "pending"
        assert ec2.tag_value(assignment.instance_id, "StackBoxReclaimReason") == "migration failed"
