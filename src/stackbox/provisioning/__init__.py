"""Compute, storage, DNS and email resources for tenants."""

from stackbox.provisioning.compensation import CompensationLog, CompensationOutcome
from stackbox.provisioning.compute import (
    ComputeAllocator,
    dedicated_user_data,
    shared_user_data,
    stack_dir_for,
)
from stackbox.provisioning.migration import MigrationRunner
from stackbox.provisioning.provisioner import ResourceProvisioner
from stackbox.provisioning.remote import (
    CommandOutcome,
    RemoteCommandRunner,
    file_write_commands,
)

__all__ = [
    "CompensationLog",
    "CompensationOutcome",
    "ComputeAllocator",
    "dedicated_user_data",
    "shared_user_data",
    "stack_dir_for",
    "MigrationRunner",
    "ResourceProvisioner",
    "CommandOutcome",
    "RemoteCommandRunner",
    "file_write_commands",
]
