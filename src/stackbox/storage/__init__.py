"""Durable state for tenants, trial states and the shared compute pool."""

from stackbox.storage.base import StateStore
from stackbox.storage.memory import InMemoryStateStore
from stackbox.storage.dynamodb import DynamoDBStateStore

__all__ = [
    "StateStore",
    "InMemoryStateStore",
    "DynamoDBStateStore",
]
