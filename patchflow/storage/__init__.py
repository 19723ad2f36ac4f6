"""Persistence collaborator for the workflow core.

Key Components:
    - WorkflowStore: Abstract async record store with per-workflow transactions
    - InMemoryStore: Process-memory implementation with rollback
    - JsonFileStore: One JSON document per workflow, written atomically
"""

from patchflow.config.settings import StorageConfig
from patchflow.storage.base import Clock, WorkflowStore, new_id, utc_now
from patchflow.storage.json_store import JsonFileStore
from patchflow.storage.memory import InMemoryStore


async def create_store(config: StorageConfig, clock: Clock | None = None) -> WorkflowStore:
    """Create the store selected by the storage configuration."""
    if config.backend == "json":
        return await JsonFileStore.open(config.state_directory, clock=clock)
    return InMemoryStore(clock=clock)


__all__ = [
    "Clock",
    "InMemoryStore",
    "JsonFileStore",
    "WorkflowStore",
    "create_store",
    "new_id",
    "utc_now",
]
