"""
JSON-file workflow store.

Each workflow is persisted as one JSON document, ``{workflow_id}.json``, in a
state directory::

    {
        "workflow": {"id": "wf-1", "state": "PR_OPEN", ...},
        "runs": [...],
        "events": [...],
        "artifacts": [...],
        "patch_sets": [...],
        "approvals": [...],
        "violations": [...],
        "checkpoints": [...]
    }

Records are served from memory. A workflow's document is rewritten after every
mutation made outside a transaction, and once when a transaction commits. A
rolled-back transaction writes nothing, so the file on disk keeps its
pre-transaction content.

Example:
    >>> store = await JsonFileStore.open(".patchflow/state")
    >>> workflow = await store.create_workflow(base_sha="abc123")
"""

import json
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from patchflow.checkpoint.types import Checkpoint
from patchflow.exceptions import StorageError
from patchflow.models import (
    Approval,
    Artifact,
    PatchSet,
    PolicyViolation,
    Workflow,
    WorkflowEvent,
    WorkflowRun,
)
from patchflow.storage.base import Clock
from patchflow.storage.memory import InMemoryStore, _Bucket

log = structlog.get_logger(__name__)

_RECORD_TYPES: dict[str, Any] = {
    "runs": WorkflowRun,
    "events": WorkflowEvent,
    "artifacts": Artifact,
    "patch_sets": PatchSet,
    "approvals": Approval,
    "violations": PolicyViolation,
    "checkpoints": Checkpoint,
}


class JsonFileStore(InMemoryStore):
    """Workflow store persisted as one JSON file per workflow.

    Attributes:
        state_dir: Directory holding the workflow documents
    """

    def __init__(self, state_dir: str | Path, clock: Clock | None = None) -> None:
        super().__init__(clock=clock)
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    async def open(cls, state_dir: str | Path, clock: Clock | None = None) -> "JsonFileStore":
        """Create a store and load every workflow document in ``state_dir``.

        Raises:
            StorageError: If a document cannot be parsed
        """
        store = cls(state_dir, clock=clock)
        for path in sorted(store.state_dir.glob("*.json")):
            await store._load(path)
        log.info("json_store_opened", state_dir=str(store.state_dir), workflows=len(store._buckets))
        return store

    def _get_state_path(self, workflow_id: str) -> Path:
        return self.state_dir / f"{workflow_id}.json"

    async def _load(self, path: Path) -> None:
        async with aiofiles.open(path) as f:
            content = await f.read()
        try:
            document = json.loads(content)
            bucket = _Bucket(workflow=Workflow.model_validate(document["workflow"]))
            for attr, model in _RECORD_TYPES.items():
                setattr(bucket, attr, [model.model_validate(r) for r in document.get(attr, [])])
        except (ValueError, KeyError) as e:
            raise StorageError(f"Invalid workflow document {path}: {e}") from e
        self._buckets[bucket.workflow.id] = bucket

    def _serialize(self, bucket: _Bucket) -> dict[str, Any]:
        document: dict[str, Any] = {"workflow": bucket.workflow.model_dump(mode="json")}
        for attr in _RECORD_TYPES:
            document[attr] = [r.model_dump(mode="json") for r in getattr(bucket, attr)]
        return document

    async def _write_state(self, workflow_id: str) -> None:
        """Write a workflow document atomically via a temporary file and rename."""
        bucket = self._buckets.get(workflow_id)
        path = self._get_state_path(workflow_id)
        if bucket is None:
            path.unlink(missing_ok=True)
            return

        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(self._serialize(bucket), indent=2))

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)

    async def _changed(self, workflow_id: str) -> None:
        if not self._in_transaction(workflow_id):
            await self._write_state(workflow_id)

    async def _committed(self, workflow_id: str) -> None:
        await self._write_state(workflow_id)
