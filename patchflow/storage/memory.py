"""
In-memory workflow store.

Records are held per workflow in a ``_Bucket``. Transactions take a deep copy
of the bucket on entry and put it back if the block raises, which gives the
all-or-nothing behavior checkpoint restore relies on.

Concurrency Model:
    Each workflow has its own asyncio lock, held for the duration of a
    transaction. Individual reads and writes outside a transaction are not
    locked; they complete without yielding to the event loop.
"""

import asyncio
import copy
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog

from patchflow.checkpoint.types import Checkpoint, CheckpointSnapshot
from patchflow.enums import PatchSetStatus, RunStatus, WorkflowState
from patchflow.exceptions import RecordNotFoundError, WorkflowNotFoundError
from patchflow.models import (
    Approval,
    Artifact,
    Patch,
    PatchSet,
    PolicyViolation,
    Workflow,
    WorkflowEvent,
    WorkflowRun,
)
from patchflow.storage.base import Clock, WorkflowStore, new_id, utc_now

log = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT")


@dataclass
class _Bucket:
    """All records belonging to one workflow, in insertion order."""

    workflow: Workflow
    runs: list[WorkflowRun] = field(default_factory=list)
    events: list[WorkflowEvent] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    patch_sets: list[PatchSet] = field(default_factory=list)
    approvals: list[Approval] = field(default_factory=list)
    violations: list[PolicyViolation] = field(default_factory=list)
    checkpoints: list[Checkpoint] = field(default_factory=list)


def _newest_first(records: Iterable[RecordT], key: str = "created_at") -> list[RecordT]:
    # Reverse insertion order first so that ties on the timestamp keep the
    # most recently inserted record in front.
    return sorted(reversed(list(records)), key=lambda r: getattr(r, key), reverse=True)


def _delete_after(records: list[RecordT], after: datetime, key: str = "created_at") -> int:
    kept = [r for r in records if getattr(r, key) <= after]
    removed = len(records) - len(kept)
    records[:] = kept
    return removed


class InMemoryStore(WorkflowStore):
    """Workflow store backed by process memory.

    Args:
        clock: Callable returning the current time, used for every
            ``created_at`` and ``started_at`` the store stamps

    Example:
        >>> store = InMemoryStore()
        >>> workflow = await store.create_workflow(base_sha="abc123")
        >>> await store.append_event(workflow.id, "NOTE", {"text": "hello"})
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or utc_now
        self._buckets: dict[str, _Bucket] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._active_transactions: set[str] = set()

    # --- internals ---------------------------------------------------------

    def _get_lock(self, workflow_id: str) -> asyncio.Lock:
        if workflow_id not in self._locks:
            self._locks[workflow_id] = asyncio.Lock()
        return self._locks[workflow_id]

    def _bucket(self, workflow_id: str) -> _Bucket:
        bucket = self._buckets.get(workflow_id)
        if bucket is None:
            raise WorkflowNotFoundError(workflow_id)
        return bucket

    def _find(self, attr: str, record_id: str) -> tuple[_Bucket, Any] | None:
        for bucket in self._buckets.values():
            for record in getattr(bucket, attr):
                if record.id == record_id:
                    return bucket, record
        return None

    def _replace(self, records: list[Any], updated: Any) -> None:
        for i, record in enumerate(records):
            if record.id == updated.id:
                records[i] = updated
                return

    async def _changed(self, workflow_id: str) -> None:
        """Hook called after every mutation. Persistent subclasses flush here."""

    async def _committed(self, workflow_id: str) -> None:
        """Hook called when a transaction completes successfully."""

    def _in_transaction(self, workflow_id: str) -> bool:
        return workflow_id in self._active_transactions

    # --- workflows ---------------------------------------------------------

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        bucket = self._buckets.get(workflow_id)
        return bucket.workflow if bucket else None

    async def create_workflow(
        self,
        state: WorkflowState = WorkflowState.INGESTED,
        base_sha: str | None = None,
        workflow_id: str | None = None,
    ) -> Workflow:
        now = self.clock()
        workflow = Workflow(
            id=workflow_id or new_id("wf"),
            state=state,
            base_sha=base_sha,
            created_at=now,
            updated_at=now,
        )
        self._buckets[workflow.id] = _Bucket(workflow=workflow)
        await self._changed(workflow.id)
        return workflow

    async def update_workflow(self, workflow_id: str, **changes: Any) -> Workflow:
        bucket = self._bucket(workflow_id)
        bucket.workflow = bucket.workflow.model_copy(update={**changes, "updated_at": self.clock()})
        await self._changed(workflow_id)
        return bucket.workflow

    # --- runs --------------------------------------------------------------

    async def create_run(
        self,
        workflow_id: str,
        job_name: str,
        status: RunStatus = RunStatus.RUNNING,
        inputs: dict[str, Any] | None = None,
        outputs: dict[str, Any] | None = None,
        error_msg: str | None = None,
        completed_at: datetime | None = None,
        duration_ms: int | None = None,
    ) -> WorkflowRun:
        bucket = self._bucket(workflow_id)
        run = WorkflowRun(
            id=new_id("run"),
            workflow_id=workflow_id,
            job_name=job_name,
            status=str(status),
            inputs=inputs or {},
            outputs=outputs,
            error_msg=error_msg,
            started_at=self.clock(),
            completed_at=completed_at,
            duration_ms=duration_ms,
        )
        bucket.runs.append(run)
        await self._changed(workflow_id)
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        found = self._find("runs", run_id)
        return found[1] if found else None

    async def update_run(self, run_id: str, **changes: Any) -> WorkflowRun:
        found = self._find("runs", run_id)
        if found is None:
            raise RecordNotFoundError("run", run_id)
        bucket, run = found
        if "status" in changes:
            changes["status"] = str(changes["status"])
        updated = run.model_copy(update=changes)
        self._replace(bucket.runs, updated)
        await self._changed(bucket.workflow.id)
        return updated

    async def list_runs(
        self, workflow_id: str, status: RunStatus | None = None, limit: int | None = None
    ) -> list[WorkflowRun]:
        bucket = self._buckets.get(workflow_id)
        if bucket is None:
            return []
        runs = _newest_first(bucket.runs, key="started_at")
        if status is not None:
            runs = [r for r in runs if r.status == str(status)]
        return runs[:limit] if limit is not None else runs

    async def delete_runs_after(self, workflow_id: str, after: datetime) -> int:
        removed = _delete_after(self._bucket(workflow_id).runs, after, key="started_at")
        await self._changed(workflow_id)
        return removed

    # --- events ------------------------------------------------------------

    async def append_event(
        self,
        workflow_id: str,
        type: str,
        payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> WorkflowEvent:
        bucket = self._bucket(workflow_id)
        event = WorkflowEvent(
            id=new_id("evt"),
            workflow_id=workflow_id,
            type=type,
            payload=payload or {},
            created_at=created_at or self.clock(),
        )
        bucket.events.append(event)
        await self._changed(workflow_id)
        return event

    async def list_events(self, workflow_id: str, limit: int | None = None) -> list[WorkflowEvent]:
        bucket = self._buckets.get(workflow_id)
        if bucket is None:
            return []
        events = _newest_first(bucket.events)
        return events[:limit] if limit is not None else events

    async def delete_events_after(self, workflow_id: str, after: datetime) -> int:
        removed = _delete_after(self._bucket(workflow_id).events, after)
        await self._changed(workflow_id)
        return removed

    # --- artifacts ---------------------------------------------------------

    async def create_artifact(self, workflow_id: str, kind: str, content: str, content_sha: str) -> Artifact:
        bucket = self._bucket(workflow_id)
        artifact = Artifact(
            id=new_id("art"),
            workflow_id=workflow_id,
            kind=kind,
            content=content,
            content_sha=content_sha,
            created_at=self.clock(),
        )
        bucket.artifacts.append(artifact)
        await self._changed(workflow_id)
        return artifact

    async def list_artifacts(self, workflow_id: str) -> list[Artifact]:
        bucket = self._buckets.get(workflow_id)
        return _newest_first(bucket.artifacts) if bucket else []

    async def delete_artifacts_after(self, workflow_id: str, after: datetime) -> int:
        removed = _delete_after(self._bucket(workflow_id).artifacts, after)
        await self._changed(workflow_id)
        return removed

    # --- patch sets --------------------------------------------------------

    async def create_patch_set(
        self,
        workflow_id: str,
        title: str,
        patches: list[dict[str, Any]] | None = None,
        base_sha: str = "HEAD",
        status: PatchSetStatus = PatchSetStatus.PROPOSED,
    ) -> PatchSet:
        bucket = self._bucket(workflow_id)
        patch_set = PatchSet(
            id=new_id("ps"),
            workflow_id=workflow_id,
            title=title,
            base_sha=base_sha,
            status=str(status),
            patches=[Patch(id=new_id("patch"), **patch) for patch in patches or []],
            created_at=self.clock(),
        )
        bucket.patch_sets.append(patch_set)
        await self._changed(workflow_id)
        return patch_set

    async def get_patch_set(self, patch_set_id: str) -> PatchSet | None:
        found = self._find("patch_sets", patch_set_id)
        return found[1] if found else None

    async def update_patch_set(self, patch_set_id: str, **changes: Any) -> PatchSet:
        found = self._find("patch_sets", patch_set_id)
        if found is None:
            raise RecordNotFoundError("patch set", patch_set_id)
        bucket, patch_set = found
        if "status" in changes:
            changes["status"] = str(changes["status"])
        updated = patch_set.model_copy(update=changes)
        self._replace(bucket.patch_sets, updated)
        await self._changed(bucket.workflow.id)
        return updated

    async def list_patch_sets(self, workflow_id: str) -> list[PatchSet]:
        bucket = self._buckets.get(workflow_id)
        return _newest_first(bucket.patch_sets) if bucket else []

    async def delete_patch_sets_after(self, workflow_id: str, after: datetime) -> int:
        removed = _delete_after(self._bucket(workflow_id).patch_sets, after)
        await self._changed(workflow_id)
        return removed

    # --- approvals and policy violations -----------------------------------

    async def create_approval(self, workflow_id: str, kind: str) -> Approval:
        bucket = self._bucket(workflow_id)
        approval = Approval(id=new_id("apr"), workflow_id=workflow_id, kind=str(kind), created_at=self.clock())
        bucket.approvals.append(approval)
        await self._changed(workflow_id)
        return approval

    async def list_approvals(self, workflow_id: str) -> list[Approval]:
        bucket = self._buckets.get(workflow_id)
        return _newest_first(bucket.approvals) if bucket else []

    async def create_policy_violation(
        self,
        workflow_id: str,
        rule: str,
        severity: str,
        file: str,
        message: str,
        line: int | None = None,
    ) -> PolicyViolation:
        bucket = self._bucket(workflow_id)
        violation = PolicyViolation(
            id=new_id("pv"),
            workflow_id=workflow_id,
            rule=rule,
            severity=str(severity),
            file=file,
            message=message,
            line=line,
            created_at=self.clock(),
        )
        bucket.violations.append(violation)
        await self._changed(workflow_id)
        return violation

    async def list_policy_violations(self, workflow_id: str) -> list[PolicyViolation]:
        bucket = self._buckets.get(workflow_id)
        return _newest_first(bucket.violations) if bucket else []

    # --- checkpoints -------------------------------------------------------

    async def create_checkpoint(
        self,
        workflow_id: str,
        name: str,
        state: WorkflowState,
        stage_index: int,
        stage_name: str,
        snapshot: CheckpointSnapshot,
        metadata: dict[str, Any] | None = None,
        is_automatic: bool = True,
        created_by: str | None = None,
    ) -> Checkpoint:
        bucket = self._bucket(workflow_id)
        checkpoint = Checkpoint(
            id=new_id("cp"),
            workflow_id=workflow_id,
            name=name,
            state=state,
            stage_index=stage_index,
            stage_name=stage_name,
            snapshot=snapshot,
            metadata=metadata,
            is_automatic=is_automatic,
            created_at=self.clock(),
            created_by=created_by,
        )
        bucket.checkpoints.append(checkpoint)
        await self._changed(workflow_id)
        return checkpoint

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        found = self._find("checkpoints", checkpoint_id)
        return found[1] if found else None

    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        bucket = self._buckets.get(workflow_id)
        return _newest_first(bucket.checkpoints) if bucket else []

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        found = self._find("checkpoints", checkpoint_id)
        if found is None:
            return False
        bucket, checkpoint = found
        bucket.checkpoints.remove(checkpoint)
        await self._changed(bucket.workflow.id)
        return True

    async def delete_checkpoints(self, checkpoint_ids: list[str]) -> int:
        targets = set(checkpoint_ids)
        deleted = 0
        for workflow_id, bucket in self._buckets.items():
            before = len(bucket.checkpoints)
            bucket.checkpoints = [cp for cp in bucket.checkpoints if cp.id not in targets]
            if len(bucket.checkpoints) != before:
                deleted += before - len(bucket.checkpoints)
                await self._changed(workflow_id)
        return deleted

    # --- transactions ------------------------------------------------------

    @asynccontextmanager
    async def transaction(self, workflow_id: str) -> AsyncIterator[WorkflowStore]:
        """Run a block of store operations atomically for one workflow.

        The workflow's records are restored to their state at entry if the
        block or the commit raises, and the exception is re-raised.

        Yields:
            This store
        """
        async with self._get_lock(workflow_id):
            saved = copy.deepcopy(self._buckets.get(workflow_id))
            self._active_transactions.add(workflow_id)
            try:
                yield self
                await self._committed(workflow_id)
            except BaseException:
                # Includes cancellation from a caller-side timeout
                if saved is None:
                    self._buckets.pop(workflow_id, None)
                else:
                    self._buckets[workflow_id] = saved
                log.error("store_transaction_rolled_back", workflow_id=workflow_id)
                raise
            finally:
                self._active_transactions.discard(workflow_id)
