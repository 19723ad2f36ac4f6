"""
Persistence interface consumed by the workflow core.

``WorkflowStore`` is the boundary between the services and whatever holds the
records. Implementations assign record ids and stamp creation timestamps from
an injectable clock, so that services and tests agree on what "after a
checkpoint" means.

All list operations return records newest first.

Transactions:
    ``transaction(workflow_id)`` serializes writers for one workflow and
    rolls back every mutation made inside the block if it raises::

        async with store.transaction("wf-1"):
            await store.delete_events_after("wf-1", checkpoint.created_at)
            await store.update_workflow("wf-1", state=checkpoint.state)
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any

from patchflow.checkpoint.types import Checkpoint, CheckpointSnapshot
from patchflow.enums import PatchSetStatus, RunStatus, WorkflowState
from patchflow.models import (
    Approval,
    Artifact,
    PatchSet,
    PolicyViolation,
    Workflow,
    WorkflowEvent,
    WorkflowRun,
)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: the current UTC time."""
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Generate a record id such as ``cp_3f9a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


class WorkflowStore(ABC):
    """Abstract async store for workflow records."""

    clock: Clock

    # --- workflows ---------------------------------------------------------

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        pass

    @abstractmethod
    async def create_workflow(
        self,
        state: WorkflowState = WorkflowState.INGESTED,
        base_sha: str | None = None,
        workflow_id: str | None = None,
    ) -> Workflow:
        pass

    @abstractmethod
    async def update_workflow(self, workflow_id: str, **changes: Any) -> Workflow:
        """Update workflow fields.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        pass

    # --- runs --------------------------------------------------------------

    @abstractmethod
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
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        pass

    @abstractmethod
    async def update_run(self, run_id: str, **changes: Any) -> WorkflowRun:
        pass

    @abstractmethod
    async def list_runs(
        self, workflow_id: str, status: RunStatus | None = None, limit: int | None = None
    ) -> list[WorkflowRun]:
        """List runs ordered by ``started_at``, newest first."""
        pass

    @abstractmethod
    async def delete_runs_after(self, workflow_id: str, after: datetime) -> int:
        """Delete runs started strictly after ``after``. Returns the count deleted."""
        pass

    # --- events ------------------------------------------------------------

    @abstractmethod
    async def append_event(
        self,
        workflow_id: str,
        type: str,
        payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> WorkflowEvent:
        pass

    @abstractmethod
    async def list_events(self, workflow_id: str, limit: int | None = None) -> list[WorkflowEvent]:
        pass

    @abstractmethod
    async def delete_events_after(self, workflow_id: str, after: datetime) -> int:
        pass

    # --- artifacts ---------------------------------------------------------

    @abstractmethod
    async def create_artifact(self, workflow_id: str, kind: str, content: str, content_sha: str) -> Artifact:
        pass

    @abstractmethod
    async def list_artifacts(self, workflow_id: str) -> list[Artifact]:
        pass

    @abstractmethod
    async def delete_artifacts_after(self, workflow_id: str, after: datetime) -> int:
        pass

    # --- patch sets --------------------------------------------------------

    @abstractmethod
    async def create_patch_set(
        self,
        workflow_id: str,
        title: str,
        patches: list[dict[str, Any]] | None = None,
        base_sha: str = "HEAD",
        status: PatchSetStatus = PatchSetStatus.PROPOSED,
    ) -> PatchSet:
        """Create a patch set. Each patch dict is validated into a ``Patch`` with a fresh id."""
        pass

    @abstractmethod
    async def get_patch_set(self, patch_set_id: str) -> PatchSet | None:
        pass

    @abstractmethod
    async def update_patch_set(self, patch_set_id: str, **changes: Any) -> PatchSet:
        pass

    @abstractmethod
    async def list_patch_sets(self, workflow_id: str) -> list[PatchSet]:
        pass

    @abstractmethod
    async def delete_patch_sets_after(self, workflow_id: str, after: datetime) -> int:
        pass

    # --- approvals and policy violations -----------------------------------

    @abstractmethod
    async def create_approval(self, workflow_id: str, kind: str) -> Approval:
        pass

    @abstractmethod
    async def list_approvals(self, workflow_id: str) -> list[Approval]:
        pass

    @abstractmethod
    async def create_policy_violation(
        self,
        workflow_id: str,
        rule: str,
        severity: str,
        file: str,
        message: str,
        line: int | None = None,
    ) -> PolicyViolation:
        pass

    @abstractmethod
    async def list_policy_violations(self, workflow_id: str) -> list[PolicyViolation]:
        pass

    # --- checkpoints -------------------------------------------------------

    @abstractmethod
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
        pass

    @abstractmethod
    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        pass

    @abstractmethod
    async def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        pass

    @abstractmethod
    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        """Delete one checkpoint. Returns False if it does not exist."""
        pass

    @abstractmethod
    async def delete_checkpoints(self, checkpoint_ids: list[str]) -> int:
        pass

    # --- transactions ------------------------------------------------------

    @abstractmethod
    def transaction(self, workflow_id: str) -> AbstractAsyncContextManager["WorkflowStore"]:
        """Serialize writers for one workflow and roll back on error."""
        pass

