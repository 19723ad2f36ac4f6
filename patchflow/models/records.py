"""
Persistence records for the workflow core.

These models mirror the rows the persistence collaborator stores: workflows,
runs, events, artifacts, patch sets, approvals and policy violations. They
are pydantic models so that every storage backend can serialize them with
``model_dump(mode="json")`` and load them back with ``model_validate``.

Records are created by a ``WorkflowStore``, which assigns ids and stamps
timestamps from its clock. Services never construct them directly.

Example:
    Reading a workflow and its latest patch set::

        workflow = await store.get_workflow("wf-1")
        patch_sets = await store.list_patch_sets("wf-1")
        latest = patch_sets[0] if patch_sets else None
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from patchflow.enums import WorkflowState


class Workflow(BaseModel):
    """A code-change workflow."""

    id: str
    state: WorkflowState = Field(
        default=WorkflowState.INGESTED,
        description="Current lifecycle state. Written only by the driver and by checkpoint restore.",
    )
    base_sha: str | None = Field(default=None, description="Base revision the patches apply to")
    created_at: datetime
    updated_at: datetime


class WorkflowRun(BaseModel):
    """A single job execution belonging to a workflow."""

    id: str
    workflow_id: str
    job_name: str
    status: str = Field(description="One of 'running', 'completed', 'failed'")
    error_msg: str | None = Field(default=None, description="Raw error text, possibly including a stack trace")
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None


class WorkflowEvent(BaseModel):
    """An append-only workflow event log entry."""

    id: str
    workflow_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class Artifact(BaseModel):
    """A document produced for a workflow, addressed by content hash."""

    id: str
    workflow_id: str
    kind: str
    content: str
    content_sha: str = Field(description="SHA-256 hex digest of content")
    created_at: datetime


class Patch(BaseModel):
    """A single patch within a patch set."""

    id: str
    task_id: str
    title: str
    summary: str = ""
    diff: str = ""
    files: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Touched files: {'path', 'action', 'additions', 'deletions'}",
    )
    adds_tests: bool = False
    risk_level: str = "low"
    proposed_commands: list[str] = Field(default_factory=list)


class PatchSet(BaseModel):
    """A reviewable group of patches proposed for a workflow."""

    id: str
    workflow_id: str
    title: str
    base_sha: str = "HEAD"
    status: str = Field(default="proposed", description="One of 'proposed', 'approved', 'rejected', 'applied'")
    patches: list[Patch] = Field(default_factory=list)
    created_at: datetime
    approved_at: datetime | None = None
    approved_by: str | None = None


class Approval(BaseModel):
    """A recorded human approval."""

    id: str
    workflow_id: str
    kind: str
    created_at: datetime


class PolicyViolation(BaseModel):
    """A policy rule breach found in a proposed patch set."""

    id: str
    workflow_id: str
    rule: str
    severity: str = Field(description="'WARN' or 'BLOCK'")
    file: str
    message: str
    line: int | None = None
    created_at: datetime
