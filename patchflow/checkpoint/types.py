"""
Checkpoint records and the result types of checkpoint operations.

A checkpoint is an immutable, timestamped summary of a workflow at a point in
time. Its snapshot stores only ids, hashes and counts (never artifact or patch
content), so the size of a checkpoint does not grow with the size of the
artifacts it describes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from patchflow.enums import WorkflowState

# Number of recent event ids kept in a snapshot
SNAPSHOT_EVENT_LIMIT = 20


class CheckpointTrigger(str, Enum):
    """What caused a checkpoint to be created."""

    STAGE_COMPLETE = "stage_complete"
    MANUAL = "manual"
    BEFORE_RISKY_OP = "before_risky_op"

    def __str__(self) -> str:
        return self.value


class ArtifactSummary(BaseModel):
    id: str
    kind: str
    content_sha: str
    created_at: datetime


class PatchSetSummary(BaseModel):
    id: str
    title: str
    status: str
    patch_count: int
    created_at: datetime


class ApprovalSummary(BaseModel):
    id: str
    kind: str
    created_at: datetime


class CheckpointSnapshot(BaseModel):
    """Point-in-time summary of a workflow's records."""

    workflow_state: WorkflowState
    base_sha: str | None = None
    artifacts: list[ArtifactSummary] = Field(default_factory=list)
    patch_sets: list[PatchSetSummary] = Field(default_factory=list)
    approvals: list[ApprovalSummary] = Field(default_factory=list)
    recent_event_ids: list[str] = Field(
        default_factory=list,
        description=f"Up to {SNAPSHOT_EVENT_LIMIT} most recent event ids, newest first",
    )
    last_run_id: str | None = None
    last_run_status: str | None = None
    has_violations: bool = False
    violation_count: int = 0


class Checkpoint(BaseModel):
    """A stored checkpoint. Never mutated after creation."""

    id: str
    workflow_id: str
    name: str
    state: WorkflowState
    stage_index: int
    stage_name: str
    snapshot: CheckpointSnapshot
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Creation metadata: trigger, plus reason or notes",
    )
    is_automatic: bool = True
    created_at: datetime
    created_by: str | None = None


@dataclass
class RestoreOptions:
    """Options controlling what a restore removes.

    Runs created after the checkpoint are always removed; there is no flag
    to preserve them.
    """

    preserve_events: bool = False
    preserve_artifacts: bool = False
    preserve_patch_sets: bool = False
    reason: str | None = None
    restored_by: str | None = None


@dataclass
class CleanupCounts:
    """Number of records removed by a restore, per category."""

    events: int = 0
    artifacts: int = 0
    patch_sets: int = 0
    runs: int = 0

    @property
    def total(self) -> int:
        return self.events + self.artifacts + self.patch_sets + self.runs

    def to_payload(self) -> dict[str, int]:
        return {
            "events": self.events,
            "artifacts": self.artifacts,
            "patchSets": self.patch_sets,
            "runs": self.runs,
        }


@dataclass
class RestoreResult:
    """Outcome of a restore. ``success`` is False for a missing checkpoint or a failed restore."""

    success: bool
    checkpoint_id: str
    workflow_id: str
    restored_to_state: WorkflowState | None = None
    restored_to_stage: str | None = None
    cleaned_up: CleanupCounts = field(default_factory=CleanupCounts)
    error: str | None = None


@dataclass
class PruneResult:
    """Outcome of a pruning pass."""

    workflow_id: str
    pruned_count: int = 0
    remaining_count: int = 0
    pruned_checkpoint_ids: list[str] = field(default_factory=list)
