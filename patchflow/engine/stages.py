"""Ordered workflow stage table used for checkpoint bookkeeping."""

from dataclasses import dataclass

from patchflow.enums import WorkflowState


@dataclass(frozen=True)
class WorkflowStage:
    """A named, indexed stage of the workflow lifecycle."""

    index: int
    name: str
    state: WorkflowState
    description: str


WORKFLOW_STAGES: tuple[WorkflowStage, ...] = (
    WorkflowStage(0, "ingested", WorkflowState.INGESTED, "Repository context ingested"),
    WorkflowStage(1, "patches_proposed", WorkflowState.PATCHES_PROPOSED, "Patch sets proposed"),
    WorkflowStage(2, "awaiting_approval", WorkflowState.WAITING_USER_APPROVAL, "Waiting for user approval"),
    WorkflowStage(3, "applying", WorkflowState.APPLYING_PATCHES, "Applying approved patches"),
    WorkflowStage(4, "pr_open", WorkflowState.PR_OPEN, "Pull request opened"),
    WorkflowStage(5, "verifying_ci", WorkflowState.VERIFYING_CI, "Verifying CI results"),
    WorkflowStage(6, "done", WorkflowState.DONE, "Workflow complete"),
)

_BY_STATE = {stage.state.value: stage for stage in WORKFLOW_STAGES}


def get_stage_by_state(state: WorkflowState | str) -> WorkflowStage | None:
    """Get stage info by workflow state, or None for unstaged states."""
    return _BY_STATE.get(str(state))


def get_stage_by_index(index: int) -> WorkflowStage | None:
    """Get stage info by index, or None when out of range."""
    if 0 <= index < len(WORKFLOW_STAGES):
        return WORKFLOW_STAGES[index]
    return None


def resolve_stage(state: WorkflowState | str) -> tuple[int, str]:
    """Resolve a state to ``(stage_index, stage_name)``.

    States outside the stage table (FAILED, NEEDS_HUMAN, BLOCKED_POLICY)
    resolve to index 0 and their lower-cased state name.
    """
    stage = get_stage_by_state(state)
    if stage is None:
        return 0, str(state).lower()
    return stage.index, stage.name
