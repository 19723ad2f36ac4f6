"""
Pure workflow transition function.

``transition`` decides, for the current workflow state, an incoming event and
a read-only projection of storage, which state comes next and which jobs the
driver must enqueue. It performs no I/O and never raises: every combination
of inputs yields exactly one ``TransitionResult``.

Rule evaluation order:
    1. Terminal states (DONE, FAILED, BLOCKED_POLICY, NEEDS_HUMAN) absorb
       every event.
    2. State-specific rules.
    3. A blocking policy evaluation moves any remaining state to
       BLOCKED_POLICY.
    4. Otherwise the workflow stays where it is.

Example:
    >>> ctx = TransitionContext(workflow_id="wf-1")
    >>> result = transition(WorkflowState.INGESTED, WorkflowCreated(), ctx)
    >>> result.next_state, [job.name for job in result.enqueue]
    (<WorkflowState.INGESTED: 'INGESTED'>, [<JobName.INGEST_CONTEXT: 'ingest_context'>])
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from patchflow.engine.events import (
    ApprovalRecorded,
    ChangesRequested,
    CIComplete,
    JobCompleted,
    JobFailed,
    PatchSetRejected,
    PolicyEvaluated,
    PRClosed,
    PRMerged,
    TransitionEvent,
    WorkflowCreated,
)
from patchflow.enums import TERMINAL_STATES, JobName, WorkflowState

WORKFLOW_QUEUE = "workflow"

# Error markers emitted by the apply worker when a write gate refuses the change
_GATE_ERRORS = ("WRITE_BLOCKED", "NO_APPROVAL")


@dataclass(frozen=True)
class TransitionContext:
    """Read-only projection of storage supplied by the driver."""

    workflow_id: str
    has_patch_sets: bool = False
    latest_patch_set_id: str | None = None
    has_approval_to_apply: bool = False
    has_blocking_policy_violations: bool = False


@dataclass(frozen=True)
class JobSpec:
    """A job the driver must enqueue after persisting the transition."""

    name: JobName
    payload: dict[str, Any] = field(default_factory=dict)
    queue: str = WORKFLOW_QUEUE

    def to_dict(self) -> dict[str, Any]:
        return {"queue": self.queue, "name": str(self.name), "payload": dict(self.payload)}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a single transition."""

    next_state: WorkflowState
    enqueue: list[JobSpec] = field(default_factory=list)
    reason: str = ""


def _job(name: JobName, ctx: TransitionContext, with_patch_set: bool = False) -> JobSpec:
    payload: dict[str, Any] = {"workflow_id": ctx.workflow_id}
    if with_patch_set:
        payload["patch_set_id"] = ctx.latest_patch_set_id
    return JobSpec(name=name, payload=payload)


def _has_patch_set(ctx: TransitionContext) -> bool:
    return ctx.has_patch_sets and bool(ctx.latest_patch_set_id)


def _from_ingested(event: TransitionEvent, ctx: TransitionContext) -> TransitionResult | None:
    if isinstance(event, WorkflowCreated):
        return TransitionResult(
            WorkflowState.INGESTED,
            [_job(JobName.INGEST_CONTEXT, ctx)],
            "Workflow created, ingesting context",
        )

    if isinstance(event, JobCompleted) and event.stage == JobName.INGEST_CONTEXT:
        if _has_patch_set(ctx):
            return TransitionResult(
                WorkflowState.PATCHES_PROPOSED,
                [_job(JobName.EVALUATE_POLICY, ctx, with_patch_set=True)],
                "Context ingested and patch sets proposed",
            )
        return TransitionResult(WorkflowState.NEEDS_HUMAN, [], "Context ingested but no patch sets were proposed")

    if isinstance(event, JobFailed) and event.stage == JobName.INGEST_CONTEXT:
        return TransitionResult(WorkflowState.FAILED, [], f"Context ingestion failed: {event.error}")

    return None


def _from_patches_proposed(event: TransitionEvent, ctx: TransitionContext) -> TransitionResult | None:
    if isinstance(event, PolicyEvaluated):
        if event.result.has_blocking_violations:
            return TransitionResult(WorkflowState.BLOCKED_POLICY, [], "Blocking policy violations found")
        return TransitionResult(WorkflowState.WAITING_USER_APPROVAL, [], "Policy evaluation passed, awaiting approval")

    if _has_patch_set(ctx):
        return TransitionResult(
            WorkflowState.PATCHES_PROPOSED,
            [_job(JobName.EVALUATE_POLICY, ctx, with_patch_set=True)],
            "Policy evaluation pending, re-enqueueing evaluate_policy",
        )
    return TransitionResult(WorkflowState.NEEDS_HUMAN, [], "No patch sets available for policy evaluation")


def _from_waiting_user_approval(event: TransitionEvent, ctx: TransitionContext) -> TransitionResult | None:
    if isinstance(event, ApprovalRecorded):
        if not (ctx.has_approval_to_apply and ctx.latest_patch_set_id):
            return TransitionResult(
                WorkflowState.WAITING_USER_APPROVAL, [], "Approval event received but approval not valid"
            )
        # A policy evaluation may have landed after this state was entered
        if ctx.has_blocking_policy_violations:
            return TransitionResult(
                WorkflowState.BLOCKED_POLICY, [], "Approval received but blocking policy violations exist"
            )
        return TransitionResult(
            WorkflowState.APPLYING_PATCHES,
            [_job(JobName.APPLY_PATCHES, ctx, with_patch_set=True)],
            "Approval recorded, applying patches",
        )

    if isinstance(event, PolicyEvaluated):
        if event.result.has_blocking_violations:
            return TransitionResult(WorkflowState.BLOCKED_POLICY, [], "Blocking policy violations found")
        return TransitionResult(WorkflowState.WAITING_USER_APPROVAL, [], "Policy evaluated with warnings only")

    if isinstance(event, ChangesRequested):
        return TransitionResult(WorkflowState.NEEDS_HUMAN, [], "Changes requested by reviewer")

    if isinstance(event, PatchSetRejected):
        return TransitionResult(WorkflowState.FAILED, [], "Patch set rejected")

    return None


def _from_applying_patches(event: TransitionEvent, ctx: TransitionContext) -> TransitionResult | None:
    if isinstance(event, JobCompleted) and event.stage == JobName.APPLY_PATCHES:
        result = event.result or {}
        if result.get("prNumber") or result.get("pr_number") or result.get("pr"):
            return TransitionResult(WorkflowState.PR_OPEN, [], "Patches applied and pull request opened")
        return TransitionResult(WorkflowState.BLOCKED_POLICY, [], "Patches applied but no pull request was created")

    if isinstance(event, JobFailed) and event.stage == JobName.APPLY_PATCHES:
        if any(marker in event.error for marker in _GATE_ERRORS):
            return TransitionResult(WorkflowState.BLOCKED_POLICY, [], f"Apply blocked by write gate: {event.error}")
        return TransitionResult(WorkflowState.FAILED, [], f"Applying patches failed: {event.error}")

    return None


def _ci_outcome(event: CIComplete) -> TransitionResult:
    if event.result.conclusion == "success":
        return TransitionResult(WorkflowState.DONE, [], "CI passed")
    return TransitionResult(WorkflowState.NEEDS_HUMAN, [], f"CI concluded with {event.result.conclusion}")


def _from_pr_open(event: TransitionEvent, ctx: TransitionContext) -> TransitionResult | None:
    if isinstance(event, PRMerged):
        return TransitionResult(WorkflowState.DONE, [], f"Pull request #{event.pr_number} merged")
    if isinstance(event, PRClosed):
        return TransitionResult(WorkflowState.NEEDS_HUMAN, [], f"Pull request #{event.pr_number} closed without merge")
    if isinstance(event, CIComplete):
        return _ci_outcome(event)
    return None


def _from_verifying_ci(event: TransitionEvent, ctx: TransitionContext) -> TransitionResult | None:
    if isinstance(event, CIComplete):
        return _ci_outcome(event)
    return None


_StateRule = Callable[[TransitionEvent, TransitionContext], "TransitionResult | None"]

_STATE_RULES: dict[WorkflowState, _StateRule] = {
    WorkflowState.INGESTED: _from_ingested,
    WorkflowState.PATCHES_PROPOSED: _from_patches_proposed,
    WorkflowState.WAITING_USER_APPROVAL: _from_waiting_user_approval,
    WorkflowState.APPLYING_PATCHES: _from_applying_patches,
    WorkflowState.PR_OPEN: _from_pr_open,
    WorkflowState.VERIFYING_CI: _from_verifying_ci,
}


def transition(current: WorkflowState, event: TransitionEvent, ctx: TransitionContext) -> TransitionResult:
    """Compute the next workflow state for an event.

    Args:
        current: Current workflow state
        event: Validated transition event
        ctx: Storage projection supplied by the driver

    Returns:
        The next state, jobs to enqueue and a human-readable reason.
        Never raises.
    """
    if current in TERMINAL_STATES:
        return TransitionResult(current, [], "no transition from terminal state")

    rule = _STATE_RULES.get(current)
    if rule is not None:
        result = rule(event, ctx)
        if result is not None:
            return result

    if isinstance(event, PolicyEvaluated) and event.result.has_blocking_violations:
        return TransitionResult(WorkflowState.BLOCKED_POLICY, [], "Blocking policy violations found")

    event_type = getattr(event, "type", type(event).__name__)
    return TransitionResult(current, [], f"No transition for {event_type} in state {current}")
