"""Enumerations for patchflow workflow states, stages, jobs and records."""

from enum import Enum


class WorkflowState(str, Enum):
    """Lifecycle states of a code-change workflow.

    The happy path is:
    INGESTED -> PATCHES_PROPOSED -> WAITING_USER_APPROVAL -> APPLYING_PATCHES
    -> PR_OPEN -> (VERIFYING_CI) -> DONE

    DONE, FAILED, BLOCKED_POLICY and NEEDS_HUMAN are absorbing: once a
    workflow reaches one of them no event moves it onward.
    """

    INGESTED = "INGESTED"
    PATCHES_PROPOSED = "PATCHES_PROPOSED"
    WAITING_USER_APPROVAL = "WAITING_USER_APPROVAL"
    APPLYING_PATCHES = "APPLYING_PATCHES"
    PR_OPEN = "PR_OPEN"
    VERIFYING_CI = "VERIFYING_CI"
    DONE = "DONE"
    FAILED = "FAILED"
    BLOCKED_POLICY = "BLOCKED_POLICY"
    NEEDS_HUMAN = "NEEDS_HUMAN"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if this state has no outgoing transitions."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        WorkflowState.DONE,
        WorkflowState.FAILED,
        WorkflowState.BLOCKED_POLICY,
        WorkflowState.NEEDS_HUMAN,
    }
)

# States from which a failure diagnosis can be requested
DIAGNOSABLE_STATES = frozenset(
    {
        WorkflowState.FAILED,
        WorkflowState.NEEDS_HUMAN,
        WorkflowState.BLOCKED_POLICY,
    }
)


class JobName(str, Enum):
    """Jobs the transition engine can ask the driver to enqueue.

    Job names double as the ``stage`` of job completion/failure events.
    """

    INGEST_CONTEXT = "ingest_context"
    EVALUATE_POLICY = "evaluate_policy"
    APPLY_PATCHES = "apply_patches"

    def __str__(self) -> str:
        return self.value


class RunStatus(str, Enum):
    """Status of a single job execution (workflow run)."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class PatchSetStatus(str, Enum):
    """Review status of a patch set."""

    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"

    def __str__(self) -> str:
        return self.value


class ViolationSeverity(str, Enum):
    """Severity of a policy violation. Only BLOCK violations gate a workflow."""

    WARN = "WARN"
    BLOCK = "BLOCK"

    def __str__(self) -> str:
        return self.value


class ApprovalKind(str, Enum):
    """Kinds of approval records."""

    APPLY_PATCHES = "apply_patches"
    FIX_PROPOSAL = "fix_proposal"

    def __str__(self) -> str:
        return self.value


class ArtifactKind(str, Enum):
    """Kinds of workflow artifacts."""

    SCOPE = "SCOPE"
    DIAGNOSIS = "DIAGNOSIS"

    def __str__(self) -> str:
        return self.value


class EventType:
    """Workflow event type names written to the event log.

    Plain string constants rather than an enum: the event log is append-only
    and also holds types written by external workers.
    """

    TRANSITION = "orchestrator.transition"
    CHECKPOINT_CREATED = "CHECKPOINT_CREATED"
    CHECKPOINT_RESTORED = "CHECKPOINT_RESTORED"
    DIAGNOSIS_COMPLETE = "DIAGNOSIS_COMPLETE"
    FIX_PROPOSED = "FIX_PROPOSED"
    FIX_APPROVED = "FIX_APPROVED"
    FIX_REJECTED = "FIX_REJECTED"
