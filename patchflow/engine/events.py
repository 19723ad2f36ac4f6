"""
Transition events as a tagged union, validated once at ingestion.

Raw events arrive from job workers, webhooks and the approval UI as untyped
JSON. ``parse_event`` turns such a payload into exactly one of the event
models below, discriminated on ``type``. After that point the transition
engine only ever sees typed events.

Both snake_case and camelCase keys are accepted, so worker payloads such as
``{"type": "E_POLICY_EVALUATED", "result": {"hasBlockingViolations": true}}``
validate unchanged.

Example:
    >>> event = parse_event({"type": "E_JOB_FAILED", "stage": "apply_patches", "error": "WRITE_BLOCKED"})
    >>> isinstance(event, JobFailed)
    True
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from patchflow.enums import JobName


class _EventModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class PolicyResult(_EventModel):
    """Outcome of a policy evaluation."""

    has_blocking_violations: bool
    violation_ids: list[str] = Field(default_factory=list)


class CIResult(_EventModel):
    """Outcome of a CI run."""

    conclusion: Literal["success", "failure", "cancelled"]


class WorkflowCreated(_EventModel):
    type: Literal["E_WORKFLOW_CREATED"] = "E_WORKFLOW_CREATED"


class JobCompleted(_EventModel):
    type: Literal["E_JOB_COMPLETED"] = "E_JOB_COMPLETED"
    stage: JobName
    result: dict[str, Any] | None = None


class JobFailed(_EventModel):
    type: Literal["E_JOB_FAILED"] = "E_JOB_FAILED"
    stage: JobName
    error: str


class PolicyEvaluated(_EventModel):
    type: Literal["E_POLICY_EVALUATED"] = "E_POLICY_EVALUATED"
    result: PolicyResult


class ApprovalRecorded(_EventModel):
    type: Literal["E_APPROVAL_RECORDED"] = "E_APPROVAL_RECORDED"


class CIComplete(_EventModel):
    type: Literal["E_CI_COMPLETED"] = "E_CI_COMPLETED"
    result: CIResult


class ChangesRequested(_EventModel):
    type: Literal["E_CHANGES_REQUESTED"] = "E_CHANGES_REQUESTED"
    comment: str | None = None


class PatchSetRejected(_EventModel):
    type: Literal["E_PATCH_SET_REJECTED"] = "E_PATCH_SET_REJECTED"
    reason: str | None = None


class PRMerged(_EventModel):
    type: Literal["E_PR_MERGED"] = "E_PR_MERGED"
    pr_number: int


class PRClosed(_EventModel):
    type: Literal["E_PR_CLOSED"] = "E_PR_CLOSED"
    pr_number: int


TransitionEvent = Annotated[
    Union[
        WorkflowCreated,
        JobCompleted,
        JobFailed,
        PolicyEvaluated,
        ApprovalRecorded,
        CIComplete,
        ChangesRequested,
        PatchSetRejected,
        PRMerged,
        PRClosed,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[TransitionEvent] = TypeAdapter(TransitionEvent)


def parse_event(raw: dict[str, Any]) -> TransitionEvent:
    """Validate a raw event payload into its typed event model.

    Args:
        raw: Event dictionary carrying a ``type`` discriminator

    Returns:
        The matching event model

    Raises:
        pydantic.ValidationError: If the type is unknown or fields are invalid
    """
    return _EVENT_ADAPTER.validate_python(raw)
