"""Data types for failure diagnosis and fix proposals.

A diagnosis starts from a ``FailureContext`` (assembled once from a failed run
and never modified), produces a ``DiagnosisResult`` with a root-cause category
and ranked ``PotentialFix`` entries, and may lead to ``FixProposal`` records
that wait for human approval.

Example:
    Rendering a diagnosis for storage::

        result = await diagnoser.diagnose(context)
        print(result.root_cause, result.confidence)
        artifact_text = result.to_markdown()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

Effort = Literal["trivial", "small", "medium", "large"]
Risk = Literal["low", "medium", "high"]


class RootCauseCategory(str, Enum):
    """Closed set of root-cause categories."""

    CODE_ERROR = "code_error"
    TEST_FAILURE = "test_failure"
    BUILD_ERROR = "build_error"
    DEPENDENCY_ISSUE = "dependency_issue"
    CONFIGURATION_ERROR = "configuration_error"
    POLICY_VIOLATION = "policy_violation"
    RESOURCE_LIMIT = "resource_limit"
    EXTERNAL_SERVICE = "external_service"
    DATA_ISSUE = "data_issue"
    PERMISSION_DENIED = "permission_denied"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        """Human-readable name, e.g. ``build error``."""
        return self.value.replace("_", " ")


class FixProposalStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FailureEvent:
    """One event in the timeline leading up to a failure."""

    type: str
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyViolationInfo:
    rule: str
    severity: str
    file: str
    message: str
    line: int | None = None


@dataclass(frozen=True)
class FailureContext:
    """Everything known about a single failed run.

    Built once per diagnosis request and immutable afterwards.
    """

    workflow_id: str
    run_id: str
    job_name: str
    error_message: str
    workflow_state: str
    failed_at: datetime
    inputs: dict[str, Any] = field(default_factory=dict)
    stack_trace: str | None = None
    partial_outputs: dict[str, Any] | None = None
    recent_events: tuple[FailureEvent, ...] = ()
    policy_violations: tuple[PolicyViolationInfo, ...] = ()
    involved_files: tuple[str, ...] = ()
    duration_ms: int | None = None


@dataclass(frozen=True)
class SuggestedChange:
    """A concrete file edit backing a fix."""

    file: str
    description: str
    before: str | None = None
    after: str | None = None
    line_start: int | None = None
    line_end: int | None = None


@dataclass
class PotentialFix:
    """A candidate fix for a diagnosed failure."""

    description: str
    confidence: float
    effort: Effort
    risk: Risk
    can_auto_patch: bool
    suggested_changes: list[SuggestedChange] = field(default_factory=list)
    verification_commands: list[str] = field(default_factory=list)


@dataclass
class DiagnosisResult:
    """Root-cause analysis of a failure.

    ``potential_fixes`` is sorted by descending confidence.
    """

    id: str
    context: FailureContext
    root_cause: RootCauseCategory
    confidence: float
    summary: str
    analysis: str
    potential_fixes: list[PotentialFix]
    diagnosed_at: datetime
    diagnosis_duration_ms: int
    related_patterns: list[str] = field(default_factory=list)
    prevention_recommendations: list[str] = field(default_factory=list)

    def to_markdown(self) -> str:
        """Render the diagnosis as the markdown stored in a DIAGNOSIS artifact."""
        lines = [
            "# Failure Diagnosis",
            "",
            f"**ID:** {self.id}",
            f"**Diagnosed:** {self.diagnosed_at.isoformat()}",
            f"**Duration:** {self.diagnosis_duration_ms}ms",
            "",
            "## Summary",
            self.summary,
            "",
            "## Root Cause",
            f"**Category:** {self.root_cause.label}",
            f"**Confidence:** {self.confidence * 100:.0f}%",
            "",
            self.analysis,
            "",
        ]

        if self.potential_fixes:
            lines.extend(["## Potential Fixes", ""])
            for i, fix in enumerate(self.potential_fixes, start=1):
                lines.extend(
                    [
                        f"### Fix {i}: {fix.description}",
                        f"- **Confidence:** {fix.confidence * 100:.0f}%",
                        f"- **Effort:** {fix.effort}",
                        f"- **Risk:** {fix.risk}",
                        f"- **Auto-patchable:** {'Yes' if fix.can_auto_patch else 'No'}",
                    ]
                )
                if fix.verification_commands:
                    lines.append(f"- **Verification:** `{' && '.join(fix.verification_commands)}`")
                lines.append("")

        if self.related_patterns:
            lines.append("## Related Patterns")
            lines.extend(f"- {pattern}" for pattern in self.related_patterns)
            lines.append("")

        if self.prevention_recommendations:
            lines.append("## Prevention Recommendations")
            lines.extend(f"- {rec}" for rec in self.prevention_recommendations)
            lines.append("")

        return "\n".join(lines)


@dataclass
class FixProposal:
    """A fix awaiting (or past) human approval.

    Status only advances through explicit approve or reject calls.
    """

    id: str
    diagnosis_id: str
    workflow_id: str
    fix_index: int
    proposed_at: datetime
    status: FixProposalStatus = FixProposalStatus.PENDING_APPROVAL
    patch_set_id: str | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
