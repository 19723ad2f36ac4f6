"""Data models for the patchflow workflow core."""

from patchflow.models.records import (
    Approval,
    Artifact,
    Patch,
    PatchSet,
    PolicyViolation,
    Workflow,
    WorkflowEvent,
    WorkflowRun,
)

__all__ = [
    "Approval",
    "Artifact",
    "Patch",
    "PatchSet",
    "PolicyViolation",
    "Workflow",
    "WorkflowEvent",
    "WorkflowRun",
]
