"""Failure diagnosis and fix proposals.

Key Components:
    - ContextCollector: Gathers a FailureContext for a failed run
    - Diagnoser: Ordered heuristic root-cause classifier with optional LLM pass
    - DiagnosisService: Persists diagnoses and manages fix proposals
"""

from patchflow.diagnosis.collector import ContextCollector
from patchflow.diagnosis.diagnoser import Diagnoser, classify_root_cause
from patchflow.diagnosis.service import DiagnosisOutcome, DiagnosisService
from patchflow.diagnosis.types import (
    DiagnosisResult,
    FailureContext,
    FixProposal,
    FixProposalStatus,
    PotentialFix,
    RootCauseCategory,
    SuggestedChange,
)

__all__ = [
    "ContextCollector",
    "Diagnoser",
    "DiagnosisOutcome",
    "DiagnosisResult",
    "DiagnosisService",
    "FailureContext",
    "FixProposal",
    "FixProposalStatus",
    "PotentialFix",
    "RootCauseCategory",
    "SuggestedChange",
    "classify_root_cause",
]
