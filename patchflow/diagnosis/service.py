"""
Diagnosis orchestration: collect, diagnose, persist and propose fixes.

``DiagnosisService`` ties the ``ContextCollector`` and ``Diagnoser`` to the
store. A diagnosis is persisted as a content-hashed markdown artifact and
announced with a ``DIAGNOSIS_COMPLETE`` event. Fix proposals are backed by a
patch set and wait for an explicit approve or reject call; neither call
touches the workflow state, which only the driver changes.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from patchflow.config.settings import DiagnosisConfig
from patchflow.diagnosis.collector import ContextCollector
from patchflow.diagnosis.diagnoser import Diagnoser
from patchflow.diagnosis.types import (
    DiagnosisResult,
    FixProposal,
    FixProposalStatus,
    PotentialFix,
    SuggestedChange,
)
from patchflow.enums import ApprovalKind, ArtifactKind, EventType, PatchSetStatus
from patchflow.exceptions import PreconditionError
from patchflow.llm.runner import LLMRunner
from patchflow.storage.base import Clock, WorkflowStore, new_id

log = structlog.get_logger(__name__)


def hash_content(content: str) -> str:
    """SHA-256 hex digest used as an artifact's content address."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def generate_diff(change: SuggestedChange) -> str:
    """Render a suggested change as a single-hunk unified diff.

    Returns an empty string when the change carries neither side.
    """
    if not change.before and not change.after:
        return ""

    before_lines = (change.before or "").split("\n")
    after_lines = (change.after or "").split("\n")
    lines = [
        f"--- a/{change.file}",
        f"+++ b/{change.file}",
        f"@@ -1,{len(before_lines)} +1,{len(after_lines)} @@",
    ]
    lines.extend(f"-{line}" for line in before_lines if line)
    lines.extend(f"+{line}" for line in after_lines if line)
    return "\n".join(lines)


@dataclass
class DiagnosisOutcome:
    """Result of ``diagnose_and_propose_fixes``."""

    diagnosis: DiagnosisResult
    proposals: list[FixProposal] = field(default_factory=list)


class DiagnosisService:
    """Diagnose failed runs and manage fix proposals.

    Attributes:
        store: Record store
        config: Diagnosis configuration
        collector: Failure context collector
        diagnoser: Heuristic diagnoser, optionally LLM-assisted
    """

    def __init__(
        self,
        store: WorkflowStore,
        runner: LLMRunner | None = None,
        config: DiagnosisConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.config = config or DiagnosisConfig()
        self.clock = clock or store.clock
        self.collector = ContextCollector(store, self.config)
        self.diagnoser = Diagnoser(runner, self.config, clock=self.clock)

    # --- diagnosis ---------------------------------------------------------

    async def diagnose_run(self, workflow_id: str, run_id: str) -> DiagnosisResult:
        """Diagnose a failed run, persist the result and record the event.

        Raises:
            RecordNotFoundError: If the run or workflow does not exist
            PreconditionError: If the run did not fail
        """
        context = await self.collector.collect_failure_context(workflow_id, run_id)
        diagnosis = await self.diagnoser.diagnose(context)

        async with self.store.transaction(workflow_id):
            if self.config.persist_diagnosis:
                content = diagnosis.to_markdown()
                await self.store.create_artifact(
                    workflow_id,
                    kind=str(ArtifactKind.DIAGNOSIS),
                    content=content,
                    content_sha=hash_content(content),
                )
            await self.store.append_event(
                workflow_id,
                EventType.DIAGNOSIS_COMPLETE,
                {
                    "diagnosisId": diagnosis.id,
                    "rootCause": str(diagnosis.root_cause),
                    "confidence": diagnosis.confidence,
                    "summary": diagnosis.summary,
                    "fixCount": len(diagnosis.potential_fixes),
                    "diagnosisDurationMs": diagnosis.diagnosis_duration_ms,
                },
            )

        log.info(
            "diagnosis_complete",
            workflow_id=workflow_id,
            run_id=run_id,
            diagnosis_id=diagnosis.id,
            root_cause=str(diagnosis.root_cause),
            confidence=diagnosis.confidence,
            fix_count=len(diagnosis.potential_fixes),
        )
        return diagnosis

    async def diagnose_workflow(self, workflow_id: str) -> DiagnosisResult | None:
        """Diagnose the most recent failed run of a stuck workflow, if any."""
        context = await self.collector.collect_from_workflow_state(workflow_id)
        if context is None:
            log.debug("no_diagnosable_failure", workflow_id=workflow_id)
            return None
        return await self.diagnose_run(workflow_id, context.run_id)

    async def diagnose_and_propose_fixes(self, workflow_id: str, run_id: str) -> DiagnosisOutcome:
        """Diagnose a run and propose every confident, auto-patchable fix."""
        diagnosis = await self.diagnose_run(workflow_id, run_id)
        outcome = DiagnosisOutcome(diagnosis=diagnosis)

        if not self.config.auto_generate_fixes:
            return outcome

        for index, fix in enumerate(diagnosis.potential_fixes):
            if fix.confidence >= self.config.min_fix_confidence and fix.can_auto_patch:
                outcome.proposals.append(await self.create_fix_proposal(diagnosis, index))
        return outcome

    # --- fix proposals -----------------------------------------------------

    async def create_fix_proposal(self, diagnosis: DiagnosisResult, fix_index: int) -> FixProposal:
        """Create a proposal, and a patch set when the fix is auto-patchable.

        Raises:
            PreconditionError: If ``fix_index`` does not name a potential fix
        """
        if not 0 <= fix_index < len(diagnosis.potential_fixes):
            raise PreconditionError(f"Invalid fix index: {fix_index}")

        fix = diagnosis.potential_fixes[fix_index]
        workflow_id = diagnosis.context.workflow_id

        async with self.store.transaction(workflow_id):
            patch_set_id = await self._create_fix_patch_set(diagnosis, fix) if fix.can_auto_patch else None
            proposal = FixProposal(
                id=new_id("fix"),
                diagnosis_id=diagnosis.id,
                workflow_id=workflow_id,
                fix_index=fix_index,
                proposed_at=self.clock(),
                patch_set_id=patch_set_id,
            )
            await self.store.append_event(
                workflow_id,
                EventType.FIX_PROPOSED,
                {
                    "proposalId": proposal.id,
                    "diagnosisId": proposal.diagnosis_id,
                    "fixDescription": fix.description,
                    "confidence": fix.confidence,
                    "effort": fix.effort,
                    "risk": fix.risk,
                    "patchSetId": patch_set_id,
                    "requiresApproval": True,
                },
            )

        log.info(
            "fix_proposed",
            workflow_id=workflow_id,
            proposal_id=proposal.id,
            fix=fix.description,
            patch_set_id=patch_set_id,
        )
        return proposal

    async def approve_fix_proposal(
        self, proposal: FixProposal, approved_by: str, notes: str | None = None
    ) -> FixProposal:
        """Approve a proposal and its patch set, recording an approval."""
        now = self.clock()
        async with self.store.transaction(proposal.workflow_id):
            if proposal.patch_set_id:
                await self.store.update_patch_set(
                    proposal.patch_set_id,
                    status=PatchSetStatus.APPROVED,
                    approved_at=now,
                    approved_by=approved_by,
                )
            await self.store.create_approval(proposal.workflow_id, kind=str(ApprovalKind.FIX_PROPOSAL))
            await self.store.append_event(
                proposal.workflow_id,
                EventType.FIX_APPROVED,
                {
                    "proposalId": proposal.id,
                    "diagnosisId": proposal.diagnosis_id,
                    "patchSetId": proposal.patch_set_id,
                    "approvedBy": approved_by,
                    "notes": notes,
                },
            )

        self._resolve(proposal, FixProposalStatus.APPROVED, approved_by, notes, now)
        log.info("fix_approved", workflow_id=proposal.workflow_id, proposal_id=proposal.id, approved_by=approved_by)
        return proposal

    async def reject_fix_proposal(
        self, proposal: FixProposal, rejected_by: str, reason: str | None = None
    ) -> FixProposal:
        """Reject a proposal and its patch set."""
        now = self.clock()
        async with self.store.transaction(proposal.workflow_id):
            if proposal.patch_set_id:
                await self.store.update_patch_set(proposal.patch_set_id, status=PatchSetStatus.REJECTED)
            await self.store.append_event(
                proposal.workflow_id,
                EventType.FIX_REJECTED,
                {
                    "proposalId": proposal.id,
                    "diagnosisId": proposal.diagnosis_id,
                    "rejectedBy": rejected_by,
                    "reason": reason,
                },
            )

        self._resolve(proposal, FixProposalStatus.REJECTED, rejected_by, reason, now)
        log.info("fix_rejected", workflow_id=proposal.workflow_id, proposal_id=proposal.id, rejected_by=rejected_by)
        return proposal

    @staticmethod
    def _resolve(proposal: FixProposal, status: FixProposalStatus, by: str, notes: str | None, at: datetime) -> None:
        proposal.status = status
        proposal.resolved_at = at
        proposal.resolved_by = by
        proposal.resolution_notes = notes

    async def _create_fix_patch_set(self, diagnosis: DiagnosisResult, fix: PotentialFix) -> str:
        task_id = f"fix-{diagnosis.id}"
        if fix.suggested_changes:
            patches = [
                {
                    "task_id": task_id,
                    "title": change.description,
                    "summary": f"Fix for: {diagnosis.summary}",
                    "diff": generate_diff(change),
                    "files": [
                        {
                            "path": change.file,
                            "action": "modify",
                            "additions": len(change.after.split("\n")) if change.after else 0,
                            "deletions": len(change.before.split("\n")) if change.before else 0,
                        }
                    ],
                    "risk_level": fix.risk,
                    "proposed_commands": list(fix.verification_commands),
                }
                for change in fix.suggested_changes
            ]
        else:
            patches = [
                {
                    "task_id": task_id,
                    "title": fix.description,
                    "summary": (
                        f"Proposed fix for: {diagnosis.summary}\n\nThis fix requires manual implementation."
                    ),
                    "risk_level": fix.risk,
                    "proposed_commands": list(fix.verification_commands),
                }
            ]

        workflow = await self.store.get_workflow(diagnosis.context.workflow_id)
        patch_set = await self.store.create_patch_set(
            diagnosis.context.workflow_id,
            title=f"Fix: {fix.description}",
            patches=patches,
            base_sha=(workflow.base_sha if workflow else None) or "HEAD",
        )
        return patch_set.id
