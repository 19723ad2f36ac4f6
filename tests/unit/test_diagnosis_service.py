"""Tests for patchflow/diagnosis/service.py - DiagnosisService."""

import pytest
import pytest_asyncio

from patchflow.config.settings import DiagnosisConfig
from patchflow.diagnosis.service import DiagnosisService, generate_diff, hash_content
from patchflow.diagnosis.types import FixProposalStatus, RootCauseCategory, SuggestedChange
from patchflow.enums import ArtifactKind, EventType, RunStatus, WorkflowState
from patchflow.exceptions import PreconditionError, RecordNotFoundError

BUILD_ERROR = "TypeScript error: Cannot find module './foo'"


@pytest_asyncio.fixture
async def failed_build_run(store, workflow):
    return await store.create_run(
        workflow.id,
        "build",
        status=RunStatus.FAILED,
        inputs={"files": ["src/foo.ts"]},
        error_msg=BUILD_ERROR,
    )


async def _events_of(store, workflow_id, event_type):
    return [e for e in await store.list_events(workflow_id) if e.type == event_type]


class TestHelpers:
    def test_hash_content(self):
        assert hash_content("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_generate_diff(self):
        change = SuggestedChange(file="src/a.ts", description="rename", before="old()\nx", after="new()")

        assert generate_diff(change) == "\n".join(
            ["--- a/src/a.ts", "+++ b/src/a.ts", "@@ -1,2 +1,1 @@", "-old()", "-x", "+new()"]
        )

    def test_generate_diff_without_content(self):
        assert generate_diff(SuggestedChange(file="src/a.ts", description="look")) == ""


class TestDiagnoseRun:
    """Tests for DiagnosisService.diagnose_run."""

    @pytest.mark.asyncio
    async def test_persists_artifact_and_event(self, diagnosis_service, store, workflow, failed_build_run):
        diagnosis = await diagnosis_service.diagnose_run(workflow.id, failed_build_run.id)

        assert diagnosis.root_cause == RootCauseCategory.BUILD_ERROR
        assert diagnosis.context.involved_files == ("src/foo.ts",)

        artifacts = await store.list_artifacts(workflow.id)
        assert len(artifacts) == 1
        assert artifacts[0].kind == str(ArtifactKind.DIAGNOSIS)
        assert artifacts[0].content == diagnosis.to_markdown()
        assert artifacts[0].content_sha == hash_content(artifacts[0].content)

        events = await _events_of(store, workflow.id, EventType.DIAGNOSIS_COMPLETE)
        assert len(events) == 1
        assert events[0].payload == {
            "diagnosisId": diagnosis.id,
            "rootCause": "build_error",
            "confidence": 0.85,
            "summary": "Build/compilation error",
            "fixCount": 1,
            "diagnosisDurationMs": diagnosis.diagnosis_duration_ms,
        }

    @pytest.mark.asyncio
    async def test_persistence_disabled(self, store, workflow, failed_build_run):
        service = DiagnosisService(store, config=DiagnosisConfig(persist_diagnosis=False))

        await service.diagnose_run(workflow.id, failed_build_run.id)

        assert await store.list_artifacts(workflow.id) == []
        assert len(await _events_of(store, workflow.id, EventType.DIAGNOSIS_COMPLETE)) == 1

    @pytest.mark.asyncio
    async def test_missing_run(self, diagnosis_service, workflow):
        with pytest.raises(RecordNotFoundError):
            await diagnosis_service.diagnose_run(workflow.id, "run_missing")

    @pytest.mark.asyncio
    async def test_run_not_failed(self, diagnosis_service, store, workflow):
        run = await store.create_run(workflow.id, "build", status=RunStatus.RUNNING)

        with pytest.raises(PreconditionError):
            await diagnosis_service.diagnose_run(workflow.id, run.id)

        assert await store.list_events(workflow.id) == []

    @pytest.mark.asyncio
    async def test_does_not_change_workflow_state(self, diagnosis_service, store, workflow, failed_build_run):
        await diagnosis_service.diagnose_run(workflow.id, failed_build_run.id)

        assert (await store.get_workflow(workflow.id)).state == WorkflowState.WAITING_USER_APPROVAL


class TestDiagnoseWorkflow:
    @pytest.mark.asyncio
    async def test_diagnoses_latest_failure(self, diagnosis_service, store):
        workflow = await store.create_workflow(state=WorkflowState.FAILED)
        run = await store.create_run(workflow.id, "build", status=RunStatus.FAILED, error_msg=BUILD_ERROR)

        diagnosis = await diagnosis_service.diagnose_workflow(workflow.id)

        assert diagnosis is not None
        assert diagnosis.context.run_id == run.id

    @pytest.mark.asyncio
    async def test_active_workflow_returns_none(self, diagnosis_service, workflow, failed_build_run):
        assert await diagnosis_service.diagnose_workflow(workflow.id) is None


class TestDiagnoseAndProposeFixes:
    @pytest.mark.asyncio
    async def test_proposes_confident_auto_patchable_fixes(
        self, diagnosis_service, store, workflow, failed_build_run
    ):
        outcome = await diagnosis_service.diagnose_and_propose_fixes(workflow.id, failed_build_run.id)

        assert len(outcome.proposals) == 1
        proposal = outcome.proposals[0]
        assert proposal.id.startswith("fix_")
        assert proposal.diagnosis_id == outcome.diagnosis.id
        assert proposal.fix_index == 0
        assert proposal.status == FixProposalStatus.PENDING_APPROVAL

        patch_set = await store.get_patch_set(proposal.patch_set_id)
        assert patch_set.title == "Fix: Fix TypeScript/compilation errors"
        assert patch_set.base_sha == "abc123"
        assert patch_set.status == "proposed"
        assert patch_set.patches[0].task_id == f"fix-{outcome.diagnosis.id}"
        assert patch_set.patches[0].summary.endswith("This fix requires manual implementation.")
        assert patch_set.patches[0].proposed_commands == ["npm run build"]

    @pytest.mark.asyncio
    async def test_low_confidence_fixes_are_skipped(self, store, workflow, failed_build_run):
        service = DiagnosisService(store, config=DiagnosisConfig(min_fix_confidence=0.9))

        outcome = await service.diagnose_and_propose_fixes(workflow.id, failed_build_run.id)

        assert outcome.proposals == []

    @pytest.mark.asyncio
    async def test_auto_generation_disabled(self, store, workflow, failed_build_run):
        service = DiagnosisService(store, config=DiagnosisConfig(auto_generate_fixes=False))

        outcome = await service.diagnose_and_propose_fixes(workflow.id, failed_build_run.id)

        assert outcome.proposals == []
        assert await store.list_patch_sets(workflow.id) == []


class TestFixProposals:
    """Tests for proposal creation, approval and rejection."""

    @pytest_asyncio.fixture
    async def diagnosis(self, diagnosis_service, workflow, failed_build_run):
        return await diagnosis_service.diagnose_run(workflow.id, failed_build_run.id)

    @pytest.mark.asyncio
    async def test_proposal_event(self, diagnosis_service, store, workflow, diagnosis):
        proposal = await diagnosis_service.create_fix_proposal(diagnosis, 0)

        events = await _events_of(store, workflow.id, EventType.FIX_PROPOSED)
        assert events[0].payload == {
            "proposalId": proposal.id,
            "diagnosisId": diagnosis.id,
            "fixDescription": "Fix TypeScript/compilation errors",
            "confidence": 0.85,
            "effort": "small",
            "risk": "low",
            "patchSetId": proposal.patch_set_id,
            "requiresApproval": True,
        }

    @pytest.mark.asyncio
    async def test_suggested_changes_become_patches(self, diagnosis_service, store, diagnosis):
        diagnosis.potential_fixes[0].suggested_changes = [
            SuggestedChange(file="src/index.ts", description="Fix import path", before="./foo", after="./bar")
        ]

        proposal = await diagnosis_service.create_fix_proposal(diagnosis, 0)

        patch = (await store.get_patch_set(proposal.patch_set_id)).patches[0]
        assert patch.title == "Fix import path"
        assert patch.summary == "Fix for: Build/compilation error"
        assert patch.diff.startswith("--- a/src/index.ts\n+++ b/src/index.ts")
        assert patch.files == [{"path": "src/index.ts", "action": "modify", "additions": 1, "deletions": 1}]

    @pytest.mark.asyncio
    async def test_non_patchable_fix_has_no_patch_set(self, diagnosis_service, store, workflow, diagnosis):
        diagnosis.potential_fixes[0].can_auto_patch = False

        proposal = await diagnosis_service.create_fix_proposal(diagnosis, 0)

        assert proposal.patch_set_id is None
        assert await store.list_patch_sets(workflow.id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("index", [-1, 1, 5])
    async def test_invalid_fix_index(self, diagnosis_service, store, workflow, diagnosis, index):
        with pytest.raises(PreconditionError) as exc_info:
            await diagnosis_service.create_fix_proposal(diagnosis, index)

        assert exc_info.value.message == f"Invalid fix index: {index}"
        assert await _events_of(store, workflow.id, EventType.FIX_PROPOSED) == []

    @pytest.mark.asyncio
    async def test_approve(self, diagnosis_service, store, workflow, diagnosis):
        proposal = await diagnosis_service.create_fix_proposal(diagnosis, 0)

        approved = await diagnosis_service.approve_fix_proposal(proposal, "alice", notes="looks right")

        assert approved.status == FixProposalStatus.APPROVED
        assert approved.resolved_by == "alice"
        assert approved.resolution_notes == "looks right"
        assert approved.resolved_at is not None

        patch_set = await store.get_patch_set(proposal.patch_set_id)
        assert patch_set.status == "approved"
        assert patch_set.approved_by == "alice"
        assert patch_set.approved_at == approved.resolved_at
        assert [a.kind for a in await store.list_approvals(workflow.id)] == ["fix_proposal"]

        events = await _events_of(store, workflow.id, EventType.FIX_APPROVED)
        assert events[0].payload == {
            "proposalId": proposal.id,
            "diagnosisId": diagnosis.id,
            "patchSetId": proposal.patch_set_id,
            "approvedBy": "alice",
            "notes": "looks right",
        }

    @pytest.mark.asyncio
    async def test_reject(self, diagnosis_service, store, workflow, diagnosis):
        proposal = await diagnosis_service.create_fix_proposal(diagnosis, 0)

        rejected = await diagnosis_service.reject_fix_proposal(proposal, "bob", reason="wrong module")

        assert rejected.status == FixProposalStatus.REJECTED
        assert rejected.resolution_notes == "wrong module"
        assert (await store.get_patch_set(proposal.patch_set_id)).status == "rejected"
        assert await store.list_approvals(workflow.id) == []

        events = await _events_of(store, workflow.id, EventType.FIX_REJECTED)
        assert events[0].payload == {
            "proposalId": proposal.id,
            "diagnosisId": diagnosis.id,
            "rejectedBy": "bob",
            "reason": "wrong module",
        }

    @pytest.mark.asyncio
    async def test_approval_leaves_workflow_state(self, diagnosis_service, store, workflow, diagnosis):
        proposal = await diagnosis_service.create_fix_proposal(diagnosis, 0)

        await diagnosis_service.approve_fix_proposal(proposal, "alice")

        assert (await store.get_workflow(workflow.id)).state == WorkflowState.WAITING_USER_APPROVAL
