"""Tests for patchflow/diagnosis/collector.py - failure context collection."""

import pytest

from patchflow.config.settings import DiagnosisConfig
from patchflow.diagnosis.collector import ContextCollector, extract_involved_files, parse_error_message
from patchflow.enums import RunStatus, WorkflowState
from patchflow.exceptions import PreconditionError, RecordNotFoundError


@pytest.fixture
def collector(store):
    return ContextCollector(store, DiagnosisConfig(max_events=5, max_files=3))


class TestParseErrorMessage:
    """Tests for parse_error_message."""

    def test_plain_message(self):
        assert parse_error_message("Compilation failed") == ("Compilation failed", None)

    def test_message_with_stack_frames(self):
        raw = "TypeError: x is not a function\n    at run (src/app.ts:10:5)\n    at main (src/index.ts:3:1)"

        message, stack = parse_error_message(raw)

        assert message == "TypeError: x is not a function"
        assert stack == "at run (src/app.ts:10:5)\n    at main (src/index.ts:3:1)"

    def test_multiline_message_before_frames(self):
        raw = "Expected 1\nReceived 2\n    at test (tests/a.test.ts:4:2)"

        message, stack = parse_error_message(raw)

        assert message == "Expected 1\nReceived 2"
        assert stack.startswith("at test")

    def test_empty_message(self):
        assert parse_error_message("") == ("", None)


class TestExtractInvolvedFiles:
    """Tests for extract_involved_files."""

    def test_finds_paths_in_nested_values(self):
        inputs = {"files": ["src/app.ts", {"path": "lib/util.py"}], "note": "plain text"}

        assert extract_involved_files(inputs, None) == ["src/app.ts", "lib/util.py"]

    def test_ignores_urls_and_paths_without_extension(self):
        inputs = {"url": "https://example.com/file.json", "dir": "src/components", "name": "README.md"}

        assert extract_involved_files(inputs, None) == []

    def test_inputs_before_outputs_and_deduplicated(self):
        inputs = {"a": "src/a.ts"}
        outputs = {"changed": ["src/b.ts", "src/a.ts"]}

        assert extract_involved_files(inputs, outputs) == ["src/a.ts", "src/b.ts"]

    def test_depth_is_bounded(self):
        deep: object = "src/deep.ts"
        for _ in range(10):
            deep = [deep]

        assert extract_involved_files({"x": deep}, None) == []


class TestCollectFailureContext:
    """Tests for ContextCollector.collect_failure_context."""

    @pytest.mark.asyncio
    async def test_collects_full_context(self, collector, store, workflow):
        for i in range(8):
            await store.append_event(workflow.id, f"E{i}")
        await store.create_policy_violation(workflow.id, "frozen_file", "BLOCK", "src/core.ts", "Frozen", line=4)
        run = await store.create_run(
            workflow.id,
            "apply_patches",
            status=RunStatus.FAILED,
            inputs={"files": ["src/a.ts", "src/b.ts", "src/c.ts", "src/d.ts"]},
            error_msg="Patch failed\n    at apply (src/apply.ts:1:1)",
            duration_ms=1200,
        )

        context = await collector.collect_failure_context(workflow.id, run.id)

        assert context.workflow_id == workflow.id
        assert context.run_id == run.id
        assert context.job_name == "apply_patches"
        assert context.error_message == "Patch failed"
        assert context.stack_trace == "at apply (src/apply.ts:1:1)"
        assert context.workflow_state == "WAITING_USER_APPROVAL"
        assert context.duration_ms == 1200
        assert context.failed_at == run.started_at
        # Newest five, oldest first
        assert [e.type for e in context.recent_events] == ["E3", "E4", "E5", "E6", "E7"]
        assert context.policy_violations[0].rule == "frozen_file"
        assert context.policy_violations[0].line == 4
        assert context.involved_files == ("src/a.ts", "src/b.ts", "src/c.ts")

    @pytest.mark.asyncio
    async def test_failed_at_prefers_completion_time(self, collector, store, workflow, clock):
        run = await store.create_run(workflow.id, "build", status=RunStatus.FAILED, error_msg="x")
        completed = clock()
        await store.update_run(run.id, completed_at=completed)

        context = await collector.collect_failure_context(workflow.id, run.id)

        assert context.failed_at == completed

    @pytest.mark.asyncio
    async def test_missing_run(self, collector, workflow):
        with pytest.raises(RecordNotFoundError) as exc_info:
            await collector.collect_failure_context(workflow.id, "run_missing")

        assert exc_info.value.kind == "run"

    @pytest.mark.asyncio
    async def test_run_not_failed(self, collector, store, workflow):
        run = await store.create_run(workflow.id, "build", status=RunStatus.COMPLETED)

        with pytest.raises(PreconditionError) as exc_info:
            await collector.collect_failure_context(workflow.id, run.id)

        assert "not failed" in exc_info.value.message


class TestCollectFromWorkflowState:
    """Tests for ContextCollector.collect_from_workflow_state."""

    @pytest.mark.asyncio
    async def test_uses_latest_failed_run(self, collector, store):
        workflow = await store.create_workflow(state=WorkflowState.FAILED)
        await store.create_run(workflow.id, "ingest_context", status=RunStatus.FAILED, error_msg="old")
        latest = await store.create_run(workflow.id, "apply_patches", status=RunStatus.FAILED, error_msg="new")
        await store.create_run(workflow.id, "evaluate_policy", status=RunStatus.COMPLETED)

        context = await collector.collect_from_workflow_state(workflow.id)

        assert context is not None
        assert context.run_id == latest.id
        assert context.error_message == "new"

    @pytest.mark.asyncio
    async def test_active_workflow_is_not_diagnosable(self, collector, store, workflow):
        await store.create_run(workflow.id, "apply_patches", status=RunStatus.FAILED, error_msg="x")

        assert await collector.collect_from_workflow_state(workflow.id) is None

    @pytest.mark.asyncio
    async def test_no_failed_run(self, collector, store):
        workflow = await store.create_workflow(state=WorkflowState.NEEDS_HUMAN)

        assert await collector.collect_from_workflow_state(workflow.id) is None

    @pytest.mark.asyncio
    async def test_missing_workflow(self, collector):
        assert await collector.collect_from_workflow_state("missing") is None
