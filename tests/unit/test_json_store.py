"""Tests for patchflow/storage/json_store.py - JSON-file persistence."""

import json
from unittest.mock import AsyncMock

import pytest

from patchflow.checkpoint.service import CheckpointService
from patchflow.enums import WorkflowState
from patchflow.exceptions import StorageError
from patchflow.storage.json_store import JsonFileStore


@pytest.fixture
def state_file(temp_state_dir):
    return temp_state_dir / "wf-1.json"


class TestJsonFileStore:
    """Tests for JsonFileStore."""

    @pytest.mark.asyncio
    async def test_mutation_writes_document(self, temp_state_dir, state_file, clock):
        store = JsonFileStore(temp_state_dir, clock=clock)

        await store.create_workflow(workflow_id="wf-1", base_sha="abc123")
        await store.append_event("wf-1", "NOTE", {"text": "hello"})

        document = json.loads(state_file.read_text())
        assert document["workflow"]["id"] == "wf-1"
        assert document["workflow"]["base_sha"] == "abc123"
        assert document["events"][0]["payload"] == {"text": "hello"}
        assert not state_file.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_reopen_restores_records(self, temp_state_dir, clock):
        store = JsonFileStore(temp_state_dir, clock=clock)
        await store.create_workflow(workflow_id="wf-1", state=WorkflowState.PATCHES_PROPOSED)
        run = await store.create_run("wf-1", "ingest_context")
        patch_set = await store.create_patch_set("wf-1", "Fix", patches=[{"task_id": "t1", "title": "One"}])
        checkpoint = await CheckpointService(store).create_manual_checkpoint("wf-1", "Safe point", "alice")

        reopened = await JsonFileStore.open(temp_state_dir, clock=clock)

        workflow = await reopened.get_workflow("wf-1")
        assert workflow.state == WorkflowState.PATCHES_PROPOSED
        assert (await reopened.get_run(run.id)).job_name == "ingest_context"
        assert (await reopened.get_patch_set(patch_set.id)).patches[0].title == "One"
        restored = await reopened.get_checkpoint(checkpoint.id)
        assert restored == checkpoint
        assert restored.snapshot.patch_sets[0].patch_count == 1

    @pytest.mark.asyncio
    async def test_invalid_document_raises_storage_error(self, temp_state_dir):
        (temp_state_dir / "broken.json").write_text("{not json")

        with pytest.raises(StorageError) as exc_info:
            await JsonFileStore.open(temp_state_dir)

        assert "broken.json" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_document_missing_workflow_raises_storage_error(self, temp_state_dir):
        (temp_state_dir / "wf-2.json").write_text(json.dumps({"events": []}))

        with pytest.raises(StorageError):
            await JsonFileStore.open(temp_state_dir)

    @pytest.mark.asyncio
    async def test_rolled_back_transaction_writes_nothing(self, temp_state_dir, state_file, clock):
        store = JsonFileStore(temp_state_dir, clock=clock)
        await store.create_workflow(workflow_id="wf-1")
        before = state_file.read_text()

        with pytest.raises(RuntimeError):
            async with store.transaction("wf-1"):
                await store.append_event("wf-1", "DISCARDED")
                raise RuntimeError("boom")

        assert state_file.read_text() == before
        assert await store.list_events("wf-1") == []

    @pytest.mark.asyncio
    async def test_transaction_writes_once_on_commit(self, temp_state_dir, state_file, clock):
        store = JsonFileStore(temp_state_dir, clock=clock)
        await store.create_workflow(workflow_id="wf-1")

        async with store.transaction("wf-1"):
            await store.append_event("wf-1", "A")
            # Not flushed until the transaction commits
            assert json.loads(state_file.read_text())["events"] == []
            await store.append_event("wf-1", "B")

        document = json.loads(state_file.read_text())
        assert [e["type"] for e in document["events"]] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_memory(self, temp_state_dir, state_file, clock):
        store = JsonFileStore(temp_state_dir, clock=clock)
        await store.create_workflow(workflow_id="wf-1")
        store._committed = AsyncMock(side_effect=StorageError("disk full"))

        with pytest.raises(StorageError):
            async with store.transaction("wf-1"):
                await store.append_event("wf-1", "LOST")
                await store.update_workflow("wf-1", state=WorkflowState.FAILED)

        assert await store.list_events("wf-1") == []
        assert (await store.get_workflow("wf-1")).state == WorkflowState.INGESTED
        assert json.loads(state_file.read_text())["workflow"]["state"] == "INGESTED"

    @pytest.mark.asyncio
    async def test_restore_with_failed_commit_leaves_records(self, temp_state_dir, state_file, clock):
        store = JsonFileStore(temp_state_dir, clock=clock)
        checkpoints = CheckpointService(store)
        await store.create_workflow(workflow_id="wf-1", state=WorkflowState.WAITING_USER_APPROVAL)
        checkpoint = await checkpoints.create_manual_checkpoint("wf-1", "Before apply", "alice")
        artifact = await store.create_artifact("wf-1", "plan", "# Plan", "sha-plan")
        await store.update_workflow("wf-1", state=WorkflowState.PR_OPEN)
        store._committed = AsyncMock(side_effect=StorageError("disk full"))

        result = await checkpoints.restore(checkpoint.id)

        assert result.success is False
        assert result.error == "disk full"
        assert result.cleaned_up.total == 0
        assert (await store.get_workflow("wf-1")).state == WorkflowState.PR_OPEN
        assert [a.id for a in await store.list_artifacts("wf-1")] == [artifact.id]
        assert json.loads(state_file.read_text())["workflow"]["state"] == "PR_OPEN"
