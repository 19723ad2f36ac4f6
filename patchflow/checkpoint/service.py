"""
Checkpoint creation, restore and retention for workflows.

This module provides the CheckpointService, which makes a workflow's history
rewindable. Checkpoints are taken automatically when a stage completes and
before risky operations, or manually on request. Each creation is followed by
a pruning pass that enforces the retention policy.

Restore Semantics:
    Restoring a checkpoint removes records created strictly after the
    checkpoint's ``created_at``:

    - events, artifacts and patch sets, unless the matching ``preserve_*``
      option is set
    - runs, always

    It then resets the workflow's state and base revision to the checkpoint's
    values and appends a ``CHECKPOINT_RESTORED`` event. All of this happens in
    one store transaction: if any step fails, nothing is changed and a failed
    ``RestoreResult`` with zero cleanup counts is returned.

Retention Policy:
    Checkpoints are walked newest first. The oldest checkpoint is kept when
    ``keep_first_checkpoint`` is set and manual checkpoints are kept when
    ``preserve_manual_checkpoints`` is set. Every other checkpoint is pruned
    when its position is at or beyond ``max_checkpoints_per_workflow`` or it
    is older than ``max_checkpoint_age_days``.

Example:
    >>> service = CheckpointService(store, PruningConfig(max_checkpoints_per_workflow=5))
    >>> checkpoint = await service.create_auto_checkpoint("wf-1", "patches_proposed")
    >>> result = await service.restore(checkpoint.id, RestoreOptions(reason="bad patch"))
    >>> result.success, result.cleaned_up.events
    (True, 3)
"""

from datetime import timedelta
from typing import Any

import structlog

from patchflow.checkpoint.types import (
    SNAPSHOT_EVENT_LIMIT,
    ApprovalSummary,
    ArtifactSummary,
    Checkpoint,
    CheckpointSnapshot,
    CheckpointTrigger,
    CleanupCounts,
    PatchSetSummary,
    PruneResult,
    RestoreOptions,
    RestoreResult,
)
from patchflow.config.settings import PruningConfig
from patchflow.engine.stages import resolve_stage
from patchflow.enums import EventType
from patchflow.exceptions import WorkflowNotFoundError
from patchflow.models import Workflow
from patchflow.storage.base import Clock, WorkflowStore

log = structlog.get_logger(__name__)


class CheckpointService:
    """Create, restore and prune workflow checkpoints.

    Attributes:
        store: Record store holding workflows and checkpoints
        pruning: Retention policy applied after every creation
        clock: Time source used for checkpoint age
    """

    def __init__(
        self,
        store: WorkflowStore,
        pruning: PruningConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.pruning = pruning or PruningConfig()
        self.clock = clock or store.clock

    # --------------------------------------------------------------------------
    # Creation
    # --------------------------------------------------------------------------

    async def create_auto_checkpoint(
        self,
        workflow_id: str,
        stage_name: str,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Create an automatic checkpoint after a stage completes.

        Args:
            workflow_id: Workflow to checkpoint
            stage_name: Name of the completed stage, used in the checkpoint name
            metadata: Extra metadata merged into the checkpoint metadata

        Returns:
            The created checkpoint

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        return await self._create_checkpoint(
            workflow_id,
            name=f"Auto: {stage_name} complete",
            is_automatic=True,
            metadata={"trigger": CheckpointTrigger.STAGE_COMPLETE.value, **(metadata or {})},
        )

    async def create_manual_checkpoint(
        self,
        workflow_id: str,
        name: str,
        created_by: str,
        notes: str | None = None,
    ) -> Checkpoint:
        """Create a user-requested checkpoint.

        Manual checkpoints are exempt from pruning while
        ``preserve_manual_checkpoints`` is enabled.
        """
        return await self._create_checkpoint(
            workflow_id,
            name=name,
            is_automatic=False,
            created_by=created_by,
            metadata={"trigger": CheckpointTrigger.MANUAL.value, "notes": notes},
        )

    async def create_pre_op_checkpoint(self, workflow_id: str, operation_name: str) -> Checkpoint:
        """Create an automatic checkpoint before a risky operation."""
        return await self._create_checkpoint(
            workflow_id,
            name=f"Before: {operation_name}",
            is_automatic=True,
            metadata={
                "trigger": CheckpointTrigger.BEFORE_RISKY_OP.value,
                "reason": f"Checkpoint before {operation_name}",
            },
        )

    async def _create_checkpoint(
        self,
        workflow_id: str,
        name: str,
        is_automatic: bool,
        metadata: dict[str, Any],
        created_by: str | None = None,
    ) -> Checkpoint:
        async with self.store.transaction(workflow_id):
            workflow = await self.store.get_workflow(workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)

            stage_index, stage_name = resolve_stage(workflow.state)
            snapshot = await self.capture_snapshot(workflow)
            checkpoint = await self.store.create_checkpoint(
                workflow_id=workflow_id,
                name=name,
                state=workflow.state,
                stage_index=stage_index,
                stage_name=stage_name,
                snapshot=snapshot,
                metadata=metadata,
                is_automatic=is_automatic,
                created_by=created_by,
            )
            # Stamped with the checkpoint's own time so a restore of this
            # checkpoint keeps its creation event.
            await self.store.append_event(
                workflow_id,
                EventType.CHECKPOINT_CREATED,
                {
                    "checkpointId": checkpoint.id,
                    "name": name,
                    "stageIndex": stage_index,
                    "isAutomatic": is_automatic,
                },
                created_at=checkpoint.created_at,
            )

        log.info(
            "checkpoint_created",
            workflow_id=workflow_id,
            checkpoint_id=checkpoint.id,
            checkpoint_name=name,
            stage_index=stage_index,
            is_automatic=is_automatic,
        )

        await self.prune_checkpoints(workflow_id)
        return checkpoint

    async def capture_snapshot(self, workflow: Workflow) -> CheckpointSnapshot:
        """Summarize a workflow's records without copying their content."""
        artifacts = await self.store.list_artifacts(workflow.id)
        patch_sets = await self.store.list_patch_sets(workflow.id)
        approvals = await self.store.list_approvals(workflow.id)
        events = await self.store.list_events(workflow.id, limit=SNAPSHOT_EVENT_LIMIT)
        runs = await self.store.list_runs(workflow.id, limit=1)
        violations = await self.store.list_policy_violations(workflow.id)

        last_run = runs[0] if runs else None
        return CheckpointSnapshot(
            workflow_state=workflow.state,
            base_sha=workflow.base_sha,
            artifacts=[
                ArtifactSummary(id=a.id, kind=a.kind, content_sha=a.content_sha, created_at=a.created_at)
                for a in artifacts
            ],
            patch_sets=[
                PatchSetSummary(
                    id=p.id,
                    title=p.title,
                    status=p.status,
                    patch_count=len(p.patches),
                    created_at=p.created_at,
                )
                for p in patch_sets
            ],
            approvals=[ApprovalSummary(id=a.id, kind=a.kind, created_at=a.created_at) for a in approvals],
            recent_event_ids=[e.id for e in events],
            last_run_id=last_run.id if last_run else None,
            last_run_status=last_run.status if last_run else None,
            has_violations=bool(violations),
            violation_count=len(violations),
        )

    # --------------------------------------------------------------------------
    # Restore
    # --------------------------------------------------------------------------

    async def restore(self, checkpoint_id: str, options: RestoreOptions | None = None) -> RestoreResult:
        """Restore a workflow to a checkpoint.

        Args:
            checkpoint_id: Checkpoint to restore
            options: Which record categories to preserve, plus audit fields

        Returns:
            RestoreResult. ``success`` is False, with zero cleanup counts, when
            the checkpoint does not exist or any step of the restore failed.
        """
        options = options or RestoreOptions()

        try:
            checkpoint = await self.store.get_checkpoint(checkpoint_id)
        except Exception as e:
            log.error("checkpoint_lookup_failed", checkpoint_id=checkpoint_id, error=str(e), exc_info=True)
            return RestoreResult(
                success=False,
                checkpoint_id=checkpoint_id,
                workflow_id="",
                error=str(e),
            )
        if checkpoint is None:
            log.warning("checkpoint_not_found", checkpoint_id=checkpoint_id)
            return RestoreResult(
                success=False,
                checkpoint_id=checkpoint_id,
                workflow_id="",
                error="Checkpoint not found",
            )

        workflow_id = checkpoint.workflow_id
        log.info("checkpoint_restore_started", workflow_id=workflow_id, checkpoint_id=checkpoint_id)

        try:
            async with self.store.transaction(workflow_id):
                cleaned_up = await self._cleanup_after(checkpoint, options)
                await self.store.update_workflow(
                    workflow_id,
                    state=checkpoint.state,
                    base_sha=checkpoint.snapshot.base_sha,
                )
                await self.store.append_event(
                    workflow_id,
                    EventType.CHECKPOINT_RESTORED,
                    {
                        "checkpointId": checkpoint.id,
                        "restoredToState": str(checkpoint.state),
                        "restoredToStage": checkpoint.stage_name,
                        "reason": options.reason,
                        "restoredBy": options.restored_by,
                        "cleanedUp": cleaned_up.to_payload(),
                    },
                )
        except Exception as e:
            log.error(
                "checkpoint_restore_failed",
                workflow_id=workflow_id,
                checkpoint_id=checkpoint_id,
                error=str(e),
                exc_info=True,
            )
            return RestoreResult(
                success=False,
                checkpoint_id=checkpoint_id,
                workflow_id=workflow_id,
                error=str(e),
            )

        log.info(
            "checkpoint_restored",
            workflow_id=workflow_id,
            checkpoint_id=checkpoint_id,
            restored_to_state=str(checkpoint.state),
            cleaned_up=cleaned_up.to_payload(),
        )
        return RestoreResult(
            success=True,
            checkpoint_id=checkpoint_id,
            workflow_id=workflow_id,
            restored_to_state=checkpoint.state,
            restored_to_stage=checkpoint.stage_name,
            cleaned_up=cleaned_up,
        )

    async def _cleanup_after(self, checkpoint: Checkpoint, options: RestoreOptions) -> CleanupCounts:
        workflow_id = checkpoint.workflow_id
        since = checkpoint.created_at
        counts = CleanupCounts()

        if not options.preserve_events:
            counts.events = await self.store.delete_events_after(workflow_id, since)
        if not options.preserve_artifacts:
            counts.artifacts = await self.store.delete_artifacts_after(workflow_id, since)
        if not options.preserve_patch_sets:
            counts.patch_sets = await self.store.delete_patch_sets_after(workflow_id, since)
        # Runs belong to a point-in-time execution and never survive a restore
        counts.runs = await self.store.delete_runs_after(workflow_id, since)

        return counts

    # --------------------------------------------------------------------------
    # Queries
    # --------------------------------------------------------------------------

    async def get_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        """Get all checkpoints for a workflow, newest first."""
        return await self.store.list_checkpoints(workflow_id)

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        return await self.store.get_checkpoint(checkpoint_id)

    async def get_latest_checkpoint(self, workflow_id: str) -> Checkpoint | None:
        checkpoints = await self.store.list_checkpoints(workflow_id)
        return checkpoints[0] if checkpoints else None

    async def get_checkpoint_at_stage(self, workflow_id: str, stage_index: int) -> Checkpoint | None:
        """Get the most recent checkpoint taken at a stage index."""
        for checkpoint in await self.store.list_checkpoints(workflow_id):
            if checkpoint.stage_index == stage_index:
                return checkpoint
        return None

    # --------------------------------------------------------------------------
    # Pruning
    # --------------------------------------------------------------------------

    async def prune_checkpoints(self, workflow_id: str) -> PruneResult:
        """Apply the retention policy to a workflow's checkpoints.

        Safe to call repeatedly; a pass with nothing to prune deletes nothing.

        Returns:
            PruneResult with the pruned ids and the number remaining
        """
        policy = self.pruning
        max_age = timedelta(days=policy.max_checkpoint_age_days)

        async with self.store.transaction(workflow_id):
            checkpoints = await self.store.list_checkpoints(workflow_id)
            now = self.clock()
            oldest_index = len(checkpoints) - 1

            to_prune: list[str] = []
            for i, checkpoint in enumerate(checkpoints):
                if policy.keep_first_checkpoint and i == oldest_index:
                    continue
                if policy.preserve_manual_checkpoints and not checkpoint.is_automatic:
                    continue
                if i >= policy.max_checkpoints_per_workflow or now - checkpoint.created_at > max_age:
                    to_prune.append(checkpoint.id)

            if to_prune:
                await self.store.delete_checkpoints(to_prune)

        if to_prune:
            log.info("checkpoints_pruned", workflow_id=workflow_id, count=len(to_prune))

        return PruneResult(
            workflow_id=workflow_id,
            pruned_count=len(to_prune),
            remaining_count=len(checkpoints) - len(to_prune),
            pruned_checkpoint_ids=to_prune,
        )

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        """Delete a checkpoint.

        Returns:
            True if deleted, False if it did not exist or deletion failed
        """
        try:
            deleted = await self.store.delete_checkpoint(checkpoint_id)
        except Exception as e:
            log.warning("checkpoint_delete_failed", checkpoint_id=checkpoint_id, error=str(e))
            return False
        if deleted:
            log.info("checkpoint_deleted", checkpoint_id=checkpoint_id)
        return deleted
