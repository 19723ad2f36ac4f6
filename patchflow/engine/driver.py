"""
Reference workflow driver.

The driver is the only writer of ``Workflow.state``. For each incoming event
it loads a ``TransitionContext`` from the store, calls the pure
``transition`` function, persists the outcome together with an
``orchestrator.transition`` audit event, and enqueues the resulting jobs.

Around that core it adds:

- a pre-op checkpoint before ``apply_patches`` is enqueued
- an automatic checkpoint whenever a non-terminal stage boundary is crossed
- a best-effort diagnosis of the workflow after a job failure, bounded by
  ``DriverConfig.diagnosis_timeout_ms``

Concurrency Model:
    Events for one workflow are handled one at a time under a per-workflow
    asyncio lock, so every transition is computed against a consistent
    context. Events for different workflows proceed concurrently.

Example:
    >>> driver = WorkflowDriver(store, InMemoryJobQueue(), checkpoints, diagnosis)
    >>> outcome = await driver.handle_event(workflow.id, {"type": "E_WORKFLOW_CREATED"})
    >>> outcome.enqueued_jobs
    ['ingest_context']
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

from patchflow.checkpoint.service import CheckpointService
from patchflow.config.settings import DriverConfig
from patchflow.diagnosis.service import DiagnosisService
from patchflow.diagnosis.types import DiagnosisResult
from patchflow.engine.events import JobFailed, TransitionEvent, parse_event
from patchflow.engine.stages import resolve_stage
from patchflow.engine.transition import JobSpec, TransitionContext, TransitionResult, transition
from patchflow.enums import ApprovalKind, EventType, JobName, ViolationSeverity, WorkflowState
from patchflow.exceptions import WorkflowNotFoundError
from patchflow.storage.base import WorkflowStore
from patchflow.utils.logging_config import bind_workflow, unbind_workflow
from patchflow.utils.side_channel import BestEffortChannel

log = structlog.get_logger(__name__)

_APPLY_APPROVAL_KINDS = frozenset({str(ApprovalKind.APPLY_PATCHES), str(ApprovalKind.FIX_PROPOSAL)})


class JobQueue(ABC):
    """Destination for jobs requested by transitions."""

    @abstractmethod
    async def enqueue(self, job: JobSpec) -> None:
        pass


class InMemoryJobQueue(JobQueue):
    """Job queue that records jobs in order, for tests and single-process use."""

    def __init__(self) -> None:
        self.jobs: list[JobSpec] = []

    async def enqueue(self, job: JobSpec) -> None:
        self.jobs.append(job)
        log.debug("job_enqueued", queue=job.queue, job=str(job.name), payload=job.payload)

    def for_workflow(self, workflow_id: str) -> list[JobSpec]:
        return [job for job in self.jobs if job.payload.get("workflow_id") == workflow_id]

    def drain(self) -> list[JobSpec]:
        jobs, self.jobs = self.jobs, []
        return jobs


@dataclass
class DriverOutcome:
    """What a single ``handle_event`` call did."""

    workflow_id: str
    previous_state: WorkflowState
    next_state: WorkflowState
    reason: str
    enqueued_jobs: list[str] = field(default_factory=list)
    checkpoint_ids: list[str] = field(default_factory=list)
    diagnosis: DiagnosisResult | None = None

    @property
    def state_changed(self) -> bool:
        return self.previous_state != self.next_state


class WorkflowDriver:
    """Serialize, persist and dispatch workflow transitions.

    Attributes:
        store: Record store
        queue: Job queue receiving enqueued jobs
        checkpoints: Checkpoint service for automatic and pre-op checkpoints
        diagnosis: Diagnosis service run after job failures (optional)
        config: Driver behavior switches
    """

    def __init__(
        self,
        store: WorkflowStore,
        queue: JobQueue,
        checkpoints: CheckpointService | None = None,
        diagnosis: DiagnosisService | None = None,
        config: DriverConfig | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.checkpoints = checkpoints
        self.diagnosis = diagnosis
        self.config = config or DriverConfig()
        self._locks: dict[str, asyncio.Lock] = {}
        self._side_channel = BestEffortChannel("driver")

    def _lock_for(self, workflow_id: str) -> asyncio.Lock:
        if workflow_id not in self._locks:
            self._locks[workflow_id] = asyncio.Lock()
        return self._locks[workflow_id]

    async def handle_event(self, workflow_id: str, event: TransitionEvent | dict[str, Any]) -> DriverOutcome:
        """Apply one event to a workflow.

        Args:
            workflow_id: Target workflow
            event: A parsed event or its raw dict form

        Returns:
            DriverOutcome describing the transition and its side effects

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            pydantic.ValidationError: If a raw event is malformed
        """
        if isinstance(event, dict):
            event = parse_event(event)

        bind_workflow(workflow_id)
        try:
            async with self._lock_for(workflow_id):
                return await self._handle_locked(workflow_id, event)
        finally:
            unbind_workflow()

    async def _handle_locked(self, workflow_id: str, event: TransitionEvent) -> DriverOutcome:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        previous = WorkflowState(workflow.state)
        ctx = await self.build_transition_context(workflow_id)
        result = transition(previous, event, ctx)
        outcome = DriverOutcome(
            workflow_id=workflow_id,
            previous_state=previous,
            next_state=result.next_state,
            reason=result.reason,
            enqueued_jobs=[str(job.name) for job in result.enqueue],
        )

        if self.checkpoints and self.config.checkpoint_before_apply and _enqueues(result, JobName.APPLY_PATCHES):
            checkpoint = await self.checkpoints.create_pre_op_checkpoint(workflow_id, str(JobName.APPLY_PATCHES))
            outcome.checkpoint_ids.append(checkpoint.id)

        await self._persist(workflow_id, previous, result, event)

        for job in result.enqueue:
            await self.queue.enqueue(job)

        log.info(
            "workflow_transition",
            event_type=event.type,
            previous_state=str(previous),
            next_state=str(result.next_state),
            reason=result.reason,
            enqueued_jobs=outcome.enqueued_jobs,
        )

        if self.checkpoints and self.config.auto_checkpoint and _crosses_stage(previous, result.next_state):
            _, completed_stage = resolve_stage(previous)
            checkpoint = await self.checkpoints.create_auto_checkpoint(
                workflow_id,
                completed_stage,
                metadata={"fromState": str(previous), "toState": str(result.next_state)},
            )
            outcome.checkpoint_ids.append(checkpoint.id)

        if isinstance(event, JobFailed) and self.diagnosis and self.config.diagnose_failures:
            outcome.diagnosis = await self._diagnose_after_failure(workflow_id)

        return outcome

    async def build_transition_context(self, workflow_id: str) -> TransitionContext:
        """Project the store into the read-only context ``transition`` needs."""
        patch_sets = await self.store.list_patch_sets(workflow_id)
        approvals = await self.store.list_approvals(workflow_id)
        violations = await self.store.list_policy_violations(workflow_id)

        latest = patch_sets[0] if patch_sets else None
        return TransitionContext(
            workflow_id=workflow_id,
            has_patch_sets=bool(patch_sets),
            latest_patch_set_id=latest.id if latest else None,
            has_approval_to_apply=any(a.kind in _APPLY_APPROVAL_KINDS for a in approvals),
            has_blocking_policy_violations=any(v.severity == ViolationSeverity.BLOCK.value for v in violations),
        )

    async def _persist(
        self,
        workflow_id: str,
        previous: WorkflowState,
        result: TransitionResult,
        event: TransitionEvent,
    ) -> None:
        async with self.store.transaction(workflow_id):
            if result.next_state != previous:
                await self.store.update_workflow(workflow_id, state=result.next_state)
            # The audit event is written even when the state is unchanged
            await self.store.append_event(
                workflow_id,
                EventType.TRANSITION,
                {
                    "previousState": str(previous),
                    "nextState": str(result.next_state),
                    "reason": result.reason,
                    "triggerEvent": event.model_dump(mode="json", by_alias=True),
                    "enqueuedJobs": [str(job.name) for job in result.enqueue],
                },
            )

    async def _diagnose_after_failure(self, workflow_id: str) -> DiagnosisResult | None:
        assert self.diagnosis is not None
        diagnosis = self.diagnosis
        timeout = self.config.diagnosis_timeout_ms / 1000
        return await self._side_channel.run(
            "diagnose_workflow",
            lambda: asyncio.wait_for(diagnosis.diagnose_workflow(workflow_id), timeout=timeout),
        )


def _enqueues(result: TransitionResult, name: JobName) -> bool:
    return any(job.name == name for job in result.enqueue)


def _crosses_stage(previous: WorkflowState, next_state: WorkflowState) -> bool:
    if next_state == previous or next_state.is_terminal:
        return False
    return resolve_stage(previous)[0] != resolve_stage(next_state)[0]
