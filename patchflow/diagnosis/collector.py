"""
Failure context collection.

The ContextCollector gathers everything the diagnoser needs about one failed
run: the error split into message and stack trace, the recent event timeline,
policy violations, and file paths mentioned in the run's inputs and outputs.
"""

import re
from typing import Any

import structlog

from patchflow.config.settings import DiagnosisConfig
from patchflow.diagnosis.types import FailureContext, FailureEvent, PolicyViolationInfo
from patchflow.enums import DIAGNOSABLE_STATES, RunStatus
from patchflow.exceptions import PreconditionError, RecordNotFoundError
from patchflow.storage.base import WorkflowStore

log = structlog.get_logger(__name__)

# A contiguous block of "at ..." frames
_STACK_BLOCK = re.compile(r"(\s+at\s+.+(?:\n|\Z))+")
# "Error: message\n    at ..." where the message may span lines
_ERROR_THEN_FRAMES = re.compile(r"^(.+?)(?:\n\s+at\s)", re.DOTALL)
_FILE_EXTENSION = re.compile(r"\.\w{1,5}$")

MAX_SCAN_DEPTH = 5


def parse_error_message(error_msg: str) -> tuple[str, str | None]:
    """Split raw error text into ``(message, stack_trace)``.

    Example:
        >>> parse_error_message("Boom\\n    at run (src/a.ts:1:2)")
        ('Boom', 'at run (src/a.ts:1:2)')
    """
    stack_match = _STACK_BLOCK.search(error_msg)
    if stack_match:
        return error_msg[: stack_match.start()].strip(), stack_match.group(0).strip()

    match = _ERROR_THEN_FRAMES.search(error_msg)
    if match:
        return match.group(1).strip(), error_msg[len(match.group(1)) :].strip()

    return error_msg, None


def extract_involved_files(inputs: dict[str, Any], outputs: dict[str, Any] | None) -> list[str]:
    """Collect strings that look like repository file paths.

    Inputs are scanned before outputs, nesting is followed to a bounded depth,
    and duplicates are dropped while keeping first-seen order.
    """
    files: dict[str, None] = {}

    def scan(value: Any, depth: int = 0) -> None:
        if depth > MAX_SCAN_DEPTH:
            return
        if isinstance(value, str):
            if "/" in value and not value.startswith("http") and _FILE_EXTENSION.search(value):
                files.setdefault(value, None)
        elif isinstance(value, (list, tuple)):
            for item in value:
                scan(item, depth + 1)
        elif isinstance(value, dict):
            for item in value.values():
                scan(item, depth + 1)

    scan(inputs)
    if outputs:
        scan(outputs)
    return list(files)


class ContextCollector:
    """Assemble a ``FailureContext`` for a failed run.

    Attributes:
        store: Record store to read runs, events and violations from
        config: Diagnosis configuration (event and file limits)
    """

    def __init__(self, store: WorkflowStore, config: DiagnosisConfig | None = None) -> None:
        self.store = store
        self.config = config or DiagnosisConfig()

    async def collect_failure_context(self, workflow_id: str, run_id: str) -> FailureContext:
        """Collect failure context for a failed run.

        Args:
            workflow_id: Workflow the run belongs to
            run_id: The failed run

        Returns:
            Immutable FailureContext

        Raises:
            RecordNotFoundError: If the run or its workflow does not exist
            PreconditionError: If the run did not fail
        """
        run = await self.store.get_run(run_id)
        if run is None:
            raise RecordNotFoundError("run", run_id)
        if run.status != RunStatus.FAILED.value:
            raise PreconditionError(f"Run {run_id} is not failed (status: {run.status})")

        workflow = await self.store.get_workflow(run.workflow_id)
        if workflow is None:
            raise RecordNotFoundError("workflow", run.workflow_id)

        message, stack_trace = parse_error_message(run.error_msg or "")
        involved_files = extract_involved_files(run.inputs, run.outputs)[: self.config.max_files]

        context = FailureContext(
            workflow_id=workflow_id,
            run_id=run_id,
            job_name=run.job_name,
            error_message=message,
            stack_trace=stack_trace,
            workflow_state=str(workflow.state),
            inputs=run.inputs,
            partial_outputs=run.outputs,
            recent_events=tuple(await self._collect_recent_events(workflow_id)),
            policy_violations=tuple(await self._collect_policy_violations(workflow_id)),
            involved_files=tuple(involved_files),
            failed_at=run.completed_at or run.started_at,
            duration_ms=run.duration_ms,
        )

        log.debug(
            "failure_context_collected",
            workflow_id=workflow_id,
            run_id=run_id,
            events=len(context.recent_events),
            violations=len(context.policy_violations),
            files=len(context.involved_files),
        )
        return context

    async def collect_from_workflow_state(self, workflow_id: str) -> FailureContext | None:
        """Collect context for the most recent failed run of a stuck workflow.

        Returns:
            FailureContext, or None when the workflow is missing, not in a
            failed/needs-human/policy-blocked state, or has no failed run
        """
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None or workflow.state not in DIAGNOSABLE_STATES:
            return None

        failed_runs = await self.store.list_runs(workflow_id, status=RunStatus.FAILED, limit=1)
        if not failed_runs:
            return None

        return await self.collect_failure_context(workflow_id, failed_runs[0].id)

    async def _collect_recent_events(self, workflow_id: str) -> list[FailureEvent]:
        # Newest maxEvents, returned oldest first
        events = await self.store.list_events(workflow_id, limit=self.config.max_events)
        return [FailureEvent(type=e.type, timestamp=e.created_at, payload=e.payload) for e in reversed(events)]

    async def _collect_policy_violations(self, workflow_id: str) -> list[PolicyViolationInfo]:
        violations = await self.store.list_policy_violations(workflow_id)
        return [
            PolicyViolationInfo(rule=v.rule, severity=v.severity, file=v.file, message=v.message, line=v.line)
            for v in violations
        ]
