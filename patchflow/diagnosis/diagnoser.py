"""
Heuristic failure diagnosis with an optional LLM pass.

The heuristic classifier is the single source of truth for the root cause.
When an ``LLMRunner`` is configured the diagnoser first asks the diagnoser
role for an analysis, bounded by ``DiagnosisConfig.diagnosis_timeout_ms``;
a successful answer is appended to the heuristic analysis, and any failure
(timeout, budget, parse or provider error) silently falls back to the
heuristics alone.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import structlog

from patchflow.config.settings import DiagnosisConfig
from patchflow.diagnosis import catalog
from patchflow.diagnosis.types import DiagnosisResult, FailureContext, PotentialFix, RootCauseCategory
from patchflow.enums import EventType
from patchflow.llm.runner import LLMRunner
from patchflow.llm.schemas import DiagnosisInsight
from patchflow.llm.types import AgentRole
from patchflow.storage.base import Clock, new_id, utc_now

log = structlog.get_logger(__name__)

MAX_PROMPT_INPUT_CHARS = 2000
MAX_PROMPT_EVENTS = 10
MAX_ANALYSIS_FILES = 10
REPEATED_FAILURE_THRESHOLD = 3
STATE_THRASHING_THRESHOLD = 10


def classify_root_cause(context: FailureContext) -> tuple[RootCauseCategory, float]:
    """Return ``(category, confidence)`` using ordered first-match rules."""
    if context.policy_violations:
        return RootCauseCategory.POLICY_VIOLATION, catalog.POLICY_VIOLATION_CONFIDENCE

    error = context.error_message.lower()
    job_name = context.job_name.lower()
    for rule in catalog.CLASSIFICATION_RULES:
        if rule.matches(job_name, error):
            return rule.category, rule.confidence

    if context.stack_trace or "error" in error or "exception" in error:
        return RootCauseCategory.CODE_ERROR, catalog.CODE_ERROR_CONFIDENCE
    return RootCauseCategory.UNKNOWN, catalog.UNKNOWN_CONFIDENCE


def identify_potential_fixes(context: FailureContext, category: RootCauseCategory) -> list[PotentialFix]:
    """Fixes for the category, highest confidence first."""
    if category is RootCauseCategory.POLICY_VIOLATION:
        fixes = [catalog.policy_violation_fix(v) for v in context.policy_violations]
    else:
        fixes = catalog.fixes_for(category)
    return sorted(fixes, key=lambda fix: fix.confidence, reverse=True)


def generate_analysis(context: FailureContext, category: RootCauseCategory, confidence: float) -> str:
    lines = [
        "## Root Cause Analysis",
        f"**Category:** {category.label}",
        f"**Confidence:** {confidence * 100:.0f}%",
        "",
        "## Error Details",
        f"```\n{context.error_message}\n```",
        "",
    ]

    if context.stack_trace:
        lines.extend(["## Stack Trace", f"```\n{context.stack_trace}\n```", ""])

    if context.policy_violations:
        lines.append("## Policy Violations")
        for v in context.policy_violations:
            lines.append(f"- **{v.rule}** [{v.severity}]: {v.message}")
            lines.append(f"  File: {v.file}{f':{v.line}' if v.line else ''}")
        lines.append("")

    duration = f"{context.duration_ms}ms" if context.duration_ms else "unknown"
    lines.extend(
        [
            "## Context",
            f"- **Job:** {context.job_name}",
            f"- **Workflow State:** {context.workflow_state}",
            f"- **Duration:** {duration}",
            f"- **Failed At:** {context.failed_at.isoformat()}",
        ]
    )

    if context.involved_files:
        lines.extend(["", "## Involved Files"])
        lines.extend(f"- {path}" for path in context.involved_files[:MAX_ANALYSIS_FILES])

    return "\n".join(lines)


def generate_summary(context: FailureContext, category: RootCauseCategory) -> str:
    """One-line, category-specific summary."""
    if category is RootCauseCategory.POLICY_VIOLATION:
        file = context.policy_violations[0].file if context.policy_violations else "unknown file"
        return f"Policy violation in {file}"
    if category is RootCauseCategory.TEST_FAILURE:
        return f"Test failure in {context.job_name}"
    if category is RootCauseCategory.BUILD_ERROR:
        return "Build/compilation error"
    if category is RootCauseCategory.DEPENDENCY_ISSUE:
        return "Missing or incompatible dependency"
    return f"{category.label} in {context.job_name}: {context.error_message[:50]}..."


def _trigger_type(payload: dict[str, Any]) -> str:
    # Transition audit events carry the triggering event under "triggerEvent"
    trigger = payload.get("triggerEvent")
    if isinstance(trigger, dict):
        return str(trigger.get("type", ""))
    return str(trigger or "")


def find_related_patterns(context: FailureContext) -> list[str]:
    """Flag repeated failures and state thrashing in the recent event timeline."""
    patterns = []

    failures = [
        e
        for e in context.recent_events
        if "FAILED" in e.type
        or "ERROR" in e.type
        or (e.type == EventType.TRANSITION and "FAILED" in _trigger_type(e.payload))
    ]
    if len(failures) > REPEATED_FAILURE_THRESHOLD:
        patterns.append("Repeated failures detected - may indicate systemic issue")

    state_changes = [e for e in context.recent_events if "STATE_CHANGE" in e.type or e.type == EventType.TRANSITION]
    if len(state_changes) > STATE_THRASHING_THRESHOLD:
        patterns.append("Excessive state changes - possible infinite loop or race condition")

    return patterns


def build_diagnosis_prompt(context: FailureContext) -> str:
    """Render the failure context as the user prompt for the diagnoser role."""
    sections = [
        "You are a senior software engineer diagnosing a failure. "
        "Analyze the following context and provide:\n"
        "1. Root cause category\n"
        "2. Detailed analysis\n"
        "3. Potential fixes with confidence levels",
        "## Failure Context\n\n"
        f"**Workflow ID:** {context.workflow_id}\n"
        f"**Job:** {context.job_name}\n"
        f"**State:** {context.workflow_state}\n"
        f"**Failed At:** {context.failed_at.isoformat()}",
        f"## Error\n```\n{context.error_message}\n```",
    ]
    if context.stack_trace:
        sections.append(f"## Stack Trace\n```\n{context.stack_trace}\n```")

    inputs_json = json.dumps(context.inputs, indent=2, default=str)[:MAX_PROMPT_INPUT_CHARS]
    sections.append(f"## Inputs\n```json\n{inputs_json}\n```")

    if context.policy_violations:
        violations = "\n".join(
            f"- [{v.severity}] {v.rule}: {v.message} ({v.file})" for v in context.policy_violations
        )
        sections.append(f"## Policy Violations\n{violations}")
    if context.involved_files:
        sections.append("## Involved Files\n" + "\n".join(f"- {path}" for path in context.involved_files))

    events = "\n".join(
        f"- {e.type} at {e.timestamp.isoformat()}" for e in context.recent_events[-MAX_PROMPT_EVENTS:]
    )
    sections.append(f"## Recent Events (last {len(context.recent_events)})\n{events}")
    sections.append(
        "Provide your analysis in structured format with root_cause, summary, analysis, and potential_fixes."
    )
    return "\n\n".join(sections)


class Diagnoser:
    """Diagnose failures from a ``FailureContext``.

    Attributes:
        runner: Optional LLM runner used to enrich the analysis
        config: Diagnosis configuration (LLM timeout)
        clock: Source of ``diagnosed_at`` timestamps
    """

    def __init__(
        self,
        runner: LLMRunner | None = None,
        config: DiagnosisConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.runner = runner
        self.config = config or DiagnosisConfig()
        self.clock = clock

    async def diagnose(self, context: FailureContext) -> DiagnosisResult:
        """Diagnose a failure and identify its root cause."""
        started = time.monotonic()
        model_analysis = await self._model_analysis(context) if self.runner is not None else None

        category, confidence = classify_root_cause(context)
        analysis = generate_analysis(context, category, confidence)
        if model_analysis:
            analysis = f"{analysis}\n\n## Model Analysis\n{model_analysis}"

        result = DiagnosisResult(
            id=new_id("diag"),
            context=context,
            root_cause=category,
            confidence=confidence,
            summary=generate_summary(context, category),
            analysis=analysis,
            potential_fixes=identify_potential_fixes(context, category),
            related_patterns=find_related_patterns(context),
            prevention_recommendations=catalog.prevention_for(category),
            diagnosed_at=self.clock(),
            diagnosis_duration_ms=int((time.monotonic() - started) * 1000),
        )
        log.debug(
            "diagnosis_generated",
            workflow_id=context.workflow_id,
            run_id=context.run_id,
            root_cause=str(category),
            used_model=model_analysis is not None,
        )
        return result

    async def _model_analysis(self, context: FailureContext) -> str | None:
        """Ask the diagnoser role for an analysis. None means fall back."""
        assert self.runner is not None
        prompt = build_diagnosis_prompt(context)
        try:
            response = await asyncio.wait_for(
                self.runner.run(
                    AgentRole.DIAGNOSER,
                    prompt,
                    schema=DiagnosisInsight,
                    context={"workflow_id": context.workflow_id},
                ),
                timeout=self.config.diagnosis_timeout_seconds,
            )
        except TimeoutError:
            log.warning(
                "llm_diagnosis_timed_out",
                workflow_id=context.workflow_id,
                timeout_ms=self.config.diagnosis_timeout_ms,
            )
            return None
        except Exception as e:
            log.warning("llm_diagnosis_failed", workflow_id=context.workflow_id, error=str(e), exc_info=True)
            return None

        if not response.success:
            log.info("llm_diagnosis_fallback", workflow_id=context.workflow_id, error=response.error)
            return None

        insight: DiagnosisInsight = response.data
        return insight.analysis or insight.summary
