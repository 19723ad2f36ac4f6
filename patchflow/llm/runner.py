"""
LLM runner with retry, budget control and structured output parsing.

``LLMRunner.run`` never raises for expected failures. Budget overruns, parse
and validation failures and provider errors come back as an ``LLMResponse``
with ``success=False`` and an ``error_code``; call ``raise_for_error()`` to
turn that into a typed exception.

Example:
    runner = LLMRunner(StubLLMProvider({"diagnoser": '{"root_cause": "x", "summary": "y"}'}))
    response = await runner.run("diagnoser", prompt, schema=DiagnosisInsight)
    if response.success:
        insight = response.data
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from patchflow.config.settings import LLMConfig, RetryCondition, RetryConfig, TokenBudget
from patchflow.enums import RunStatus
from patchflow.exceptions import (
    BudgetExceededError,
    ProviderError,
    ResponseParseError,
    ResponseValidationError,
)
from patchflow.llm.backends import LLMProvider, create_provider
from patchflow.llm.prompts import PromptRegistry
from patchflow.llm.schemas import parse_json
from patchflow.llm.types import AgentRole, LLMRequest, LLMResponse, ResponseMetadata, TokenUsage
from patchflow.storage.base import WorkflowStore, utc_now
from patchflow.utils.side_channel import BestEffortChannel

log = structlog.get_logger(__name__)


def classify_error(error: Exception) -> RetryCondition:
    """Map a provider exception onto a retry condition by its message."""
    message = str(error).lower()
    if "rate limit" in message or "429" in message:
        return "rate_limit"
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "500" in message or "502" in message or "503" in message:
        return "server_error"
    return "invalid_response"


class LLMRunner:
    """Run role-based LLM calls against a provider.

    Attributes:
        provider: Provider performing the raw calls
        prompts: Registry resolving role prompts and versions
        retry: Retry policy
        budget: Default per-call token budget
        session_usage: Usage accumulated since the last reset
    """

    def __init__(
        self,
        provider: LLMProvider,
        prompts: PromptRegistry | None = None,
        retry: RetryConfig | None = None,
        budget: TokenBudget | None = None,
        store: WorkflowStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.prompts = prompts or PromptRegistry()
        self.retry = retry or RetryConfig()
        self.budget = budget or TokenBudget()
        self.store = store
        self.session_usage = TokenUsage()
        self._sleep = sleep
        self._recorder = BestEffortChannel("llm_run_recording")

    async def run(
        self,
        role: AgentRole | str,
        prompt: str,
        schema: type[BaseModel] | None = None,
        budget: TokenBudget | None = None,
        context: dict[str, Any] | None = None,
        prompt_version: str | None = None,
    ) -> LLMResponse:
        """Run one call with retry and budget control.

        Args:
            role: Agent role whose system prompt is used
            prompt: User prompt
            schema: Optional pydantic model the JSON output must validate against
            budget: Per-call budget overriding the runner default
            context: Call context; ``workflow_id`` enables run recording
            prompt_version: Prompt version overriding the registry's current one

        Returns:
            LLMResponse describing success or the failure category
        """
        agent_role = AgentRole(role)
        request_id = str(uuid.uuid4())
        started = time.monotonic()
        budget = budget or self.budget
        version = prompt_version or self.prompts.current_version(agent_role)
        role_config = self.prompts.role_config(agent_role)

        request = LLMRequest(
            role=agent_role,
            prompt_version=version,
            messages=[
                {"role": "system", "content": self.prompts.get_prompt(agent_role, version)},
                {"role": "user", "content": prompt},
            ],
            budget=budget,
            temperature=role_config.temperature,
            context=context,
        )

        def metadata(retry_count: int) -> ResponseMetadata:
            return ResponseMetadata(
                request_id=request_id,
                model=self.provider.model_id,
                prompt_version=version,
                role=agent_role,
                latency_ms=int((time.monotonic() - started) * 1000),
                retry_count=retry_count,
                timestamp=utc_now(),
            )

        def failure(code: str, message: str, retry_count: int = 0, usage: TokenUsage | None = None) -> LLMResponse:
            log.warning("llm_call_failed", role=str(agent_role), error_code=code, error=message)
            return LLMResponse(
                success=False,
                metadata=metadata(retry_count),
                usage=usage or TokenUsage(),
                error=f"{code}: {message}",
                error_code=code,
            )

        estimated_input = self.provider.estimate_tokens("\n".join(m["content"] for m in request.messages))
        if estimated_input > budget.max_input_tokens:
            return failure(
                BudgetExceededError.code,
                f"Estimated input tokens ({estimated_input}) exceeds budget ({budget.max_input_tokens})",
            )

        last_error: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry.max_retries + 1):
            try:
                reply = await self.provider.call(request)
            except Exception as e:
                last_error = e
                condition = classify_error(e)
                log.debug("llm_call_error", role=str(agent_role), attempt=attempt, condition=condition)
                if self._should_retry(condition, attempt):
                    retry_count += 1
                    await self._delay(attempt)
                    continue
                break

            self.session_usage.add(reply.usage)

            if reply.usage.estimated_cost > budget.max_total_cost:
                return failure(
                    BudgetExceededError.code,
                    f"Response cost ({reply.usage.estimated_cost}c) exceeds budget ({budget.max_total_cost}c)",
                    retry_count,
                    reply.usage,
                )

            data: Any = reply.raw_content
            if schema is not None:
                parsed = parse_json(reply.raw_content)
                if parsed is None:
                    if self._should_retry("parse_error", attempt):
                        retry_count += 1
                        await self._delay(attempt)
                        continue
                    return failure(
                        ResponseParseError.code, "Failed to parse LLM output as JSON", retry_count, reply.usage
                    )

                try:
                    data = schema.model_validate(parsed)
                except ValidationError as e:
                    if self._should_retry("invalid_response", attempt):
                        retry_count += 1
                        await self._delay(attempt)
                        continue
                    details = "; ".join(
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                    )
                    return failure(
                        ResponseValidationError.code,
                        f"Schema validation failed: {details}",
                        retry_count,
                        reply.usage,
                    )

            response = LLMResponse(
                success=True,
                metadata=metadata(retry_count),
                usage=reply.usage,
                data=data,
                raw_content=reply.raw_content,
            )
            log.info(
                "llm_call_completed",
                role=str(agent_role),
                model=response.metadata.model,
                retry_count=retry_count,
                total_tokens=reply.usage.total_tokens,
            )
            await self._record_run(response, (context or {}).get("workflow_id"))
            return response

        return failure(
            ProviderError.code,
            str(last_error) if last_error else "Unknown error",
            retry_count,
        )

    def reset_session_usage(self) -> None:
        self.session_usage = TokenUsage()

    def is_within_budget(self, budget: TokenBudget | None = None) -> bool:
        """Check whether the session's accumulated usage fits ``budget``."""
        b = budget or self.budget
        return (
            self.session_usage.input_tokens <= b.max_input_tokens
            and self.session_usage.output_tokens <= b.max_output_tokens
            and self.session_usage.estimated_cost <= b.max_total_cost
        )

    def _should_retry(self, condition: RetryCondition, attempt: int) -> bool:
        return attempt < self.retry.max_retries and condition in self.retry.retry_on

    async def _delay(self, attempt: int) -> None:
        await self._sleep(self.retry.delay_seconds(attempt))

    async def _record_run(self, response: LLMResponse, workflow_id: str | None) -> None:
        if self.store is None or not workflow_id:
            return
        store = self.store
        meta = response.metadata
        await self._recorder.run(
            "record_run",
            lambda: store.create_run(
                workflow_id,
                job_name=f"llm_{meta.role}",
                status=RunStatus.COMPLETED,
                inputs={"promptVersion": meta.prompt_version, "model": meta.model, "requestId": meta.request_id},
                outputs={"success": True, "usage": response.usage.to_dict()},
                completed_at=store.clock(),
                duration_ms=meta.latency_ms,
            ),
        )


def create_runner(config: LLMConfig, store: WorkflowStore | None = None) -> LLMRunner | None:
    """Build a runner from configuration, or None when the LLM is disabled."""
    if not config.enabled:
        return None
    return LLMRunner(
        provider=create_provider(config),
        prompts=PromptRegistry.from_config(config),
        retry=config.retry,
        budget=config.budget,
        store=store,
    )
