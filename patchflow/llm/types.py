"""Core types for LLM calls: roles, requests, usage and responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from patchflow.config.settings import TokenBudget
from patchflow.exceptions import (
    BudgetExceededError,
    LLMError,
    ProviderError,
    ResponseParseError,
    ResponseValidationError,
)


class AgentRole(str, Enum):
    """Specialized LLM behaviors, each with its own system prompt."""

    ARCHITECT = "architect"
    CODER = "coder"
    REVIEWER = "reviewer"
    TESTER = "tester"
    DIAGNOSER = "diagnoser"
    DOCUMENTER = "documenter"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RoleConfig:
    role: AgentRole
    system_prompt: str
    temperature: float
    max_tokens: int
    constraints: tuple[str, ...] = ()


@dataclass
class LLMRequest:
    """A fully assembled call handed to a provider."""

    role: AgentRole
    prompt_version: str
    messages: list[dict[str, str]]
    budget: TokenBudget
    temperature: float = 0.7
    context: dict[str, Any] | None = None


@dataclass
class TokenUsage:
    """Token counts and estimated cost in cents."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.estimated_cost += other.estimated_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "estimatedCost": self.estimated_cost,
        }


@dataclass
class ProviderReply:
    """Raw completion returned by a provider."""

    raw_content: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ResponseMetadata:
    request_id: str
    model: str
    prompt_version: str
    role: AgentRole
    latency_ms: int
    retry_count: int
    timestamp: datetime


_ERROR_TYPES: dict[str, type[LLMError]] = {
    BudgetExceededError.code: BudgetExceededError,
    ResponseParseError.code: ResponseParseError,
    ResponseValidationError.code: ResponseValidationError,
    ProviderError.code: ProviderError,
}


@dataclass
class LLMResponse:
    """Outcome of ``LLMRunner.run``. Failures are reported, never raised.

    Attributes:
        success: Whether the call produced usable output
        data: Validated schema instance, or the raw text when no schema was given
        error_code: One of BUDGET_EXCEEDED, PARSE_ERROR, VALIDATION_ERROR, PROVIDER_ERROR
    """

    success: bool
    metadata: ResponseMetadata
    usage: TokenUsage = field(default_factory=TokenUsage)
    data: Any = None
    raw_content: str | None = None
    error: str | None = None
    error_code: str | None = None

    def raise_for_error(self) -> None:
        """Raise the typed LLMError matching ``error_code`` if the call failed."""
        if self.success:
            return
        error_type = _ERROR_TYPES.get(self.error_code or "", LLMError)
        raise error_type(self.error or "LLM call failed", role=str(self.metadata.role))
