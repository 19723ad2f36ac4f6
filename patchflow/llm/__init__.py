"""Optional LLM collaborator for patchflow.

Nothing in the workflow core requires it: diagnosis falls back to its
heuristics whenever the runner is absent or a call fails.

Key Components:
    - LLMRunner: Retry, budget and structured-output handling around a provider
    - PromptRegistry: Injected role to versioned system prompt mapping
    - OpenAICompatibleProvider: httpx client for chat-completions APIs
    - StubLLMProvider: Canned replies for tests
"""

from patchflow.llm.backends import (
    LLMProvider,
    OpenAICompatibleProvider,
    StubLLMProvider,
    create_provider,
    estimate_cost,
)
from patchflow.llm.prompts import PromptRegistry
from patchflow.llm.runner import LLMRunner, classify_error, create_runner
from patchflow.llm.schemas import DiagnosisInsight, parse_json
from patchflow.llm.types import AgentRole, LLMRequest, LLMResponse, ProviderReply, RoleConfig, TokenUsage

__all__ = [
    # Runner
    "LLMRunner",
    "classify_error",
    "create_runner",
    # Providers
    "LLMProvider",
    "OpenAICompatibleProvider",
    "StubLLMProvider",
    "create_provider",
    "estimate_cost",
    # Prompts and schemas
    "PromptRegistry",
    "DiagnosisInsight",
    "parse_json",
    # Types
    "AgentRole",
    "LLMRequest",
    "LLMResponse",
    "ProviderReply",
    "RoleConfig",
    "TokenUsage",
]
