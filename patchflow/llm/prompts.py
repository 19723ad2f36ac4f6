"""
Versioned system prompts per agent role.

Prompt selection is held by a ``PromptRegistry`` instance rather than module
state, so each runner (and each test) carries its own view of which version
is current for a role. The registry is normally built from
``LLMConfig.prompt_versions``::

    registry = PromptRegistry.from_config(settings.llm)
    registry.register("diagnoser", "v2", DIAGNOSER_V2_TEXT)
    registry.set_current_version("diagnoser", "v2")
"""

from __future__ import annotations

from patchflow.config.settings import LLMConfig
from patchflow.exceptions import ConfigurationError
from patchflow.llm.types import AgentRole, RoleConfig

_JSON_OUTPUT = "Output format: Always respond with structured JSON matching the requested schema."

ARCHITECT_PROMPT_V1 = f"""You are an expert software architect. Your role is to:
- Analyze requirements and design system architecture
- Break down complex tasks into smaller, implementable pieces
- Define clear interfaces and contracts between components
- Consider scalability, maintainability, and security
- Make technology choices based on project constraints

{_JSON_OUTPUT}

Constraints:
- Prefer simplicity over complexity
- Design for testability
- Follow SOLID principles
- Consider error handling at every boundary"""

CODER_PROMPT_V1 = f"""You are an expert software developer. Your role is to:
- Write clean, well-structured code following best practices
- Implement features according to specifications
- Write meaningful comments only where logic isn't self-evident
- Handle errors appropriately
- Follow the project's coding conventions

{_JSON_OUTPUT}

Constraints:
- Write minimal, focused code (avoid over-engineering)
- No security vulnerabilities (OWASP Top 10)
- Type safety where applicable
- Avoid backwards-compatibility hacks"""

REVIEWER_PROMPT_V1 = f"""You are an expert code reviewer. Your role is to:
- Review code for correctness, clarity, and maintainability
- Identify potential bugs, security issues, and performance problems
- Suggest improvements while respecting author's intent
- Ensure code follows project conventions

{_JSON_OUTPUT}

Constraints:
- Be constructive, not critical
- Focus on significant issues, not style nitpicks
- Explain WHY something is a problem
- Suggest specific fixes"""

TESTER_PROMPT_V1 = f"""You are an expert software tester. Your role is to:
- Write comprehensive unit and integration tests
- Identify edge cases and boundary conditions
- Create test fixtures and mocks appropriately
- Ensure high code coverage for critical paths

{_JSON_OUTPUT}

Constraints:
- Write tests that are deterministic and isolated
- Test behavior, not implementation
- Use clear, descriptive test names
- Include both happy path and error cases"""

DIAGNOSER_PROMPT_V1 = f"""You are an expert debugger and diagnostician. Your role is to:
- Analyze error messages, stack traces, and logs
- Identify root causes of failures
- Propose specific, actionable fixes
- Explain the failure mechanism clearly

{_JSON_OUTPUT}

Constraints:
- Start with the most likely cause
- Provide evidence for your diagnosis
- Consider related/cascading failures
- Suggest both immediate fix and prevention"""

DOCUMENTER_PROMPT_V1 = f"""You are an expert technical writer. Your role is to:
- Write clear, concise documentation
- Create examples that illustrate usage
- Maintain consistency with existing docs
- Target the appropriate audience (dev/user/ops)

{_JSON_OUTPUT}

Constraints:
- Keep docs up-to-date with code
- Use active voice and present tense
- Include practical examples
- Document error cases and edge conditions"""

_BUILTIN_PROMPTS: dict[AgentRole, dict[str, str]] = {
    AgentRole.ARCHITECT: {"v1": ARCHITECT_PROMPT_V1},
    AgentRole.CODER: {"v1": CODER_PROMPT_V1},
    AgentRole.REVIEWER: {"v1": REVIEWER_PROMPT_V1},
    AgentRole.TESTER: {"v1": TESTER_PROMPT_V1},
    AgentRole.DIAGNOSER: {"v1": DIAGNOSER_PROMPT_V1},
    AgentRole.DOCUMENTER: {"v1": DOCUMENTER_PROMPT_V1},
}

# (temperature, max_tokens, constraints)
_ROLE_SETTINGS: dict[AgentRole, tuple[float, int, tuple[str, ...]]] = {
    AgentRole.ARCHITECT: (0.3, 4000, ("output_json", "no_code_execution")),
    AgentRole.CODER: (0.2, 8000, ("output_json", "no_secrets", "no_unsafe_code")),
    AgentRole.REVIEWER: (0.3, 4000, ("output_json", "constructive_feedback")),
    AgentRole.TESTER: (0.2, 6000, ("output_json", "deterministic_tests")),
    AgentRole.DIAGNOSER: (0.3, 4000, ("output_json", "evidence_based")),
    AgentRole.DOCUMENTER: (0.4, 4000, ("output_json", "clear_language")),
}


def _role(role: AgentRole | str) -> AgentRole:
    try:
        return AgentRole(role)
    except ValueError as e:
        raise ConfigurationError(f"Unknown agent role: {role}") from e


class PromptRegistry:
    """Role to versioned system prompt mapping with a current version per role."""

    def __init__(self, current_versions: dict[str, str] | None = None) -> None:
        self._prompts = {role: dict(versions) for role, versions in _BUILTIN_PROMPTS.items()}
        self._current = {role: "v1" for role in AgentRole}
        for role, version in (current_versions or {}).items():
            self.set_current_version(role, version)

    @classmethod
    def from_config(cls, config: LLMConfig) -> PromptRegistry:
        return cls(config.prompt_versions)

    def get_prompt(self, role: AgentRole | str, version: str | None = None) -> str:
        """Get the system prompt for a role.

        Raises:
            ConfigurationError: If the role or version is unknown
        """
        agent_role = _role(role)
        target = version or self._current[agent_role]
        try:
            return self._prompts[agent_role][target]
        except KeyError as e:
            raise ConfigurationError(f"Unknown prompt version {target} for role {agent_role}") from e

    def current_version(self, role: AgentRole | str) -> str:
        return self._current[_role(role)]

    def available_versions(self, role: AgentRole | str) -> list[str]:
        return list(self._prompts[_role(role)])

    def register(self, role: AgentRole | str, version: str, prompt: str) -> None:
        self._prompts[_role(role)][version] = prompt

    def set_current_version(self, role: AgentRole | str, version: str) -> None:
        """Select the prompt version used when a call does not name one.

        Raises:
            ConfigurationError: If the version has not been registered
        """
        agent_role = _role(role)
        if version not in self._prompts[agent_role]:
            raise ConfigurationError(f"Version {version} not found for role {agent_role}")
        self._current[agent_role] = version

    def role_config(self, role: AgentRole | str) -> RoleConfig:
        agent_role = _role(role)
        temperature, max_tokens, constraints = _ROLE_SETTINGS[agent_role]
        return RoleConfig(
            role=agent_role,
            system_prompt=self.get_prompt(agent_role),
            temperature=temperature,
            max_tokens=max_tokens,
            constraints=constraints,
        )
