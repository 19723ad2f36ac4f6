"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for checkpoint retention, failure
diagnosis, the optional LLM collaborator, the workflow driver and storage.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from patchflow.exceptions import ConfigurationError

RetryCondition = Literal["rate_limit", "timeout", "server_error", "invalid_response", "parse_error"]


class PruningConfig(BaseModel):
    """Checkpoint retention policy applied after every checkpoint creation."""

    max_checkpoints_per_workflow: int = Field(default=10, ge=1, description="Maximum checkpoints kept per workflow")
    max_checkpoint_age_days: float = Field(default=30, ge=0, description="Checkpoints older than this are pruned")
    keep_first_checkpoint: bool = Field(default=True, description="Never prune the oldest checkpoint")
    preserve_manual_checkpoints: bool = Field(default=True, description="Never prune user-created checkpoints")


class DiagnosisConfig(BaseModel):
    """Failure diagnosis configuration."""

    max_events: int = Field(default=50, ge=1, description="Maximum recent events included in a failure context")
    max_files: int = Field(default=20, ge=1, description="Maximum involved files analyzed")
    diagnosis_timeout_ms: int = Field(default=30000, ge=1, description="Timeout for the LLM diagnosis pass")
    auto_generate_fixes: bool = Field(default=True, description="Create fix proposals after diagnosis")
    min_fix_confidence: float = Field(default=0.7, ge=0.0, le=1.0, description="Minimum confidence to propose a fix")
    persist_diagnosis: bool = Field(default=True, description="Store each diagnosis as a markdown artifact")

    @property
    def diagnosis_timeout_seconds(self) -> float:
        """Diagnosis timeout in seconds, for asyncio.wait_for."""
        return self.diagnosis_timeout_ms / 1000


class RetryConfig(BaseModel):
    """Retry policy for LLM provider calls."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(default=1000, ge=0, description="Backoff base delay")
    max_delay_ms: int = Field(default=30000, ge=0, description="Backoff delay cap")
    retry_on: list[RetryCondition] = Field(
        default_factory=lambda: ["rate_limit", "timeout", "server_error"],
        description="Failure conditions that trigger a retry",
    )

    def delay_seconds(self, attempt: int) -> float:
        """Exponential backoff delay before retrying after ``attempt``."""
        return min(self.base_delay_ms * (2**attempt), self.max_delay_ms) / 1000


class TokenBudget(BaseModel):
    """Token and cost budget for a single LLM call."""

    max_input_tokens: int = Field(default=100000, ge=1)
    max_output_tokens: int = Field(default=8000, ge=1)
    max_total_cost: float = Field(default=100, ge=0, description="Maximum cost in cents")


class LLMConfig(BaseModel):
    """Optional LLM collaborator configuration.

    Supports environment references for api_key:
    - api_key: "${OPENAI_API_KEY}"
    """

    enabled: bool = Field(default=False, description="Augment diagnosis with an LLM pass")
    provider: Literal["stub", "openai-compatible"] = Field(default="stub", description="LLM provider type")
    base_url: str = Field(default="http://localhost:8000/v1", description="Base URL of the chat-completions API")
    api_key: str | None = Field(default=None, description="API key for the provider")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    timeout_seconds: float = Field(default=60.0, gt=0, description="HTTP request timeout")
    retry: RetryConfig = Field(default_factory=RetryConfig)
    budget: TokenBudget = Field(default_factory=TokenBudget)
    prompt_versions: dict[str, str] = Field(
        default_factory=dict,
        description="Role to prompt version overrides, e.g. {'diagnoser': 'v1'}",
    )

    @model_validator(mode="after")
    def validate_provider_config(self) -> LLMConfig:
        """Ensure the HTTP provider has a usable base URL."""
        if self.provider == "openai-compatible" and not (
            self.base_url.startswith("http://") or self.base_url.startswith("https://")
        ):
            raise ValueError(f"base_url must start with http:// or https://, got: {self.base_url}")
        return self


class DriverConfig(BaseModel):
    """Reference workflow driver behavior."""

    auto_checkpoint: bool = Field(default=True, description="Checkpoint when a stage boundary is crossed")
    checkpoint_before_apply: bool = Field(default=True, description="Checkpoint before enqueueing apply_patches")
    diagnose_failures: bool = Field(default=True, description="Diagnose the workflow after a job failure")
    diagnosis_timeout_ms: int = Field(
        default=60000, ge=1, description="Upper bound on post-failure diagnosis while the workflow lock is held"
    )


class StorageConfig(BaseModel):
    """Persistence backend configuration."""

    backend: Literal["memory", "json"] = Field(default="memory", description="Storage backend")
    state_directory: str = Field(default=".patchflow/state", description="Directory for JSON state files")


class PatchflowSettings(BaseSettings):
    """Main patchflow settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="PATCHFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    pruning: PruningConfig = Field(default_factory=PruningConfig)
    diagnosis: DiagnosisConfig = Field(default_factory=DiagnosisConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    driver: DriverConfig = Field(default_factory=DriverConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.storage.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> PatchflowSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            PatchflowSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
