"""Tests for patchflow/config/settings.py Pydantic models.

Tests cover:
- Section defaults and boundary validation
- PatchflowSettings loading from YAML
- Environment variable interpolation
- Loading from PATCHFLOW_ environment variables
- Error handling for missing or invalid files
"""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from patchflow.config.settings import (
    DiagnosisConfig,
    LLMConfig,
    PatchflowSettings,
    PruningConfig,
    RetryConfig,
)
from patchflow.exceptions import ConfigurationError


@pytest.fixture
def write_config(tmp_path: Path):
    """Write a YAML config file and return its path."""

    def _write(content: str | dict) -> Path:
        path = tmp_path / "patchflow.yaml"
        path.write_text(content if isinstance(content, str) else yaml.safe_dump(content))
        return path

    return _write


class TestSections:
    """Test configuration section defaults and validation."""

    def test_pruning_defaults(self):
        config = PruningConfig()

        assert config.max_checkpoints_per_workflow == 10
        assert config.max_checkpoint_age_days == 30
        assert config.keep_first_checkpoint is True
        assert config.preserve_manual_checkpoints is True

    def test_pruning_rejects_zero_max(self):
        with pytest.raises(ValidationError):
            PruningConfig(max_checkpoints_per_workflow=0)

    def test_diagnosis_defaults(self):
        config = DiagnosisConfig()

        assert config.max_events == 50
        assert config.max_files == 20
        assert config.diagnosis_timeout_ms == 30000
        assert config.diagnosis_timeout_seconds == 30.0
        assert config.auto_generate_fixes is True
        assert config.min_fix_confidence == 0.7
        assert config.persist_diagnosis is True

    def test_min_fix_confidence_bounds(self):
        with pytest.raises(ValidationError):
            DiagnosisConfig(min_fix_confidence=1.5)

    def test_retry_defaults(self):
        config = RetryConfig()

        assert config.max_retries == 3
        assert config.retry_on == ["rate_limit", "timeout", "server_error"]

    def test_retry_rejects_unknown_condition(self):
        with pytest.raises(ValidationError):
            RetryConfig(retry_on=["always"])

    def test_retry_delay(self):
        config = RetryConfig(base_delay_ms=200, max_delay_ms=1000)

        assert [config.delay_seconds(i) for i in range(4)] == [0.2, 0.4, 0.8, 1.0]

    def test_llm_disabled_by_default(self):
        config = LLMConfig()

        assert config.enabled is False
        assert config.provider == "stub"

    def test_llm_http_provider_requires_http_url(self):
        with pytest.raises(ValidationError) as exc_info:
            LLMConfig(provider="openai-compatible", base_url="llm.local:8000")

        assert "base_url must start with http:// or https://" in str(exc_info.value)


class TestFromYaml:
    """Test PatchflowSettings.from_yaml."""

    def test_load_full_config(self, write_config):
        path = write_config(
            {
                "pruning": {"max_checkpoints_per_workflow": 5},
                "diagnosis": {"min_fix_confidence": 0.8},
                "llm": {"enabled": True, "prompt_versions": {"diagnoser": "v1"}},
                "driver": {"auto_checkpoint": False},
                "storage": {"backend": "json", "state_directory": "/tmp/pf-state"},
                "log_level": "DEBUG",
            }
        )

        settings = PatchflowSettings.from_yaml(path)

        assert settings.pruning.max_checkpoints_per_workflow == 5
        assert settings.pruning.keep_first_checkpoint is True
        assert settings.diagnosis.min_fix_confidence == 0.8
        assert settings.llm.enabled is True
        assert settings.driver.auto_checkpoint is False
        assert settings.driver.checkpoint_before_apply is True
        assert settings.state_dir == Path("/tmp/pf-state")
        assert settings.log_level == "DEBUG"

    def test_empty_file_uses_defaults(self, write_config):
        settings = PatchflowSettings.from_yaml(write_config(""))

        assert settings.storage.backend == "memory"
        assert settings.pruning == PruningConfig()

    def test_env_interpolation(self, write_config, monkeypatch):
        monkeypatch.setenv("PF_LLM_KEY", "sk-from-env")  # pragma: allowlist secret
        monkeypatch.delenv("PF_MODEL", raising=False)
        path = write_config("llm:\n  api_key: ${PF_LLM_KEY}\n  model: ${PF_MODEL:-gpt-4o}\n")

        settings = PatchflowSettings.from_yaml(path)

        assert settings.llm.api_key == "sk-from-env"  # pragma: allowlist secret
        assert settings.llm.model == "gpt-4o"

    def test_missing_env_var(self, write_config, monkeypatch):
        monkeypatch.delenv("PF_UNSET_VAR", raising=False)
        path = write_config("llm:\n  api_key: ${PF_UNSET_VAR}\n")

        with pytest.raises(ConfigurationError) as exc_info:
            PatchflowSettings.from_yaml(path)

        assert "PF_UNSET_VAR" in exc_info.value.message

    def test_comment_lines_are_not_interpolated(self, write_config, monkeypatch):
        monkeypatch.delenv("PF_UNSET_VAR", raising=False)
        path = write_config("# api_key: ${PF_UNSET_VAR}\nlog_level: INFO\n")

        settings = PatchflowSettings.from_yaml(path)

        assert settings.log_level == "INFO"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            PatchflowSettings.from_yaml(tmp_path / "nope.yaml")

        assert "not found" in exc_info.value.message

    def test_invalid_yaml(self, write_config):
        with pytest.raises(ConfigurationError) as exc_info:
            PatchflowSettings.from_yaml(write_config("pruning: [unclosed"))

        assert "Invalid YAML" in exc_info.value.message

    def test_non_mapping_yaml(self, write_config):
        with pytest.raises(ConfigurationError):
            PatchflowSettings.from_yaml(write_config("- a\n- b\n"))

    def test_invalid_values(self, write_config):
        with pytest.raises(ConfigurationError) as exc_info:
            PatchflowSettings.from_yaml(write_config({"pruning": {"max_checkpoints_per_workflow": -1}}))

        assert "Failed to validate configuration" in exc_info.value.message


class TestEnvironmentSettings:
    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("PATCHFLOW_PRUNING__MAX_CHECKPOINTS_PER_WORKFLOW", "4")
        monkeypatch.setenv("PATCHFLOW_LOG_LEVEL", "WARNING")

        settings = PatchflowSettings()

        assert settings.pruning.max_checkpoints_per_workflow == 4
        assert settings.log_level == "WARNING"
