"""Configuration package for patchflow."""

from patchflow.config.settings import (
    DiagnosisConfig,
    DriverConfig,
    LLMConfig,
    PatchflowSettings,
    PruningConfig,
    RetryConfig,
    StorageConfig,
    TokenBudget,
)

__all__ = [
    "DiagnosisConfig",
    "DriverConfig",
    "LLMConfig",
    "PatchflowSettings",
    "PruningConfig",
    "RetryConfig",
    "StorageConfig",
    "TokenBudget",
]
