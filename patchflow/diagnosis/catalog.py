"""
Lookup tables for heuristic failure diagnosis.

Classification is ordered and first-match: ``CLASSIFICATION_RULES`` is walked
top to bottom and the first rule whose keywords appear in the lower-cased job
name or error message decides the root cause. Order matters because the
keyword sets overlap (``"cannot find"`` is a dependency hint, ``"undefined"``
a data hint, and a TypeScript build error can mention both).
"""

from __future__ import annotations

from dataclasses import dataclass

from patchflow.diagnosis.types import Effort, PolicyViolationInfo, PotentialFix, Risk, RootCauseCategory

POLICY_VIOLATION_CONFIDENCE = 0.95
CODE_ERROR_CONFIDENCE = 0.5
UNKNOWN_CONFIDENCE = 0.3

# Policy rules whose violations cannot be fixed by a generated patch
NON_PATCHABLE_RULES = frozenset({"secret_detected"})

TRANSIENT_CATEGORIES = frozenset(
    {
        RootCauseCategory.NETWORK_ERROR,
        RootCauseCategory.EXTERNAL_SERVICE,
        RootCauseCategory.RESOURCE_LIMIT,
    }
)


@dataclass(frozen=True)
class ClassificationRule:
    """Keyword rule mapping a failure to a root-cause category.

    Attributes:
        category: Category assigned when the rule matches
        confidence: Confidence reported for the match
        job_keywords: Substrings matched against the lower-cased job name
        message_keywords: Substrings matched against the lower-cased error message
    """

    category: RootCauseCategory
    confidence: float
    message_keywords: tuple[str, ...]
    job_keywords: tuple[str, ...] = ()

    def matches(self, job_name: str, error_message: str) -> bool:
        return any(k in job_name for k in self.job_keywords) or any(k in error_message for k in self.message_keywords)


# Policy violations (checked first) and the code_error/unknown fallbacks sit
# outside this table because they do not depend on keywords alone.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        RootCauseCategory.TEST_FAILURE,
        0.9,
        message_keywords=("assertion", "expect", "test failed"),
        job_keywords=("test",),
    ),
    ClassificationRule(
        RootCauseCategory.BUILD_ERROR,
        0.85,
        message_keywords=("compile", "typescript error", "tsc", "syntax error"),
        job_keywords=("build",),
    ),
    ClassificationRule(
        RootCauseCategory.DEPENDENCY_ISSUE,
        0.85,
        message_keywords=("module not found", "cannot find", "npm err", "package", "dependency"),
    ),
    ClassificationRule(
        RootCauseCategory.PERMISSION_DENIED,
        0.85,
        message_keywords=("permission denied", "unauthorized", "forbidden", "access denied", "401", "403"),
    ),
    ClassificationRule(
        RootCauseCategory.RESOURCE_LIMIT,
        0.8,
        message_keywords=("timeout", "out of memory", "heap", "quota", "limit exceeded"),
    ),
    ClassificationRule(
        RootCauseCategory.NETWORK_ERROR,
        0.8,
        message_keywords=("econnrefused", "network", "connection", "dns", "socket"),
    ),
    ClassificationRule(
        RootCauseCategory.EXTERNAL_SERVICE,
        0.75,
        message_keywords=("api", "external", "service unavailable", "500", "502", "503"),
    ),
    ClassificationRule(
        RootCauseCategory.CONFIGURATION_ERROR,
        0.7,
        message_keywords=("config", "environment", "env", "missing"),
    ),
    ClassificationRule(
        RootCauseCategory.DATA_ISSUE,
        0.65,
        message_keywords=("invalid", "parse", "json", "undefined", "null", "type error"),
    ),
)


@dataclass(frozen=True)
class FixTemplate:
    """Static description of a fix offered for a category."""

    description: str
    confidence: float
    effort: Effort
    risk: Risk
    can_auto_patch: bool
    verification_commands: tuple[str, ...] = ()

    def build(self) -> PotentialFix:
        return PotentialFix(
            description=self.description,
            confidence=self.confidence,
            effort=self.effort,
            risk=self.risk,
            can_auto_patch=self.can_auto_patch,
            verification_commands=list(self.verification_commands),
        )


DEFAULT_FIXES: tuple[FixTemplate, ...] = (
    FixTemplate("Review and fix code logic", 0.5, "medium", "medium", False, ("npm test",)),
)

FIX_TEMPLATES: dict[RootCauseCategory, tuple[FixTemplate, ...]] = {
    RootCauseCategory.TEST_FAILURE: (
        FixTemplate("Fix failing test assertions", 0.7, "medium", "low", True, ("npm test",)),
        # Medium risk: rewriting expectations can hide real regressions
        FixTemplate("Update test expectations to match new behavior", 0.5, "small", "medium", True, ("npm test",)),
    ),
    RootCauseCategory.BUILD_ERROR: (
        FixTemplate("Fix TypeScript/compilation errors", 0.85, "small", "low", True, ("npm run build",)),
    ),
    RootCauseCategory.DEPENDENCY_ISSUE: (
        FixTemplate("Install missing dependencies", 0.8, "trivial", "low", False, ("npm install", "npm run build")),
        FixTemplate("Update import paths", 0.6, "small", "low", True, ("npm run build",)),
    ),
    RootCauseCategory.CONFIGURATION_ERROR: (
        FixTemplate("Add missing environment variables", 0.7, "trivial", "low", False),
        FixTemplate("Fix configuration file", 0.6, "small", "medium", True, ("npm run build", "npm test")),
    ),
    RootCauseCategory.DATA_ISSUE: (
        FixTemplate("Add input validation", 0.7, "medium", "low", True, ("npm test",)),
        FixTemplate("Handle null/undefined cases", 0.65, "small", "low", True, ("npm test",)),
    ),
    RootCauseCategory.RESOURCE_LIMIT: (
        FixTemplate("Increase timeout/memory limits", 0.6, "trivial", "medium", False),
        FixTemplate("Optimize resource usage", 0.5, "large", "medium", False, ("npm test",)),
    ),
}

RETRY_FIX = FixTemplate("Retry the operation (may be transient)", 0.4, "trivial", "low", False)

PREVENTION_RECOMMENDATIONS: dict[RootCauseCategory, tuple[str, ...]] = {
    RootCauseCategory.TEST_FAILURE: (
        "Ensure tests are run locally before pushing",
        "Consider adding pre-commit hooks",
    ),
    RootCauseCategory.BUILD_ERROR: (
        "Enable strict TypeScript checks",
        "Use IDE with real-time error detection",
    ),
    RootCauseCategory.POLICY_VIOLATION: (
        "Review policy rules before making changes",
        "Use pre-commit hooks for policy checks",
    ),
    RootCauseCategory.DEPENDENCY_ISSUE: (
        "Lock dependency versions",
        "Regularly update and test dependencies",
    ),
    RootCauseCategory.CONFIGURATION_ERROR: (
        "Document required environment variables",
        "Use configuration validation on startup",
    ),
}


def policy_violation_fix(violation: PolicyViolationInfo) -> PotentialFix:
    """Build the fix offered for a single policy violation."""
    return PotentialFix(
        description=f"Fix policy violation: {violation.rule} in {violation.file}",
        confidence=0.8,
        effort="small",
        risk="low",
        can_auto_patch=violation.rule not in NON_PATCHABLE_RULES,
        verification_commands=["npm run lint", "npm test"],
    )


def fixes_for(category: RootCauseCategory) -> list[PotentialFix]:
    """Static fixes for a non-policy category, unsorted."""
    fixes = [template.build() for template in FIX_TEMPLATES.get(category, DEFAULT_FIXES)]
    if category in TRANSIENT_CATEGORIES:
        fixes.append(RETRY_FIX.build())
    return fixes


def prevention_for(category: RootCauseCategory) -> list[str]:
    return list(PREVENTION_RECOMMENDATIONS.get(category, ()))
