"""Structured output schemas and JSON extraction for LLM responses."""

import json
import re
from typing import Any

from pydantic import BaseModel, Field

# ```json ... ``` or bare ``` ... ``` fences
_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def parse_json(raw_content: str) -> Any | None:
    """Parse model output as JSON, falling back to the first fenced block.

    Returns:
        Parsed value, or None if neither the raw text nor a fence is valid JSON
    """
    try:
        return json.loads(raw_content)
    except json.JSONDecodeError:
        pass

    match = _JSON_FENCE.search(raw_content)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            return None
    return None


class InsightFix(BaseModel):
    description: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class DiagnosisInsight(BaseModel):
    """Structured answer requested from the diagnoser role."""

    root_cause: str
    summary: str
    analysis: str = ""
    potential_fixes: list[InsightFix] = Field(default_factory=list)
