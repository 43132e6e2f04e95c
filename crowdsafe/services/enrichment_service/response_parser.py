"""Parse reasoning-service output into an AIInsight.

Models sometimes ignore the raw-JSON instruction and wrap the object in a
markdown code fence; fences are stripped before parsing.

The stored insight equals the unwrapped object for canonical input.
Otherwise it is normalized: risk is upper-cased and keys other than
risk, summary and actions are dropped. Summary and action text are kept
exactly as the model wrote them.
"""
import json
import re

from crowdsafe.shared.models import AIInsight, RiskLevel

from .errors import InsightParseError

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_PATTERN.sub("", text).strip()


def parse_insight(text: str) -> AIInsight:
    """Parse ``{risk, summary, actions[]}``.

    Args:
        text: Raw response text, optionally code-fenced

    Returns:
        Parsed AIInsight

    Raises:
        InsightParseError: On invalid JSON, missing fields or unknown risk
    """
    cleaned = strip_code_fences(text or "")
    try:
        data = json.loads(cleaned)
    except ValueError as e:
        raise InsightParseError(f"Response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InsightParseError("Response is not a JSON object")

    risk = data.get("risk")
    summary = data.get("summary")
    actions = data.get("actions")

    if not isinstance(risk, str):
        raise InsightParseError("Missing risk")
    try:
        risk_level = RiskLevel(risk.strip().upper())
    except ValueError:
        raise InsightParseError(f"Unknown risk level: {risk}")

    if not isinstance(summary, str) or not summary.strip():
        raise InsightParseError("Missing summary")
    if not isinstance(actions, list) or not all(isinstance(a, str) for a in actions):
        raise InsightParseError("Actions must be a list of strings")

    return AIInsight(
        risk=risk_level,
        summary=summary,
        actions=tuple(actions),
    )
