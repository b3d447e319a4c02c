"""JSON extraction and validation utilities for LLM responses."""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import jsonschema

from ..models.schemas import SuggestionPayload, TranslationPair

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^```(\w*)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)

SUGGESTIONS_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["target", "native"],
        "properties": {
            "target": {"type": "string"},
            "native": {"type": "string"},
        },
    },
}


class ParseFailure(Exception):
    """Custom exception for model output that does not match the expected structure."""
    pass


def extract_json_from_response(response: str) -> Optional[str]:
    """
    Extract a JSON object from an LLM response.

    A response wrapped entirely in a code fence is unwrapped; otherwise the
    substring between the first ``{`` and the last ``}`` is taken.

    Args:
        response: Raw LLM response text

    Returns:
        Extracted JSON string or None if not found
    """
    text = (response or "").strip()
    match = _FENCE_PATTERN.match(text)
    if match:
        text = match.group(2).strip()

    if text.startswith("{") and text.endswith("}"):
        return text

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start:end + 1]
    return None


def validate_with_schema(data: Any, schema: Dict[str, Any]) -> None:
    """
    Validate data against a JSON schema.

    Raises:
        ParseFailure: If validation fails
    """
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        raise ParseFailure(f"Schema validation failed: {e.message}")


def load_json_object(response: str) -> Dict[str, Any]:
    """
    Parse the JSON object contained in a response.

    Raises:
        ParseFailure: If no object can be found or decoded
    """
    json_str = extract_json_from_response(response)
    if not json_str:
        raise ParseFailure("No JSON found in response")
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ParseFailure("Expected a JSON object")
    return data


def _coerce_suggestions(raw: Any) -> List[TranslationPair]:
    """Validated suggestions, or an empty list when any entry is malformed."""
    if raw is None:
        return []
    try:
        validate_with_schema(raw, SUGGESTIONS_SCHEMA)
    except ParseFailure as e:
        logger.warning(f"Discarding malformed suggestions: {e}")
        return []
    return [TranslationPair(target=s["target"], native=s["native"]) for s in raw]


def parse_suggestion_payload(response: str, min_reengagement_seconds: int = 5) -> SuggestionPayload:
    """
    Parse the reply-suggestion call output.

    Undecodable output raises; a structurally wrong ``suggestions`` field only
    clears the suggestions. ``reengagementSeconds`` below the minimum and
    empty summaries are ignored.

    Raises:
        ParseFailure: If the response holds no decodable JSON object
    """
    data = load_json_object(response)

    seconds = data.get("reengagementSeconds")
    reengagement = None
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
        if seconds >= min_reengagement_seconds:
            reengagement = int(round(seconds))

    summary = data.get("chatSummary")
    summary = summary.strip() if isinstance(summary, str) and summary.strip() else None

    return SuggestionPayload(
        suggestions=_coerce_suggestions(data.get("suggestions")),
        reengagement_seconds=reengagement,
        chat_summary=summary,
    )
