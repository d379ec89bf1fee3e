"""Helpers for working with raw LLM replies."""

import json
import logging

logger = logging.getLogger(__name__)


def parse_llm_json_response(raw_text: str) -> dict:
    """Parse JSON from LLM response, handling markdown code fences.

    LLMs sometimes wrap JSON in ```json ... ``` fences despite being
    told not to. This function strips those fences before parsing.

    Args:
        raw_text: Raw text from LLM response

    Returns:
        Parsed dict from JSON

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
        ValueError: If the JSON is not an object
    """
    content = raw_text.strip()

    # Strip leading markdown fence (```json or ```)
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]

    # Strip trailing fence
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]

    content = content.strip()
    parsed = json.loads(content)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def strip_markdown_fence(raw_text: str) -> str:
    """Remove a wrapping ```markdown fence from a prose reply, if present."""
    content = raw_text.strip()
    if content.startswith("```") and content.endswith("```") and "\n" in content:
        content = content.split("\n", 1)[1].rsplit("```", 1)[0]
    return content.strip()
