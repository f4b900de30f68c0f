"""
JSON utilities for explorer source payloads.

Explorers return multi-file sources as JSON embedded in a string, sometimes
wrapped in an extra pair of braces (`{{ ... }}`) and sometimes followed by
trailing data. These helpers recover the first JSON object from such text.
"""
import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def strip_double_braces(text: str) -> str:
    """Drop the outer brace pair Etherscan adds around standard-json input."""
    text = text.strip()
    if text.startswith('{{') and text.endswith('}}'):
        return text[1:-1]
    return text


def extract_first_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} block in text, honouring string literals.

    Returns None if no balanced object is found.
    """
    brace_count = 0
    in_string = False
    escape_next = False
    start = text.find('{')
    if start < 0:
        return None

    for i in range(start, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == '\\':
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if not in_string:
            if char == '{':
                brace_count += 1
            elif char == '}':
                brace_count -= 1
                if brace_count == 0:
                    return text[start:i + 1]
    return None


def safe_json_parse(json_str: str, fallback: Any = None) -> Any:
    """
    Safely parse JSON string with fallback.

    Args:
        json_str: JSON string to parse
        fallback: Value returned when parsing fails

    Returns:
        Parsed JSON value or fallback
    """
    try:
        return json.loads(json_str)
    except (json.JSONDecodeError, TypeError) as e:
        logger.debug(f"JSON parse failed: {e}")
        return fallback


def parse_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse explorer source text as a JSON object.

    Tries the text with the double-brace wrapper removed, then as-is, then the
    first balanced object of each. Plain Solidity source yields None.
    """
    if not text or not isinstance(text, str):
        return None
    stripped = text.strip()
    if not stripped.startswith('{'):
        return None

    for candidate in (strip_double_braces(stripped), stripped):
        parsed = safe_json_parse(candidate)
        if isinstance(parsed, dict):
            return parsed
        first = extract_first_json_object(candidate)
        if first:
            parsed = safe_json_parse(first)
            if isinstance(parsed, dict):
                return parsed

    logger.debug("Source payload starts with '{' but is not a JSON object")
    return None
