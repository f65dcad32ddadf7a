"""Tolerant JSON extraction for judge responses.

Judges are asked for bare JSON but frequently wrap it in markdown fences,
prepend a sentence of prose, or append trailing commentary. These helpers
recover the first well-formed JSON value of the expected shape.
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_TRAILING_COMMA_PATTERN = re.compile(r",\s*([\]}])")


def _strip_fences(text: str) -> str:
    return _FENCE_PATTERN.sub("", text.strip()).strip()


def parse_json_safely(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Parse JSON from text, handling common LLM formatting issues.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Leading prose before the JSON value
    - Trailing text after the JSON value
    - Trailing commas before a closing bracket or brace

    Args:
        text: The text containing JSON

    Returns:
        Parsed JSON object/array or None if nothing parseable was found
    """
    if not text:
        return None

    cleaned_text = _strip_fences(text)

    try:
        return json.loads(cleaned_text)
    except json.JSONDecodeError as e:
        LOGGER.debug(f"Initial JSON parse failed: {e}, scanning for embedded value")

    candidates = [cleaned_text]
    repaired_text = _TRAILING_COMMA_PATTERN.sub(r"\1", cleaned_text)
    if repaired_text != cleaned_text:
        candidates.insert(0, repaired_text)

    decoder = json.JSONDecoder()
    for candidate in candidates:
        for idx, char in enumerate(candidate):
            if char not in "{[":
                continue
            try:
                value, _ = decoder.raw_decode(candidate, idx)
                return value
            except json.JSONDecodeError:
                continue

    LOGGER.warning(
        "Failed to parse JSON from judge response",
        extra={"response_preview": cleaned_text[:200]},
    )
    return None

    cleaned_text = _strip_fences(text)

    try:
        return json.loads(cleaned_text)
    except json.JSONDecodeError as e:
        LOGGER.debug(f"Initial JSON parse failed: {e}, scanning for embedded value")

    decoder = json.JSONDecoder()
    for idx, char in enumerate(cleaned_text):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(cleaned_text, idx)
            return value
        except json.JSONDecodeError:
            continue

    LOGGER.warning(
        "Failed to parse JSON from judge response",
        extra={"response_preview": cleaned_text[:200]},
    )
    return None


def extract_json_array(text: str) -> Optional[List[Any]]:
    """Return the first JSON array in ``text``.

    An object wrapping a single list value (``{"results": [...]}``) is
    unwrapped, since several providers insist on a top-level object.
    """
    parsed = parse_json_safely(text)
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        list_values = [v for v in parsed.values() if isinstance(v, list)]
        if len(list_values) == 1:
            return list_values[0]
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first JSON object in ``text``."""
    parsed = parse_json_safely(text)
    if isinstance(parsed, dict):
        return parsed
    return None
