"""Helpers to pull the final artifact out of a download or status payload"""
import json
import re
from typing import Any, Optional

from loguru import logger

# Checked in priority order
CONTENT_FIELDS = ("content", "markdown", "report", "text", "data", "body", "result", "output")
READY_RESPONSE_FIELDS = ("content", "response_content", "message", "response")
MIN_HEURISTIC_LENGTH = 100

_SCRIPT = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_IFRAME = re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE)
_OBJECT = re.compile(r"<(object|embed)\b[^<]*(?:(?!</\1>)<[^<]*)*</\1>", re.IGNORECASE)
_JS_LINK = re.compile(r"\[([^\]]+)\]\(javascript:[^)]*\)", re.IGNORECASE)
_DATA_LINK = re.compile(r"\[([^\]]+)\]\(data:(?!image)[^)]*\)", re.IGNORECASE)


def _first_string_field(data: dict[str, Any], fields: tuple[str, ...]) -> Optional[str]:
    for field in fields:
        value = data.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def extract_from_object(data: Any) -> Optional[str]:
    """Find the payload string inside a decoded JSON response"""
    if isinstance(data, list):
        data = data[0] if data else None
    if not isinstance(data, dict):
        return None

    found = _first_string_field(data, CONTENT_FIELDS)
    if found is not None:
        return found

    nested = data.get("report")
    if isinstance(nested, dict):
        found = _first_string_field(nested, CONTENT_FIELDS)
        if found is not None:
            return found

    long_strings = [
        value for value in data.values() if isinstance(value, str) and len(value) > MIN_HEURISTIC_LENGTH
    ]
    if len(long_strings) == 1:
        return long_strings[0]

    logger.warning(f"Could not find content in JSON response. Fields: {list(data)}")
    return None


def extract_content(raw_text: str) -> str:
    """Return the artifact text from a download body that is either raw text or JSON"""
    stripped = raw_text.strip()
    if not stripped.startswith(("{", "[")):
        return raw_text
    try:
        data = json.loads(stripped)
    except ValueError:
        logger.debug("Response is not valid JSON, treating as plain text")
        return raw_text
    found = extract_from_object(data)
    return raw_text if found is None else found


def extract_ready_response(payload: dict[str, Any]) -> Optional[str]:
    """Inline answer carried by a status payload flagged response_ready"""
    return _first_string_field(payload, READY_RESPONSE_FIELDS)


def sanitize_markdown(content: str) -> str:
    content = _SCRIPT.sub("", content)
    content = _IFRAME.sub("", content)
    content = _OBJECT.sub("", content)
    content = _JS_LINK.sub(r"[\1](#)", content)
    content = _DATA_LINK.sub(r"[\1](#)", content)
    return content
