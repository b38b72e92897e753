"""Extraction of the control tags the assistant embeds in its replies.

Three tags are recognised anywhere in a completion, case-sensitively:

``[QUICK_REPLIES: ["a", "b"]]``
    Suggested answers shown as buttons under the message.
``[CONFIRM_READY: {"service_type": ..., "data": {...}}]``
    Booking summary ready for the user's approval. The object may arrive
    wrapped in a ```` ```json ```` fence.
``[REQUEST_LOCATION]``
    Ask the client to offer a "share my location" button.

:func:`extract` never raises. A tag whose payload cannot be decoded is left
in the text untouched and the matching field stays ``None``.
"""

from __future__ import annotations

import json
import re

from loguru import logger

from .models import CONFIRMATION_FALLBACK_TEXT, ConfirmationRecord, ParsedMessage

QUICK_REPLIES_TAG = "[QUICK_REPLIES:"
CONFIRM_READY_TAG = "[CONFIRM_READY:"
REQUEST_LOCATION_TAG = "[REQUEST_LOCATION]"

_FENCE = "```"
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"```$")
_MAX_NESTING = 32


def strip_code_fence(text: str) -> str:
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned, count=1).strip()
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned, count=1).strip()
    return cleaned


def _skip_whitespace(text: str, idx: int) -> int:
    while idx < len(text) and text[idx].isspace():
        idx += 1
    return idx


def _balanced_end(text: str, start: int, open_char: str, close_char: str) -> int | None:
    """Index just past the delimiter that closes ``text[start]``.

    Delimiters inside JSON string literals do not count towards the depth.
    Values nested deeper than ``_MAX_NESTING`` arrays or objects are treated
    as unclosed.
    """
    depth = 0
    nesting = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            continue
        if char in "[{":
            nesting += 1
            if nesting > _MAX_NESTING:
                return None
        elif char in "]}":
            nesting -= 1
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return idx + 1
    return None


def _find_tag(
    text: str,
    tag: str,
    open_char: str,
    close_char: str,
    *,
    allow_fence: bool = False,
) -> tuple[int, int, str] | None:
    """Locate the first well-delimited ``tag`` and return ``(start, end, payload)``.

    ``payload`` is everything between the tag name and its closing bracket,
    fences included.
    """
    search_from = 0
    while True:
        start = text.find(tag, search_from)
        if start < 0:
            return None
        search_from = start + 1
        payload_start = start + len(tag)
        idx = _skip_whitespace(text, payload_start)
        if allow_fence and text.startswith(_FENCE, idx):
            idx += len(_FENCE)
            if text[idx : idx + 4].lower() == "json":
                idx += 4
            idx = _skip_whitespace(text, idx)
        if idx >= len(text) or text[idx] != open_char:
            continue
        value_end = _balanced_end(text, idx, open_char, close_char)
        if value_end is None:
            continue
        idx = _skip_whitespace(text, value_end)
        if allow_fence and text.startswith(_FENCE, idx):
            idx = _skip_whitespace(text, idx + len(_FENCE))
        if idx < len(text) and text[idx] == "]":
            return start, idx + 1, text[payload_start:idx]


def _remove_span(text: str, start: int, end: int) -> str:
    return (text[:start] + text[end:]).strip()


def _parse_quick_replies(payload: str) -> list[str] | None:
    try:
        value = json.loads(payload)
    except (ValueError, RecursionError) as exc:
        logger.warning("Ignoring malformed QUICK_REPLIES payload: {}", exc)
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        logger.warning("Ignoring QUICK_REPLIES payload that is not a list of strings: {!r}", payload[:200])
        return None
    return value


def _parse_confirmation(payload: str) -> ConfirmationRecord | None:
    try:
        value = json.loads(strip_code_fence(payload))
    except (ValueError, RecursionError) as exc:
        logger.warning("Ignoring malformed CONFIRM_READY payload: {}", exc)
        return None
    record = ConfirmationRecord.from_payload(value)
    if record is None:
        logger.warning("Ignoring CONFIRM_READY payload with unexpected shape: {!r}", payload[:200])
    return record


def extract(raw: str) -> ParsedMessage:
    text = raw or ""
    options: list[str] | None = None
    confirmation: ConfirmationRecord | None = None
    request_location = False

    # Quick replies go first so a confirmation in the same message can drop them.
    match = _find_tag(text, QUICK_REPLIES_TAG, "[", "]")
    if match is not None:
        start, end, payload = match
        parsed = _parse_quick_replies(payload.strip())
        if parsed is not None:
            options = parsed or None
            text = _remove_span(text, start, end)
    elif QUICK_REPLIES_TAG in text:
        logger.warning("QUICK_REPLIES tag without a closed JSON array left in message")

    match = _find_tag(text, CONFIRM_READY_TAG, "{", "}", allow_fence=True)
    if match is not None:
        start, end, payload = match
        confirmation = _parse_confirmation(payload)
        if confirmation is not None:
            options = None
            text = _remove_span(text, start, end)
    elif CONFIRM_READY_TAG in text:
        logger.warning("CONFIRM_READY tag without a closed JSON object left in message")

    if REQUEST_LOCATION_TAG in text:
        request_location = True
        text = text.replace(REQUEST_LOCATION_TAG, "")

    text = text.strip()
    if confirmation is not None and not text:
        text = CONFIRMATION_FALLBACK_TEXT

    return ParsedMessage(
        clean_content=text,
        options=options,
        confirmation=confirmation,
        request_location=request_location,
    )
