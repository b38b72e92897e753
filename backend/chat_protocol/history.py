from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping

from loguru import logger

from .directives import extract
from .models import MESSAGE_ROLES, ConfirmationRecord, DisplayMessage, HistoryResult, RawMessage
from .timestamps import parse_iso


def _field(record: Any, name: str) -> Any:
    if isinstance(record, RawMessage):
        return getattr(record, name)
    if isinstance(record, Mapping):
        return record.get(name)
    try:
        # sqlite3.Row supports item access but is not a Mapping
        return record[name]
    except (KeyError, IndexError, TypeError):
        return getattr(record, name, None)


def _coerce_timestamp(value: Any, message_id: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = parse_iso(str(value))
    if parsed is None:
        logger.warning("Unparsable created_at {!r} on message {}", value, message_id)
    return parsed


def reconstruct(raw_messages: Iterable[Any]) -> HistoryResult:
    """Rebuild a display transcript from stored raw messages, oldest first.

    Every message goes through :func:`extract`. The confirmation carried by
    the latest message that has one is returned as ``last_confirmation``;
    earlier ones are superseded.
    """
    transcript: list[DisplayMessage] = []
    last_confirmation: ConfirmationRecord | None = None
    last_confirmation_message_id: str | None = None

    for record in raw_messages:
        message_id = str(_field(record, "id") or "")
        content = _field(record, "content")
        raw_content = content if isinstance(content, str) else ""
        parsed = extract(raw_content)
        if parsed.confirmation is not None:
            last_confirmation = parsed.confirmation
            last_confirmation_message_id = message_id
        transcript.append(
            DisplayMessage(
                id=message_id,
                role=str(_field(record, "role") or ""),
                content=parsed.clean_content,
                timestamp=_coerce_timestamp(_field(record, "created_at"), message_id),
                options=parsed.options,
                raw_content=raw_content,
            )
        )

    return HistoryResult(
        transcript=transcript,
        last_confirmation=last_confirmation,
        last_confirmation_message_id=last_confirmation_message_id,
    )


def history_for_model(transcript: list[DisplayMessage], limit: int) -> list[dict[str, str]]:
    if limit <= 0:
        return []
    return [
        {"role": message.role, "content": message.content}
        for message in transcript[-limit:]
        if message.role in MESSAGE_ROLES and message.content
    ]
