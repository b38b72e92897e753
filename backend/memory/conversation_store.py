from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from chat_protocol import RawMessage

from .database import SQLiteChatDB
from .time_utils import to_iso, utc_now


class ConversationStore:
    def __init__(self, db: SQLiteChatDB) -> None:
        self._db = db

    def append_message(
        self,
        *,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        created_at: datetime | None = None,
    ) -> RawMessage:
        message_id = uuid.uuid4().hex
        stamp = to_iso(created_at or utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, session_id, user_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message_id, session_id, user_id, role, content, stamp),
            )
        return RawMessage(id=message_id, role=role, content=content, created_at=stamp)

    def list_messages(self, *, session_id: str, user_id: str) -> list[RawMessage]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, role, content, created_at
                FROM messages
                WHERE session_id = ? AND user_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (session_id, user_id),
            ).fetchall()
        return [
            RawMessage(id=row["id"], role=row["role"], content=row["content"], created_at=row["created_at"])
            for row in rows
        ]

    def list_sessions(self, *, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT session_id, COUNT(*) AS message_count, MAX(created_at) AS last_message_at
                FROM messages
                WHERE user_id = ?
                GROUP BY session_id
                ORDER BY last_message_at DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        return [
            {
                "session_id": row["session_id"],
                "message_count": row["message_count"],
                "last_message_at": row["last_message_at"],
            }
            for row in rows
        ]
