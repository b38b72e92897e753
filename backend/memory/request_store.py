from __future__ import annotations

import json
import uuid
from typing import Any

from .database import SQLiteChatDB
from .time_utils import to_iso, utc_now

REQUEST_STATUSES = {"draft", "pending", "confirmed", "in_process", "completed", "cancelled"}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class RequestStore:
    def __init__(self, db: SQLiteChatDB) -> None:
        self._db = db

    def create_request(
        self,
        *,
        session_id: str,
        user_id: str,
        service_type: str,
        collected_data: dict[str, Any],
        source_message_id: str | None,
        status: str = "pending",
    ) -> dict[str, Any]:
        if status not in REQUEST_STATUSES:
            raise ValueError(f"Unsupported request status: {status}")
        now = to_iso(utc_now())
        request_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO service_requests (
                  id, session_id, user_id, service_type, status,
                  collected_data_json, source_message_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request_id,
                    session_id,
                    user_id,
                    service_type,
                    status,
                    _json_dumps(collected_data),
                    source_message_id,
                    now,
                    now,
                ),
            )
        return {
            "id": request_id,
            "session_id": session_id,
            "service_type": service_type,
            "status": status,
            "collected_data": collected_data,
            "source_message_id": source_message_id,
            "created_at": now,
            "updated_at": now,
        }

    def list_requests(self, *, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, session_id, service_type, status, collected_data_json,
                       source_message_id, created_at, updated_at
                FROM service_requests
                WHERE user_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "session_id": row["session_id"],
                "service_type": row["service_type"],
                "status": row["status"],
                "collected_data": json.loads(row["collected_data_json"]),
                "source_message_id": row["source_message_id"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            }
            for row in rows
        ]

    def resolved_message_ids(self, *, session_id: str, user_id: str) -> set[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT source_message_id
                FROM service_requests
                WHERE session_id = ? AND user_id = ? AND source_message_id IS NOT NULL
                """,
                (session_id, user_id),
            ).fetchall()
        return {row["source_message_id"] for row in rows}
