from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteChatDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL,
                  user_id TEXT NOT NULL,
                  role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                  content TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS service_requests (
                  id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL,
                  user_id TEXT NOT NULL,
                  service_type TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending',
                  collected_data_json TEXT NOT NULL,
                  source_message_id TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_messages_session_created
                  ON messages(session_id, user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_service_requests_user_created
                  ON service_requests(user_id, created_at DESC);
                DROP INDEX IF EXISTS idx_service_requests_session;
                -- One request per confirmation message.
                CREATE UNIQUE INDEX IF NOT EXISTS idx_service_requests_source_message
                  ON service_requests(session_id, source_message_id);
                """
            )
