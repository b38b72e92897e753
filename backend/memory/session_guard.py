from __future__ import annotations

import re


class ConversationError(Exception):
    pass


class NoPendingConfirmation(ConversationError):
    pass


class SessionGuard:
    _SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
    _MAX_MESSAGE_CHARS = 8000

    def ensure_session_scope(self, session_id: str) -> None:
        if not session_id or not self._SESSION_ID_RE.fullmatch(session_id):
            raise ConversationError("Invalid session scope.")

    def normalize_user_text(self, text: str) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ConversationError("Message cannot be empty.")
        if len(cleaned) > self._MAX_MESSAGE_CHARS:
            raise ConversationError("Message is too long.")
        return cleaned
