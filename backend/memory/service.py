from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any

from loguru import logger

from chat_protocol import ConfirmationRecord, HistoryResult, ParsedMessage, RawMessage, extract, reconstruct

from .conversation_store import ConversationStore
from .database import SQLiteChatDB
from .request_store import RequestStore
from .session_guard import NoPendingConfirmation, SessionGuard

REQUEST_RECEIVED_TEXT = (
    "✅ ¡Solicitud recibida! Tu pedido ha sido enviado y está pendiente de confirmación por el administrador."
)


@dataclass
class SessionState:
    history: HistoryResult
    pending_confirmation: ConfirmationRecord | None = None
    pending_message_id: str | None = None


class ChatMemoryService:
    def __init__(self, db: SQLiteChatDB) -> None:
        self.db = db
        self.guard = SessionGuard()
        self.conversation = ConversationStore(db)
        self.requests = RequestStore(db)

    def load_session(self, *, session_id: str, user_id: str) -> SessionState:
        """Reconstruct a session and work out which confirmation is still open.

        The latest confirmation in the transcript stays pending until a
        service request references the message that carried it.
        """
        self.guard.ensure_session_scope(session_id)
        raw_messages = self.conversation.list_messages(session_id=session_id, user_id=user_id)
        history = reconstruct(raw_messages)
        pending = history.last_confirmation
        pending_id = history.last_confirmation_message_id
        if pending_id and pending_id in self.requests.resolved_message_ids(session_id=session_id, user_id=user_id):
            pending, pending_id = None, None
        return SessionState(history=history, pending_confirmation=pending, pending_message_id=pending_id)

    def append_user_message(self, *, session_id: str, user_id: str, text: str) -> RawMessage:
        self.guard.ensure_session_scope(session_id)
        cleaned = self.guard.normalize_user_text(text)
        return self.conversation.append_message(
            session_id=session_id,
            user_id=user_id,
            role="user",
            content=cleaned,
        )

    def append_assistant_message(
        self,
        *,
        session_id: str,
        user_id: str,
        raw_text: str,
    ) -> tuple[RawMessage, ParsedMessage]:
        # The raw completion is stored so later reloads can re-derive everything.
        self.guard.ensure_session_scope(session_id)
        message = self.conversation.append_message(
            session_id=session_id,
            user_id=user_id,
            role="assistant",
            content=raw_text,
        )
        return message, extract(raw_text)

    def confirm_pending(
        self,
        *,
        session_id: str,
        user_id: str,
        additional_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        state = self.load_session(session_id=session_id, user_id=user_id)
        confirmation = state.pending_confirmation
        if confirmation is None:
            raise NoPendingConfirmation("No confirmation is pending for this session.")
        final_data = {**confirmation.data, **(additional_data or {})}
        try:
            request = self.requests.create_request(
                session_id=session_id,
                user_id=user_id,
                service_type=confirmation.service_type,
                collected_data=final_data,
                source_message_id=state.pending_message_id,
            )
        except sqlite3.IntegrityError as exc:
            # A concurrent confirm already turned this message into a request.
            raise NoPendingConfirmation("No confirmation is pending for this session.") from exc
        message = self.conversation.append_message(
            session_id=session_id,
            user_id=user_id,
            role="assistant",
            content=REQUEST_RECEIVED_TEXT,
        )
        logger.info(
            "Service request {} created for session {} ({})",
            request["id"],
            session_id,
            confirmation.service_type,
        )
        return {"request": request, "message": message}
