from .database import SQLiteChatDB
from .service import REQUEST_RECEIVED_TEXT, ChatMemoryService, SessionState
from .session_guard import ConversationError, NoPendingConfirmation, SessionGuard

__all__ = [
    "REQUEST_RECEIVED_TEXT",
    "SQLiteChatDB",
    "ChatMemoryService",
    "ConversationError",
    "NoPendingConfirmation",
    "SessionGuard",
    "SessionState",
]
