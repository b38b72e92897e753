from .directives import extract, strip_code_fence
from .history import history_for_model, reconstruct
from .models import (
    CONFIRMATION_FALLBACK_TEXT,
    MESSAGE_ROLES,
    SERVICE_TYPES,
    ConfirmationRecord,
    DisplayMessage,
    HistoryResult,
    ParsedMessage,
    RawMessage,
)
from .timestamps import parse_iso

__all__ = [
    "CONFIRMATION_FALLBACK_TEXT",
    "MESSAGE_ROLES",
    "SERVICE_TYPES",
    "ConfirmationRecord",
    "DisplayMessage",
    "HistoryResult",
    "ParsedMessage",
    "RawMessage",
    "extract",
    "history_for_model",
    "parse_iso",
    "reconstruct",
    "strip_code_fence",
]
