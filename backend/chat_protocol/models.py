from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


SERVICE_TYPES = {"transport", "workshop"}
MESSAGE_ROLES = {"user", "assistant"}

CONFIRMATION_FALLBACK_TEXT = "He preparado tu solicitud. Por favor confirma los detalles abajo: 👇"


@dataclass(frozen=True)
class ConfirmationRecord:
    service_type: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> ConfirmationRecord | None:
        if not isinstance(payload, dict):
            return None
        service_type = payload.get("service_type")
        if not isinstance(service_type, str) or service_type not in SERVICE_TYPES:
            return None
        data = payload.get("data", {})
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return None
        return cls(service_type=service_type, data=dict(data))

    def as_dict(self) -> dict[str, Any]:
        return {"service_type": self.service_type, "data": dict(self.data)}


@dataclass
class ParsedMessage:
    clean_content: str
    options: list[str] | None = None
    confirmation: ConfirmationRecord | None = None
    request_location: bool = False


@dataclass(frozen=True)
class RawMessage:
    id: str
    role: str
    content: str
    created_at: datetime | str | None = None


@dataclass
class DisplayMessage:
    id: str
    role: str
    content: str
    timestamp: datetime | None = None
    options: list[str] | None = None
    raw_content: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "options": list(self.options) if self.options else None,
        }


@dataclass
class HistoryResult:
    transcript: list[DisplayMessage] = field(default_factory=list)
    last_confirmation: ConfirmationRecord | None = None
    last_confirmation_message_id: str | None = None
