from __future__ import annotations

import hashlib
import os
import random
import re
import string
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from chat_protocol import DisplayMessage, history_for_model
from log_config import setup_logging
from memory import ChatMemoryService, ConversationError, NoPendingConfirmation, SQLiteChatDB
from memory.time_utils import parse_iso, utc_now

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    candidates = [
        repo_root / ".env",
        repo_root / "backend/.env",
    ]
    for candidate in candidates:
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()
setup_logging(
    level=os.getenv("DEDOCTOR_LOG_LEVEL", "INFO"),
    log_file=(os.getenv("DEDOCTOR_LOG_FILE") or "").strip() or None,
)

GREETING_OPTIONS = ["Transporte 🚌", "Mantención 🔧"]
_EMPTY_REPLY_TEXT = "Lo siento, no pude procesar tu solicitud."
_NO_COMPLETION_TEXT = "Lo siento, no pude generar una respuesta."
_QUOTA_REPLY_TEXT = "Lo siento, hemos alcanzado el límite de la API. Por favor intenta en unos minutos."
_CONNECTION_ERROR_TEXT = "Lo siento, hubo un error de conexión con el servidor."

_GEMINI_API_BASE = os.getenv(
    "GEMINI_API_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
).rstrip("/")

_DEFAULT_SYSTEM_PROMPT = """Eres DD Chatbot, el asistente virtual de Dedoctor (Transporte y Taller para Sillas de Ruedas).
Operas en Iquique y Alto Hospicio, Chile. Moneda: CLP. Sé cordial y pide los datos uno por uno.

- Transporte: origen, destino, fecha, hora y pasajeros.
- Taller: tipo de problema, modelo de la silla, dirección y teléfono de contacto.

Cuando tengas todos los datos, termina tu mensaje con este bloque exacto, sin explicarlo:
[CONFIRM_READY: {"service_type": "transport", "data": {"origen": "...", "destino": "...", "fecha": "...", "hora": "...", "pasajeros": "..."}}]
o bien
[CONFIRM_READY: {"service_type": "workshop", "data": {"tipo_problema": "...", "modelo_silla": "...", "direccion": "...", "telefono": "..."}}]

Sugiere respuestas con: [QUICK_REPLIES: ["Transporte 🚌", "Taller 🔧"]]
Si necesitas la ubicación actual del usuario, agrega [REQUEST_LOCATION]."""


def _history_turns() -> int:
    try:
        return max(0, int(os.getenv("DEDOCTOR_HISTORY_TURNS", "10")))
    except ValueError:
        return 10


def _system_prompt() -> str:
    return (os.getenv("DEDOCTOR_SYSTEM_PROMPT") or "").strip() or _DEFAULT_SYSTEM_PROMPT


def _new_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def _greeting_message(user_name: str | None) -> DisplayMessage:
    name = (user_name or "").strip() or "Usuario"
    return DisplayMessage(
        id=f"greeting_{hashlib.sha1(name.encode('utf-8')).hexdigest()[:12]}",
        role="assistant",
        content=(
            f"¡Hola {name}! 👋 Bienvenido a Dedoctor. ¿En qué podemos ayudarte hoy?\n\n"
            "- Solicitar Transporte 🚌\n"
            "- Mantención de Silla o Ayuda Técnica 🔧"
        ),
        timestamp=utc_now(),
        options=list(GREETING_OPTIONS),
    )


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    session_id: str


class ConfirmRequest(BaseModel):
    additional_data: dict[str, Any] = Field(default_factory=dict)


class DedoctorApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "DEDOCTOR_DB_PATH",
            str((Path(__file__).resolve().parent / "dedoctor.sqlite")),
        )
        self.db = SQLiteChatDB(db_path)
        self.memory = ChatMemoryService(self.db)


container = DedoctorApp()
app = FastAPI(title="Dedoctor Chat Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Opaque token; identity is only as good as the upstream that issued it.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        if isinstance(err, str) and err.strip():
            return err.strip()
    return message or f"HTTP {response.status_code}"


def _is_quota_error(message: str) -> bool:
    return "quota" in message.lower() or "RESOURCE_EXHAUSTED" in message


def _coerce_gemini_text(response_json: dict[str, Any]) -> str:
    candidates = response_json.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    texts = [part.get("text") for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
    return "".join(texts)


def _gemini_contents(system_prompt: str, history: list[dict[str, str]], prompt: str) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = [
        {"role": "user", "parts": [{"text": system_prompt}]},
        {"role": "model", "parts": [{"text": "Entendido. Soy DD Chatbot y estoy listo para ayudar."}]},
    ]
    for turn in history:
        role = "user" if turn.get("role") == "user" else "model"
        contents.append({"role": role, "parts": [{"text": turn.get("content", "")}]})
    contents.append({"role": "user", "parts": [{"text": prompt}]})
    return contents


def _gemini_chat(
    *,
    api_key: str,
    model: str,
    contents: list[dict[str, Any]],
    timeout_seconds: float,
) -> str | None:
    with httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=8.0)) as client:
        response = client.post(
            f"{_GEMINI_API_BASE}/models/{model}:generateContent",
            params={"key": api_key},
            json={"contents": contents},
        )
    if response.status_code >= 400:
        raise RuntimeError(_provider_error_message(response))
    text = _coerce_gemini_text(response.json()).strip()
    return text or None


def _llm_chat_reply(*, message: str, history: list[dict[str, str]]) -> str:
    """Return the raw completion for ``message``, tags included.

    Provider failures never escape: they become a canned Spanish reply.
    """
    api_key = (os.getenv("GEMINI_API_KEY") or "").strip()
    if not api_key:
        logger.error("chat llm unavailable: GEMINI_API_KEY is not configured")
        return _CONNECTION_ERROR_TEXT

    model = (os.getenv("GEMINI_MODEL") or "gemini-2.0-flash-exp").strip()
    timeout_seconds = float(os.getenv("DEDOCTOR_CHAT_TIMEOUT_SECONDS", "25"))
    contents = _gemini_contents(_system_prompt(), history, message)
    try:
        text = _gemini_chat(api_key=api_key, model=model, contents=contents, timeout_seconds=timeout_seconds)
    except RuntimeError as exc:
        logger.error("chat llm call failed ({}): {}", model, exc)
        if _is_quota_error(str(exc)):
            return _QUOTA_REPLY_TEXT
        return _CONNECTION_ERROR_TEXT
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("chat llm transport error ({}): {}", model, exc)
        return _CONNECTION_ERROR_TEXT
    if not text:
        logger.warning("chat llm returned an empty completion ({})", model)
        return _NO_COMPLETION_TEXT
    return text


def _with_empty_reply_text(message: DisplayMessage) -> DisplayMessage:
    # Tag-only assistant turns read the same live and after a reload.
    if message.role == "assistant" and not message.content:
        return replace(message, content=_EMPTY_REPLY_TEXT)
    return message


def _message_payload(message_id: str, role: str, content: str, created_at: Any) -> dict[str, Any]:
    stamp = parse_iso(created_at) if isinstance(created_at, str) else created_at
    return DisplayMessage(id=message_id, role=role, content=content, timestamp=stamp).as_dict()


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "ok": True,
        "db_path": container.db.path,
        "llm_configured": bool((os.getenv("GEMINI_API_KEY") or "").strip()),
    }


@app.post("/sessions")
def create_session(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    resolve_user_id(authorization, x_user_id)
    return {"session_id": _new_session_id()}


@app.get("/sessions")
def list_sessions(
    limit: int = 20,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"items": container.memory.conversation.list_sessions(user_id=user_id, limit=limit)}


@app.get("/sessions/{session_id}/messages")
def get_session_messages(
    session_id: str,
    user_name: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        state = container.memory.load_session(session_id=session_id, user_id=user_id)
    except ConversationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    messages = [_with_empty_reply_text(message).as_dict() for message in state.history.transcript]
    if not messages:
        messages = [_greeting_message(user_name).as_dict()]
    pending = state.pending_confirmation
    return {
        "session_id": session_id,
        "messages": messages,
        "pending_confirmation": pending.as_dict() if pending else None,
    }


@app.post("/chat")
def chat(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        state = container.memory.load_session(session_id=payload.session_id, user_id=user_id)
        user_message = container.memory.append_user_message(
            session_id=payload.session_id,
            user_id=user_id,
            text=payload.message,
        )
    except ConversationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    history = history_for_model(state.history.transcript, _history_turns())
    raw_reply = _llm_chat_reply(message=user_message.content, history=history)
    assistant_message, parsed = container.memory.append_assistant_message(
        session_id=payload.session_id,
        user_id=user_id,
        raw_text=raw_reply,
    )
    display = _with_empty_reply_text(
        DisplayMessage(
            id=assistant_message.id,
            role="assistant",
            content=parsed.clean_content,
            timestamp=parse_iso(str(assistant_message.created_at)),
            options=parsed.options,
            raw_content=raw_reply,
        )
    )
    return {
        "session_id": payload.session_id,
        "user_message": _message_payload(
            user_message.id, user_message.role, user_message.content, user_message.created_at
        ),
        "message": display.as_dict(),
        "confirmation": parsed.confirmation.as_dict() if parsed.confirmation else None,
        "request_location": parsed.request_location,
    }


@app.post("/sessions/{session_id}/confirm")
def confirm_session_request(
    session_id: str,
    payload: ConfirmRequest | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    additional_data = payload.additional_data if payload else {}
    try:
        result = container.memory.confirm_pending(
            session_id=session_id,
            user_id=user_id,
            additional_data=additional_data,
        )
    except NoPendingConfirmation as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ConversationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    message = result["message"]
    return {
        "request": result["request"],
        "message": _message_payload(message.id, message.role, message.content, message.created_at),
    }


@app.get("/requests")
def list_requests(
    limit: int = 20,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return {"items": container.memory.requests.list_requests(user_id=user_id, limit=limit)}
