from __future__ import annotations

import re

SESSION = "session_1700000000000_abc123xyz"


class ScriptedReplies:
    """Stands in for the completion provider and records what it was sent."""

    def __init__(self, *replies: str) -> None:
        self._replies = list(replies)
        self.calls: list[dict] = []

    def __call__(self, *, message: str, history: list[dict[str, str]]) -> str:
        self.calls.append({"message": message, "history": history})
        return self._replies.pop(0)


def _chat(client, headers, message: str, session_id: str = SESSION):
    return client.post("/chat", headers=headers, json={"message": message, "session_id": session_id})


def test_empty_session_returns_greeting(client, auth_headers):
    response = client.get(f"/sessions/{SESSION}/messages", headers=auth_headers("user-a"), params={"user_name": "Ana"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["pending_confirmation"] is None
    assert len(payload["messages"]) == 1
    greeting = payload["messages"][0]
    assert greeting["role"] == "assistant"
    assert greeting["content"].startswith("¡Hola Ana!")
    assert greeting["options"] == ["Transporte 🚌", "Mantención 🔧"]


def test_new_session_id_shape(client, auth_headers):
    response = client.post("/sessions", headers=auth_headers("user-a"))
    assert response.status_code == 200
    assert re.fullmatch(r"session_\d+_[a-z0-9]{9}", response.json()["session_id"])


def test_chat_turn_returns_clean_message_with_quick_replies(client, auth_headers, backend_module, monkeypatch):
    replies = ScriptedReplies('¿Desde dónde necesitas el traslado? [QUICK_REPLIES: ["Iquique", "Alto Hospicio"]]')
    monkeypatch.setattr(backend_module, "_llm_chat_reply", replies)

    response = _chat(client, auth_headers("user-a"), "Necesito transporte")
    assert response.status_code == 200
    payload = response.json()
    assert payload["message"]["content"] == "¿Desde dónde necesitas el traslado?"
    assert payload["message"]["options"] == ["Iquique", "Alto Hospicio"]
    assert payload["confirmation"] is None
    assert payload["request_location"] is False
    assert payload["user_message"]["content"] == "Necesito transporte"
    assert replies.calls[0]["message"] == "Necesito transporte"
    assert replies.calls[0]["history"] == []

    with backend_module.container.db.connection() as conn:
        stored = conn.execute(
            "SELECT content FROM messages WHERE role = 'assistant' AND session_id = ?",
            (SESSION,),
        ).fetchone()
    assert "[QUICK_REPLIES:" in stored["content"]


def test_history_sent_to_provider_is_clean(client, auth_headers, backend_module, monkeypatch):
    replies = ScriptedReplies(
        '¿Qué servicio? [QUICK_REPLIES: ["Transporte 🚌"]]',
        "¿Desde dónde? [REQUEST_LOCATION]",
    )
    monkeypatch.setattr(backend_module, "_llm_chat_reply", replies)

    _chat(client, auth_headers("user-a"), "Hola")
    response = _chat(client, auth_headers("user-a"), "Transporte 🚌")
    assert response.json()["request_location"] is True
    assert response.json()["message"]["content"] == "¿Desde dónde?"
    assert replies.calls[1]["history"] == [
        {"role": "user", "content": "Hola"},
        {"role": "assistant", "content": "¿Qué servicio?"},
    ]


def test_reply_that_is_only_tags_gets_apology_text(client, auth_headers, backend_module, monkeypatch):
    monkeypatch.setattr(backend_module, "_llm_chat_reply", ScriptedReplies("[REQUEST_LOCATION]"))
    payload = _chat(client, auth_headers("user-a"), "Hola").json()
    assert payload["message"]["content"] == "Lo siento, no pude procesar tu solicitud."
    assert payload["request_location"] is True

    reloaded = client.get(f"/sessions/{SESSION}/messages", headers=auth_headers("user-a")).json()
    assert reloaded["messages"][-1]["role"] == "assistant"
    assert reloaded["messages"][-1]["content"] == "Lo siento, no pude procesar tu solicitud."


def test_confirmation_survives_reload_and_can_be_confirmed_once(client, auth_headers, backend_module, monkeypatch):
    confirm_reply = (
        "¡Excelente! [CONFIRM_READY: ```json\n"
        '{"service_type": "transport", "data": {"origen": "Iquique", "destino": "Hospital", "pasajeros": "1"}}'
        "\n```]"
    )
    monkeypatch.setattr(backend_module, "_llm_chat_reply", ScriptedReplies(confirm_reply))
    headers = auth_headers("user-a")

    chat_payload = _chat(client, headers, "Somos 1 pasajero").json()
    assert chat_payload["message"]["content"] == "¡Excelente!"
    assert chat_payload["confirmation"] == {
        "service_type": "transport",
        "data": {"origen": "Iquique", "destino": "Hospital", "pasajeros": "1"},
    }

    reloaded = client.get(f"/sessions/{SESSION}/messages", headers=headers).json()
    assert [m["content"] for m in reloaded["messages"]] == ["Somos 1 pasajero", "¡Excelente!"]
    assert reloaded["pending_confirmation"]["service_type"] == "transport"

    confirm = client.post(
        f"/sessions/{SESSION}/confirm",
        headers=headers,
        json={"additional_data": {"hora": "09:30"}},
    )
    assert confirm.status_code == 200
    confirm_payload = confirm.json()
    assert confirm_payload["request"]["status"] == "pending"
    assert confirm_payload["request"]["collected_data"]["hora"] == "09:30"
    assert confirm_payload["message"]["content"].startswith("✅ ¡Solicitud recibida!")

    after = client.get(f"/sessions/{SESSION}/messages", headers=headers).json()
    assert after["pending_confirmation"] is None
    assert after["messages"][-1]["content"].startswith("✅")

    again = client.post(f"/sessions/{SESSION}/confirm", headers=headers)
    assert again.status_code == 409

    requests = client.get("/requests", headers=headers).json()["items"]
    assert len(requests) == 1
    assert requests[0]["service_type"] == "transport"
    assert client.get("/requests", headers=auth_headers("user-b")).json()["items"] == []


def test_deeply_nested_user_message_does_not_break_session(client, auth_headers, backend_module, monkeypatch):
    replies = ScriptedReplies("Recibido", "Sigo aquí")
    monkeypatch.setattr(backend_module, "_llm_chat_reply", replies)
    headers = auth_headers("user-a")
    hostile = "[QUICK_REPLIES: " + "[" * 3900 + "]" * 3900 + "]"

    assert _chat(client, headers, hostile).status_code == 200

    reloaded = client.get(f"/sessions/{SESSION}/messages", headers=headers)
    assert reloaded.status_code == 200
    messages = reloaded.json()["messages"]
    assert messages[0]["content"] == hostile
    assert messages[0]["options"] is None

    follow_up = _chat(client, headers, "Hola")
    assert follow_up.status_code == 200
    assert follow_up.json()["message"]["content"] == "Sigo aquí"


def test_sessions_listing(client, auth_headers, backend_module, monkeypatch):
    monkeypatch.setattr(backend_module, "_llm_chat_reply", ScriptedReplies("Hola"))
    _chat(client, auth_headers("user-a"), "Hola")
    items = client.get("/sessions", headers=auth_headers("user-a")).json()["items"]
    assert items == [
        {"session_id": SESSION, "message_count": 2, "last_message_at": items[0]["last_message_at"]}
    ]


def test_chat_without_provider_key_degrades_to_canned_reply(client, auth_headers):
    response = _chat(client, auth_headers("user-a"), "Hola")
    assert response.status_code == 200
    assert response.json()["message"]["content"] == "Lo siento, hubo un error de conexión con el servidor."


def test_invalid_session_and_blank_message_are_bad_requests(client, auth_headers):
    assert _chat(client, auth_headers("user-a"), "Hola", session_id="bad session").status_code == 400
    assert _chat(client, auth_headers("user-a"), "   ").status_code == 400


def test_missing_authorization_is_rejected(client):
    response = client.post("/chat", json={"message": "Hola", "session_id": SESSION})
    assert response.status_code == 401


def test_health_reports_provider_configuration(client):
    payload = client.get("/health").json()
    assert payload["ok"] is True
    assert payload["llm_configured"] is False
