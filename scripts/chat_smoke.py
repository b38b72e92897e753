#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Turn:
  user_text: str
  scripted_reply: str
  expect_options: bool = False
  expect_confirmation: bool = False
  expect_location: bool = False


SCRIPT = [
  Turn(
    user_text="Hola",
    scripted_reply='¡Hola! ¿Qué servicio necesitas? [QUICK_REPLIES: ["Transporte 🚌", "Taller 🔧"]]',
    expect_options=True,
  ),
  Turn(
    user_text="Transporte 🚌",
    scripted_reply="¡Con gusto! ¿Desde dónde necesitas el traslado? [REQUEST_LOCATION]",
    expect_location=True,
  ),
  Turn(
    user_text="Desde Av. Arturo Prat 1200, Iquique, hacia el Hospital Regional, mañana 9:00, 1 pasajero",
    scripted_reply=(
      "Excelente elección ✨ [CONFIRM_READY: ```json\n"
      '{"service_type": "transport", "data": {"origen": "Av. Arturo Prat 1200", '
      '"destino": "Hospital Regional", "fecha": "mañana", "hora": "9:00", "pasajeros": "1"}}'
      "\n```]"
    ),
    expect_confirmation=True,
  ),
]


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  scratch = Path(tempfile.mkdtemp(prefix="dedoctor-smoke-"))
  os.environ["DEDOCTOR_DB_PATH"] = str(scratch / "smoke.sqlite")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  replies = [turn.scripted_reply for turn in SCRIPT]

  def scripted_reply(*, message: str, history: list[dict[str, str]]) -> str:
    return replies.pop(0)

  backend_module._llm_chat_reply = scripted_reply

  headers = {"Authorization": "Bearer smoke-user"}
  results: list[dict[str, Any]] = []

  with TestClient(backend_module.app) as client:
    session_id = client.post("/sessions", headers=headers).json()["session_id"]
    for turn in SCRIPT:
      response = client.post("/chat", headers=headers, json={"message": turn.user_text, "session_id": session_id})
      result: dict[str, Any] = {"user_text": turn.user_text, "status_code": response.status_code}
      if response.status_code != 200:
        result["pass"] = False
        results.append(result)
        continue
      payload = response.json()
      result["content"] = payload["message"]["content"]
      result["pass"] = (
        bool(payload["message"]["options"]) == turn.expect_options
        and (payload["confirmation"] is not None) == turn.expect_confirmation
        and payload["request_location"] == turn.expect_location
      )
      results.append(result)

    reloaded = client.get(f"/sessions/{session_id}/messages", headers=headers).json()
    confirm = client.post(f"/sessions/{session_id}/confirm", headers=headers)
    results.append(
      {
        "user_text": "(reload + confirm)",
        "status_code": confirm.status_code,
        "content": json.dumps(reloaded["pending_confirmation"], ensure_ascii=False),
        "pass": reloaded["pending_confirmation"] is not None and confirm.status_code == 200,
      }
    )

  passed = sum(1 for item in results if item.get("pass"))
  timestamp = datetime.now(timezone.utc).isoformat()
  print(f"Chat smoke run at {timestamp}")
  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    print(f"[{status}] {item['user_text']!r} -> {item.get('status_code')}: {item.get('content', '')[:120]}")
  print(f"Passed {passed}/{len(results)} steps.")
  return 0 if passed == len(results) else 1


if __name__ == "__main__":
  raise SystemExit(run())
