from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from memory import ChatMemoryService, SQLiteChatDB  # noqa: E402


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "dedoctor-test.sqlite"
    monkeypatch.setenv("DEDOCTOR_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # No provider key by default; tests that need a completion patch it in.
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.delenv("DEDOCTOR_LOG_FILE", raising=False)
    monkeypatch.delenv("DEDOCTOR_SYSTEM_PROMPT", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make


@pytest.fixture
def memory_service(tmp_path) -> ChatMemoryService:
    return ChatMemoryService(SQLiteChatDB(str(tmp_path / "memory-test.sqlite")))
