"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from edge_agent.memory import MemoryMatch  # noqa: E402


class FakeEmbedder:
    """Returns a fixed vector, or raises when ``fail`` is set."""

    def __init__(self, vector: Optional[List[float]] = None, fail: bool = False):
        self.vector = [0.1, 0.2, 0.3] if vector is None else vector
        self.fail = fail
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding service down")
        return list(self.vector)


class FakeIndex:
    """In-memory index returning canned matches."""

    def __init__(self, matches: Optional[List[MemoryMatch]] = None, fail_upsert: bool = False, fail_query: bool = False):
        self.matches = matches or []
        self.fail_upsert = fail_upsert
        self.fail_query = fail_query
        self.upserts: List[Dict[str, Any]] = []
        self.queries: List[int] = []

    def upsert(self, record_id, vector, metadata) -> None:
        if self.fail_upsert:
            raise RuntimeError("index write failed")
        self.upserts.append({"id": record_id, "vector": list(vector), "metadata": dict(metadata)})

    def query(self, vector, top_k) -> List[MemoryMatch]:
        self.queries.append(top_k)
        if self.fail_query:
            raise RuntimeError("index read failed")
        return list(self.matches)


class SpyModel:
    """Spy model that records the last prompt it received."""

    def __init__(self, response: Any = None, fail: bool = False):
        self.response = {"response": "ok"} if response is None else response
        self.fail = fail
        self.prompts: List[str] = []
        self.max_tokens: List[int] = []

    def complete(self, prompt: str, max_tokens: int) -> Any:
        self.prompts.append(prompt)
        self.max_tokens.append(max_tokens)
        if self.fail:
            raise RuntimeError("model offline")
        return self.response


class FakeRegistrar:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[tuple] = []

    def schedule(self, delay_seconds, task_name, payload) -> None:
        if self.fail:
            raise RuntimeError("workflow binding missing")
        self.calls.append((delay_seconds, task_name, payload))


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for conversations / memory during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("EDGE_AGENT_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("EDGE_AGENT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def config_file(tmp_data_dir: Path, tmp_path: Path, clean_env) -> Path:
    """A config pointing data_dir at a temp dir and the model at a missing file."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "memory:\n"
        f"  data_dir: {tmp_data_dir.as_posix()}\n"
        "model:\n"
        f"  model_dir: {tmp_path.as_posix()}\n"
        "  model_path: missing.gguf\n",
        encoding="utf-8",
    )
    return path
