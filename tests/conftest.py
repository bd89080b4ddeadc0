"""Shared test fixtures."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from cldbar.cache.store import CacheStore
from cldbar.config import Settings
from cldbar.profiles.registry import Profile

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def write_jsonl(path: Path, records: list[Any], trailing_newline: bool = True) -> Path:
    """Write records as JSONL; raw strings are written verbatim."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    text = "\n".join(lines)
    if trailing_newline:
        text += "\n"
    path.write_text(text, encoding="utf-8")
    return path


def append_jsonl(path: Path, records: list[Any]) -> None:
    with open(path, "a", encoding="utf-8") as f:
        for r in records:
            f.write((r if isinstance(r, str) else json.dumps(r)) + "\n")


def assistant_record(
    session_id: str,
    timestamp: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    model: str = "claude-sonnet-4-6",
    cache_read: int = 0,
    cache_write: int = 0,
) -> dict[str, Any]:
    """A Claude Code transcript line carrying usage."""
    return {
        "type": "assistant",
        "sessionId": session_id,
        "timestamp": timestamp,
        "message": {
            "role": "assistant",
            "model": model,
            "content": [{"type": "text", "text": "ok"}],
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_write,
            },
        },
    }


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep the host's CLI overrides out of every test."""
    monkeypatch.delenv("GEMINI_CLI_HOME", raising=False)
    monkeypatch.delenv("ZAI_CONFIG_PATH", raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        cache_db_path=str(tmp_path / "cache.db"),
        profiles_file=str(tmp_path / "profiles.yaml"),
        timezone="UTC",
        scan_lookback_days=0,
        refresh_interval_seconds=0,
        scan_workers=2,
    )


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache.db")


@pytest.fixture
def claude_home(tmp_path: Path) -> Path:
    home = tmp_path / ".claude"
    (home / "projects").mkdir(parents=True)
    return home


@pytest.fixture
def claude_profile(claude_home: Path) -> Profile:
    return Profile(
        id="claude-default",
        name="Claude",
        provider_type="claude",
        config_dir=str(claude_home),
    )
