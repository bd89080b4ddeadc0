"""Tests for the FastAPI routes."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

from cldbar.api.server import create_app
from cldbar.cache.store import CacheStore
from cldbar.config import Settings
from cldbar.profiles.registry import ProfileRegistry
from cldbar.providers import ClaudeApiProvider, build_provider
from cldbar.token_tracker.engine import UsageEngine
from conftest import NOW, assistant_record, write_jsonl

SECRET = "sk-ant-admin-do-not-echo"


def _make_client(tmp_path: Path, settings: Settings, store: CacheStore, claude_home: Path, api_status: int = 200):
    profiles_file = tmp_path / "profiles.yaml"
    profiles_file.write_text(yaml.safe_dump({"profiles": [
        {"id": "claude-default", "name": "Claude", "provider_type": "claude", "config_dir": str(claude_home)},
        {"id": "claude-api", "name": "Org", "provider_type": "claude", "source_type": "api", "api_key": SECRET},
    ]}), encoding="utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        if api_status != 200:
            return httpx.Response(api_status, text="nope", headers={"retry-after": "30"})
        return httpx.Response(200, json={"data": [], "has_more": False})

    def factory(profile, s):
        if profile.source_type == "api" and profile.provider_type == "claude":
            return ClaudeApiProvider(profile, s, transport=httpx.MockTransport(handler))
        return build_provider(profile, s)

    engine = UsageEngine(
        ProfileRegistry(path=profiles_file, autodetect=False),
        store,
        settings,
        provider_factory=factory,
        clock=lambda: NOW,
    )
    return TestClient(create_app(engine=engine, settings=settings))


@pytest.fixture
def client(tmp_path, settings, store, claude_home):
    write_jsonl(claude_home / "projects" / "proj" / "s.jsonl", [
        assistant_record("A", "2026-03-10T11:50:00Z", 100, 50),
        assistant_record("B", "2026-03-10T11:50:01Z", 10, 5),
        assistant_record("A", "2026-03-09T09:00:00Z", 1, 1),
    ])
    return _make_client(tmp_path, settings, store, claude_home)


class TestAPIRoutes:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_list_profiles_hides_keys(self, client):
        resp = client.get("/api/profiles")
        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 2
        assert SECRET not in resp.text
        assert [p["hasApiKey"] for p in data["profiles"]] == [False, True]

    def test_usage_stats(self, client):
        resp = client.get("/api/profiles/claude-default/usage")
        assert resp.status_code == 200
        data = resp.json()
        assert data["totalInputTokens"] == 111
        assert data["totalSessions"] == 2
        assert "claude-sonnet-4-6" in data["modelBreakdown"]

    def test_active_sessions(self, client):
        data = client.get("/api/profiles/claude-default/sessions/active").json()
        assert data["count"] == 2
        assert all(s["isActive"] for s in data["sessions"])

    def test_session_history_limit(self, client):
        data = client.get("/api/profiles/claude-default/sessions/history", params={"limit": 1}).json()
        assert data["count"] == 1
        assert data["sessions"][0]["id"] == "B"

    def test_session_history_rejects_bad_limit(self, client):
        resp = client.get("/api/profiles/claude-default/sessions/history", params={"limit": 0})
        assert resp.status_code == 422

    def test_daily(self, client):
        data = client.get("/api/profiles/claude-default/daily", params={"days": 1}).json()
        assert data["days"] == 1
        assert [d["date"] for d in data["daily"]] == ["2026-03-10"]

    def test_rate_limits_unavailable(self, client):
        data = client.get("/api/profiles/claude-default/rate-limits").json()
        assert data == {"available": False, "fiveHour": None, "sevenDay": None, "sevenDayOpus": None}

    def test_refresh(self, client):
        first = client.post("/api/profiles/claude-default/refresh").json()
        second = client.post("/api/profiles/claude-default/refresh").json()
        assert second["generation"] == first["generation"] + 1
        assert second["cacheHits"] == 1
        assert second["stats"]["totalInputTokens"] == 111

    def test_all_usage(self, client):
        data = client.get("/api/usage").json()
        assert data["count"] == 2
        assert {u["provider"] for u in data["usage"]} == {"Claude", "Claude (API)"}

    def test_unknown_profile_is_404(self, client):
        resp = client.get("/api/profiles/nope/usage")
        assert resp.status_code == 404
        assert resp.json()["error"]["kind"] == "profile_not_found"

    def test_validate_key(self, client):
        resp = client.post("/api/validate-key", json={"provider_type": "claude", "api_key": "sk-ant-admin-new"})
        assert resp.status_code == 200
        assert resp.json()["valid"] is True
        assert "sk-ant-admin-new" not in resp.text

    def test_validate_unsupported_provider(self, client):
        data = client.post("/api/validate-key", json={"provider_type": "zai", "api_key": "k"}).json()
        assert data == {"valid": False, "status": "invalid", "reason": "config_invalid"}


class TestErrorMapping:
    @pytest.mark.parametrize(
        "api_status,http_status,kind",
        [
            (401, 401, "auth_error"),
            (403, 401, "auth_error"),
            (429, 429, "rate_limited"),
            (500, 502, "network_error"),
        ],
    )
    def test_remote_failures(self, tmp_path, settings, store, claude_home, api_status, http_status, kind):
        client = _make_client(tmp_path, settings, store, claude_home, api_status=api_status)
        resp = client.get("/api/profiles/claude-api/usage")
        assert resp.status_code == http_status
        assert resp.json()["error"]["kind"] == kind
        assert SECRET not in resp.text

    def test_rate_limited_sets_retry_after(self, tmp_path, settings, store, claude_home):
        client = _make_client(tmp_path, settings, store, claude_home, api_status=429)
        resp = client.get("/api/profiles/claude-api/daily")
        assert resp.headers["retry-after"] == "30"

    def test_failing_remote_is_left_out_of_all_usage(self, tmp_path, settings, store, claude_home):
        client = _make_client(tmp_path, settings, store, claude_home, api_status=401)
        data = client.get("/api/usage").json()
        assert data["count"] == 1
        assert data["usage"][0]["provider"] == "Claude"

    def test_validate_rejected_key(self, tmp_path, settings, store, claude_home):
        client = _make_client(tmp_path, settings, store, claude_home, api_status=401)
        data = client.post("/api/validate-key", json={"api_key": "sk-bad"}).json()
        assert data["valid"] is False
        assert data["reason"] == "auth_error"
