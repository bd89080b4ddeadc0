"""Usage API routes polled by the tray UI."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from cldbar.token_tracker.engine import UsageEngine

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request models ───────────────────────────────────────────────────────


class ValidateKeyBody(BaseModel):
    provider_type: str = "claude"
    api_key: str


# ── Helper ───────────────────────────────────────────────────────────────


def _get_engine(request: Request) -> UsageEngine:
    return request.app.state.engine  # type: ignore[no-any-return]


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/profiles")
def list_profiles(request: Request) -> dict[str, Any]:
    """Configured profiles.  API keys are reported as present/absent only."""
    engine = _get_engine(request)
    profiles = engine.registry.to_dict()
    return {"profiles": profiles, "count": len(profiles)}


@router.get("/profiles/{profile_id}/usage")
def get_usage_stats(profile_id: str, request: Request) -> dict[str, Any]:
    return _get_engine(request).get_usage_stats(profile_id).to_dict()


@router.get("/profiles/{profile_id}/sessions/active")
def get_active_sessions(profile_id: str, request: Request) -> dict[str, Any]:
    sessions = _get_engine(request).get_active_sessions(profile_id)
    return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}


@router.get("/profiles/{profile_id}/sessions/history")
def get_session_history(
    profile_id: str,
    request: Request,
    limit: int = Query(20, ge=1, le=500),
) -> dict[str, Any]:
    """Most recently active sessions first."""
    sessions = _get_engine(request).get_session_history(profile_id, limit)
    return {"sessions": [s.to_dict() for s in sessions], "count": len(sessions)}


@router.get("/profiles/{profile_id}/daily")
def get_daily_usage(
    profile_id: str,
    request: Request,
    days: int = Query(7, ge=1, le=365),
) -> dict[str, Any]:
    daily = _get_engine(request).get_daily_usage(profile_id, days)
    return {"daily": [d.to_dict() for d in daily], "days": days}


@router.get("/profiles/{profile_id}/rate-limits")
def get_rate_limit_status(profile_id: str, request: Request) -> dict[str, Any]:
    return _get_engine(request).get_rate_limit_status(profile_id).to_dict()


@router.post("/profiles/{profile_id}/refresh")
def refresh_profile(profile_id: str, request: Request) -> dict[str, Any]:
    """Force a new refresh generation and return its summary."""
    result = _get_engine(request).refresh(profile_id)
    return {
        "status": "refreshed",
        "profileId": result.profile_id,
        "generation": result.generation,
        "parseErrors": result.parse_errors,
        "unavailable": result.unavailable,
        "cacheHits": result.cache_hits,
        "stats": result.stats.to_dict(),
    }


@router.get("/usage")
def get_all_usage_stats(request: Request) -> dict[str, Any]:
    """Stats for every enabled profile; failing profiles are left out."""
    stats = _get_engine(request).get_all_usage_stats()
    return {"usage": [s.to_dict() for s in stats], "count": len(stats)}


@router.post("/validate-key")
def validate_api_key(body: ValidateKeyBody, request: Request) -> dict[str, Any]:
    """Probe a credential.  ``valid`` is null when the check was inconclusive."""
    check = _get_engine(request).validate_api_key(body.provider_type, body.api_key)
    return check.to_dict()
