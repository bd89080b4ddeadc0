"""Common statistics model shared by every provider.

Dataclasses here are what the aggregator produces and the command layer
serializes.  ``to_dict()`` emits the camelCase shape the tray UI consumes;
``DaySnapshot`` and ``FileCursor`` additionally round-trip through the cache
store via ``to_payload()`` / ``from_payload()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_iso(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class NormalizedEvent:
    """One usage-bearing record decoded from any source format."""

    timestamp: datetime
    session_id: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    project: str = ""

    @property
    def input_side_tokens(self) -> int:
        """Everything the model read: uncached input plus both cache kinds."""
        return self.input_tokens + self.cache_read_tokens + self.cache_write_tokens

    @property
    def total_tokens(self) -> int:
        return self.input_side_tokens + self.output_tokens


@dataclass
class ModelUsage:
    """Per-model subtotal within a UsageStats."""

    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, other: ModelUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens

    def add_event(self, event: NormalizedEvent) -> None:
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.cache_write_tokens += event.cache_write_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheWriteTokens": self.cache_write_tokens,
            "costUsd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelUsage:
        return cls(
            model=data["model"],
            input_tokens=int(data.get("inputTokens", 0)),
            output_tokens=int(data.get("outputTokens", 0)),
            cache_read_tokens=int(data.get("cacheReadTokens", 0)),
            cache_write_tokens=int(data.get("cacheWriteTokens", 0)),
            cost_usd=float(data.get("costUsd", 0.0)),
        )


@dataclass
class UsageStats:
    """Aggregate snapshot for one profile."""

    provider: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cache_write_tokens: int = 0
    total_sessions: int = 0
    total_messages: int = 0
    estimated_cost_usd: float = 0.0
    model_breakdown: dict[str, ModelUsage] = field(default_factory=dict)

    @classmethod
    def empty(cls, provider: str) -> UsageStats:
        return cls(provider=provider)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "totalCacheReadTokens": self.total_cache_read_tokens,
            "totalCacheWriteTokens": self.total_cache_write_tokens,
            "totalSessions": self.total_sessions,
            "totalMessages": self.total_messages,
            "estimatedCostUsd": self.estimated_cost_usd,
            "modelBreakdown": {k: v.to_dict() for k, v in self.model_breakdown.items()},
        }


@dataclass
class DailyUsage:
    """One calendar day's totals for a profile."""

    date: str
    input_tokens: int = 0
    output_tokens: int = 0
    sessions: int = 0
    messages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "sessions": self.sessions,
            "messages": self.messages,
        }


@dataclass
class Session:
    """A coding session as seen by one provider."""

    id: str
    project: str = ""
    model: str = "unknown"
    tokens_used: int = 0
    last_active: datetime | None = None
    is_active: bool = False
    message_count: int = 0

    def merge(self, other: Session) -> None:
        """Fold another partial view of the same session into this one."""
        self.tokens_used += other.tokens_used
        self.message_count += other.message_count
        if other.last_active is not None and (
            self.last_active is None or other.last_active >= self.last_active
        ):
            self.last_active = other.last_active
            if other.model:
                self.model = other.model
            if other.project:
                self.project = other.project

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "model": self.model,
            "tokensUsed": self.tokens_used,
            "lastActive": _iso(self.last_active) or "",
            "isActive": self.is_active,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            project=data.get("project", ""),
            model=data.get("model", "unknown"),
            tokens_used=int(data.get("tokensUsed", 0)),
            last_active=_parse_iso(data.get("lastActive")),
            is_active=bool(data.get("isActive", False)),
            message_count=int(data.get("messageCount", 0)),
        )


@dataclass
class RateLimitWindow:
    """Utilization of one provider-declared quota window."""

    label: str
    utilization: float
    resets_at: str | None = None

    @property
    def display_utilization(self) -> float:
        return max(0.0, min(100.0, self.utilization))

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "utilization": self.utilization,
            "resetsAt": self.resets_at,
        }


@dataclass
class RateLimitStatus:
    available: bool = False
    five_hour: RateLimitWindow | None = None
    seven_day: RateLimitWindow | None = None
    seven_day_opus: RateLimitWindow | None = None

    @classmethod
    def unavailable(cls) -> RateLimitStatus:
        return cls(available=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "fiveHour": self.five_hour.to_dict() if self.five_hour else None,
            "sevenDay": self.seven_day.to_dict() if self.seven_day else None,
            "sevenDayOpus": self.seven_day_opus.to_dict() if self.seven_day_opus else None,
        }


# ── Cache payloads ───────────────────────────────────────────────────────────


@dataclass
class DaySnapshot:
    """Mergeable per-day aggregate persisted in the cache.

    Session ids are kept (not just counted) so snapshots from several files
    can be merged without double counting a session that spans files.
    """

    date: str
    messages: int = 0
    session_ids: set[str] = field(default_factory=set)
    models: dict[str, ModelUsage] = field(default_factory=dict)

    @property
    def input_tokens(self) -> int:
        return sum(
            m.input_tokens + m.cache_read_tokens + m.cache_write_tokens
            for m in self.models.values()
        )

    @property
    def output_tokens(self) -> int:
        return sum(m.output_tokens for m in self.models.values())

    def add_event(self, event: NormalizedEvent) -> None:
        self.messages += 1
        self.session_ids.add(event.session_id)
        usage = self.models.get(event.model)
        if usage is None:
            usage = self.models[event.model] = ModelUsage(model=event.model)
        usage.add_event(event)

    def merge(self, other: DaySnapshot) -> None:
        self.messages += other.messages
        self.session_ids |= other.session_ids
        for name, usage in other.models.items():
            mine = self.models.get(name)
            if mine is None:
                mine = self.models[name] = ModelUsage(model=name)
            mine.add(usage)

    def to_daily(self) -> DailyUsage:
        return DailyUsage(
            date=self.date,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            sessions=len(self.session_ids),
            messages=self.messages,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "messages": self.messages,
            "sessionIds": sorted(self.session_ids),
            "models": [m.to_dict() for m in sorted(self.models.values(), key=lambda m: m.model)],
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> DaySnapshot:
        models = [ModelUsage.from_dict(m) for m in data.get("models", [])]
        return cls(
            date=data["date"],
            messages=int(data.get("messages", 0)),
            session_ids=set(data.get("sessionIds", [])),
            models={m.model: m for m in models},
        )


@dataclass
class FileCursor:
    """Resume point and partial aggregates for one source file.

    ``offset`` is the byte position just past the last fully consumed
    record; ``size`` / ``mtime_ns`` are the stat values observed when the
    cursor was written and double as the file's fingerprint.
    """

    path: str
    offset: int = 0
    size: int = 0
    mtime_ns: int = 0
    append_only: bool = True
    parse_errors: int = 0
    days: dict[str, DaySnapshot] = field(default_factory=dict)
    sessions: dict[str, Session] = field(default_factory=dict)

    def fingerprint_part(self) -> str:
        return f"{self.path}|{self.size}|{self.mtime_ns}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "offset": self.offset,
            "size": self.size,
            "mtimeNs": self.mtime_ns,
            "appendOnly": self.append_only,
            "parseErrors": self.parse_errors,
            "days": [d.to_payload() for d in self.days.values()],
            "sessions": [s.to_dict() for s in self.sessions.values()],
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> FileCursor:
        days = [DaySnapshot.from_payload(d) for d in data.get("days", [])]
        sessions = [Session.from_dict(s) for s in data.get("sessions", [])]
        return cls(
            path=data["path"],
            offset=int(data.get("offset", 0)),
            size=int(data.get("size", 0)),
            mtime_ns=int(data.get("mtimeNs", 0)),
            append_only=bool(data.get("appendOnly", True)),
            parse_errors=int(data.get("parseErrors", 0)),
            days={d.date: d for d in days},
            sessions={s.id: s for s in sessions},
        )
