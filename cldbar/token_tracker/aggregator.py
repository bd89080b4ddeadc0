"""Fold normalized events into UsageStats, DailyUsage buckets and Sessions.

The fold is a single pass and strictly single-threaded per profile.  Events
are first bucketed into mergeable ``DaySnapshot``s and partial ``Session``s;
everything the UI sees is rebuilt from those, which is what lets the cache
store persist per-day snapshots and per-file partials and recombine them
later without re-reading any logs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from cldbar.token_tracker.models import (
    DailyUsage,
    DaySnapshot,
    ModelUsage,
    NormalizedEvent,
    Session,
    UsageStats,
)
from cldbar.token_tracker.pricing import estimate_cost

logger = logging.getLogger(__name__)


@dataclass
class Aggregate:
    """Everything one fold produces."""

    stats: UsageStats
    daily: list[DailyUsage] = field(default_factory=list)
    sessions: list[Session] = field(default_factory=list)


def resolve_timezone(name: str = "") -> tzinfo:
    """Named zone if configured, otherwise the host's local zone."""
    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo or timezone.utc


def local_day(ts: datetime, tz: tzinfo) -> str:
    """Calendar day (YYYY-MM-DD) of a timestamp in the profile's zone."""
    return ts.astimezone(tz).date().isoformat()


def is_active(last_active: datetime | None, now: datetime, window: timedelta) -> bool:
    """A session is active only while strictly inside the activity window."""
    if last_active is None:
        return False
    return now - last_active < window


# ── Folding ──────────────────────────────────────────────────────────────────


def fold_into(
    days: dict[str, DaySnapshot],
    sessions: dict[str, Session],
    events: Iterable[NormalizedEvent],
    tz: tzinfo,
) -> int:
    """Accumulate events into existing day and session buckets.

    Returns the number of events folded.
    """
    count = 0
    for event in events:
        day = local_day(event.timestamp, tz)
        snapshot = days.get(day)
        if snapshot is None:
            snapshot = days[day] = DaySnapshot(date=day)
        snapshot.add_event(event)

        session = sessions.get(event.session_id)
        if session is None:
            session = sessions[event.session_id] = Session(
                id=event.session_id,
                project=event.project,
                model=event.model,
            )
        session.tokens_used += event.total_tokens
        session.message_count += 1
        # Ties keep the earlier event's model; lastActive is a max either way
        if session.last_active is None or event.timestamp > session.last_active:
            session.last_active = event.timestamp
            session.model = event.model
            if event.project:
                session.project = event.project
        count += 1
    return count


def fold(
    events: Iterable[NormalizedEvent],
    *,
    provider: str,
    provider_type: str,
    activity_window: timedelta,
    now: datetime,
    tz: tzinfo,
) -> Aggregate:
    """Fold a finite event stream into stats, per-day buckets and sessions."""
    days: dict[str, DaySnapshot] = {}
    sessions: dict[str, Session] = {}
    fold_into(days, sessions, events, tz)
    return Aggregate(
        stats=stats_from_snapshots(days.values(), provider=provider, provider_type=provider_type),
        daily=daily_from_snapshots(days.values()),
        sessions=finalize_sessions(sessions.values(), now=now, activity_window=activity_window),
    )


# ── Recombination ────────────────────────────────────────────────────────────


def merge_snapshots(snapshots: Iterable[DaySnapshot]) -> dict[str, DaySnapshot]:
    """Combine snapshots by date into fresh objects (inputs are not mutated)."""
    merged: dict[str, DaySnapshot] = {}
    for snapshot in snapshots:
        target = merged.get(snapshot.date)
        if target is None:
            target = merged[snapshot.date] = DaySnapshot(date=snapshot.date)
        target.merge(snapshot)
    return merged


def merge_sessions(partials: Iterable[Session]) -> dict[str, Session]:
    """Combine partial session views (e.g. one per file) keyed by session id."""
    merged: dict[str, Session] = {}
    for partial in partials:
        target = merged.get(partial.id)
        if target is None:
            merged[partial.id] = replace(partial)
        else:
            target.merge(partial)
    return merged


def stats_from_snapshots(
    snapshots: Iterable[DaySnapshot],
    *,
    provider: str,
    provider_type: str,
) -> UsageStats:
    """Rebuild a UsageStats from day snapshots, pricing each model once."""
    stats = UsageStats.empty(provider)
    session_ids: set[str] = set()

    for snapshot in snapshots:
        stats.total_messages += snapshot.messages
        session_ids |= snapshot.session_ids
        for name, usage in snapshot.models.items():
            target = stats.model_breakdown.get(name)
            if target is None:
                target = stats.model_breakdown[name] = ModelUsage(model=name)
            target.add(usage)

    total_cost = 0.0
    for usage in stats.model_breakdown.values():
        usage.cost_usd = estimate_cost(provider_type, usage)
        total_cost += usage.cost_usd
        stats.total_input_tokens += usage.input_tokens
        stats.total_output_tokens += usage.output_tokens
        stats.total_cache_read_tokens += usage.cache_read_tokens
        stats.total_cache_write_tokens += usage.cache_write_tokens

    stats.total_sessions = len(session_ids)
    stats.estimated_cost_usd = round(total_cost, 2)
    return stats


def daily_from_snapshots(
    snapshots: Iterable[DaySnapshot],
    days: int | None = None,
) -> list[DailyUsage]:
    """Newest-first DailyUsage list, one record per date, optionally truncated."""
    merged = merge_snapshots(snapshots)
    daily = [merged[d].to_daily() for d in sorted(merged, reverse=True)]
    if days is not None:
        daily = daily[:days]
    return daily


def finalize_sessions(
    sessions: Iterable[Session],
    *,
    now: datetime,
    activity_window: timedelta,
) -> list[Session]:
    """Stamp ``is_active`` and sort most recently active first."""
    result = []
    for session in sessions:
        s = replace(session, is_active=is_active(session.last_active, now, activity_window))
        result.append(s)
    oldest = datetime.min.replace(tzinfo=now.tzinfo)
    result.sort(key=lambda s: s.last_active or oldest, reverse=True)
    return result
