"""Usage engine: the refresh pipeline behind every query operation.

One refresh of one profile is a unit of work:

1. load the profile's file cursors from the cache store,
2. let the provider scan (local) or fetch (remote),
3. serve completed past days from the day cache when their fingerprint
   still matches, rebuild the rest from the cursors,
4. publish the result, committing cursors and day snapshots at the same
   time.

Each refresh takes a per-profile generation number.  A refresh whose
generation is older than the one already published is abandoned at step 4:
nothing it computed is written to the cache or returned; the caller gets
the newer published result instead.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from cldbar.cache.store import CacheStore, cursor_fingerprint
from cldbar.config import Settings
from cldbar.errors import ProfileNotFound, UsageError
from cldbar.profiles.registry import Profile, ProfileRegistry
from cldbar.providers.base import CredentialCheck, CredentialStatus, Provider, build_provider
from cldbar.token_tracker.aggregator import (
    daily_from_snapshots,
    finalize_sessions,
    local_day,
    merge_sessions,
    merge_snapshots,
    stats_from_snapshots,
)
from cldbar.token_tracker.models import (
    DailyUsage,
    DaySnapshot,
    FileCursor,
    RateLimitStatus,
    Session,
    UsageStats,
)
from cldbar.token_tracker.rate_limits import RateLimitTracker

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Profile, Settings], Provider]


@dataclass
class ProfileResult:
    """The published outcome of one refresh."""

    profile_id: str
    generation: int
    stats: UsageStats
    daily: list[DailyUsage] = field(default_factory=list)
    # is_active is stamped at query time, not here
    sessions: list[Session] = field(default_factory=list)
    refreshed_at: datetime | None = None
    parse_errors: int = 0
    unavailable: list[str] = field(default_factory=list)
    cache_hits: int = 0
    published_at: float = 0.0


@dataclass
class _Pending:
    result: ProfileResult
    cursors: dict[str, FileCursor] | None = None
    day_writes: list[tuple[str, DaySnapshot, str]] = field(default_factory=list)


class UsageEngine:
    """Answers usage queries for every configured profile."""

    def __init__(
        self,
        registry: ProfileRegistry,
        store: CacheStore,
        settings: Settings,
        *,
        provider_factory: ProviderFactory = build_provider,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings
        self.rate_limits = RateLimitTracker(settings)
        self._provider_factory = provider_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._providers: dict[str, tuple[Profile, Provider]] = {}
        self._issued: dict[str, int] = {}
        self._published: dict[str, ProfileResult] = {}
        self._publish_locks: dict[str, threading.Lock] = {}

    # ── Profiles and providers ────────────────────────────────────────────

    def profile(self, profile_id: str) -> Profile:
        profile = self.registry.get(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile

    def provider(self, profile: Profile) -> Provider:
        """Provider for a profile; rebuilt when the profile's config changed."""
        with self._lock:
            cached = self._providers.get(profile.id)
            if cached is not None and cached[0] == profile:
                return cached[1]
        provider = self._provider_factory(profile, self.settings)
        with self._lock:
            self._providers[profile.id] = (profile, provider)
        return provider

    def prune_cache(self) -> int:
        """Drop cached rows of profiles that are no longer configured."""
        return self.store.prune(p.id for p in self.registry.profiles)

    # ── Refresh pipeline ──────────────────────────────────────────────────

    def refresh(self, profile_id: str) -> ProfileResult:
        """Run a new refresh generation for one profile and publish it."""
        profile = self.profile(profile_id)
        provider = self.provider(profile)
        with self._lock:
            generation = self._issued[profile.id] = self._issued.get(profile.id, 0) + 1

        started = time.monotonic()
        if provider.is_local:
            pending = self._compute_local(profile, provider, generation)
        else:
            pending = self._compute_remote(profile, provider, generation)
        result = self._publish(pending)
        logger.debug(
            "Refreshed %s (generation %d) in %.0f ms",
            profile.id, generation, (time.monotonic() - started) * 1000,
        )
        return result

    def _compute_local(self, profile: Profile, provider: Provider, generation: int) -> _Pending:
        now = self._clock()
        since = None
        if self.settings.scan_lookback_days > 0:
            since = now - timedelta(days=self.settings.scan_lookback_days)

        scan = provider.scan(since, self.store.get_cursors(profile.id))
        today = local_day(now, provider.tz)

        contributors: dict[str, list[FileCursor]] = defaultdict(list)
        for cursor in scan.cursors.values():
            for day in cursor.days:
                contributors[day].append(cursor)

        snapshots: list[DaySnapshot] = []
        day_writes: list[tuple[str, DaySnapshot, str]] = []
        hits = 0
        for day, cursors in contributors.items():
            if day >= today:
                # Today is still being appended to; never served from cache
                snapshots.extend(c.days[day] for c in cursors)
                continue
            fp = cursor_fingerprint(cursors, self.settings.fingerprint_mode)
            cached = self.store.lookup(profile.id, day, fp)
            if cached is not None:
                snapshots.append(cached)
                hits += 1
                continue
            merged = merge_snapshots(c.days[day] for c in cursors)[day]
            snapshots.append(merged)
            day_writes.append((day, merged, fp))

        sessions = merge_sessions(
            s for c in scan.cursors.values() for s in c.sessions.values()
        )
        result = ProfileResult(
            profile_id=profile.id,
            generation=generation,
            stats=stats_from_snapshots(
                snapshots, provider=provider.display_name, provider_type=provider.provider_type
            ),
            daily=daily_from_snapshots(snapshots),
            sessions=list(sessions.values()),
            refreshed_at=now,
            parse_errors=scan.parse_errors,
            unavailable=[str(u) for u in scan.unavailable],
            cache_hits=hits,
        )
        return _Pending(result=result, cursors=scan.cursors, day_writes=day_writes)

    def _compute_remote(self, profile: Profile, provider: Provider, generation: int) -> _Pending:
        days = self.settings.api_lookback_days
        result = ProfileResult(
            profile_id=profile.id,
            generation=generation,
            stats=provider.fetch_usage(days),
            daily=provider.fetch_daily(days),
            refreshed_at=self._clock(),
        )
        return _Pending(result=result)

    def _publish_lock(self, profile_id: str) -> threading.Lock:
        with self._lock:
            return self._publish_locks.setdefault(profile_id, threading.Lock())

    def _publish(self, pending: _Pending) -> ProfileResult:
        result = pending.result
        profile_id = result.profile_id
        with self._publish_lock(profile_id):
            with self._lock:
                current = self._published.get(profile_id)
            if current is not None and current.generation > result.generation:
                logger.debug(
                    "Discarding superseded refresh of %s (generation %d < %d)",
                    profile_id, result.generation, current.generation,
                )
                return current

            if pending.cursors is not None:
                self.store.put_cursors(profile_id, pending.cursors)
            for day, snapshot, fp in pending.day_writes:
                self.store.put(profile_id, day, snapshot, fp)

            result.published_at = time.monotonic()
            with self._lock:
                self._published[profile_id] = result
        return result

    def latest(self, profile_id: str, max_age: float | None = None) -> ProfileResult:
        """Published result if it is recent enough, otherwise a fresh refresh."""
        max_age = self.settings.refresh_interval_seconds if max_age is None else max_age
        with self._lock:
            current = self._published.get(profile_id)
        if current is not None and time.monotonic() - current.published_at < max_age:
            return current
        return self.refresh(profile_id)

    # ── Query operations ──────────────────────────────────────────────────

    def get_usage_stats(self, profile_id: str) -> UsageStats:
        return self.latest(profile_id).stats

    def get_active_sessions(self, profile_id: str) -> list[Session]:
        return [s for s in self.get_session_history(profile_id) if s.is_active]

    def get_session_history(self, profile_id: str, limit: int | None = None) -> list[Session]:
        """Sessions, most recently active first, with ``is_active`` stamped now."""
        result = self.latest(profile_id)
        provider = self.provider(self.profile(profile_id))
        sessions = finalize_sessions(
            result.sessions, now=self._clock(), activity_window=provider.activity_window
        )
        return sessions[:limit] if limit is not None else sessions

    def get_daily_usage(self, profile_id: str, days: int = 7) -> list[DailyUsage]:
        """The ``days`` most recent days with activity, newest first."""
        profile = self.profile(profile_id)
        provider = self.provider(profile)
        if not provider.is_local:
            return provider.fetch_daily(days)
        return self.latest(profile_id).daily[:days]

    def get_rate_limit_status(self, profile_id: str) -> RateLimitStatus:
        profile = self.profile(profile_id)
        return self.rate_limits.status(profile, self.provider(profile))

    def validate_api_key(self, provider_type: str, key: str) -> CredentialCheck:
        """Probe a credential without storing it anywhere."""
        probe = Profile(
            id=f"validate-{provider_type}",
            name="validation",
            provider_type=provider_type,
            source_type="api",
            api_key=key,
        )
        try:
            provider = self._provider_factory(probe, self.settings)
        except UsageError as e:
            return CredentialCheck(CredentialStatus.INVALID, e.kind)
        return provider.validate_credential(key)

    def get_all_usage_stats(self) -> list[UsageStats]:
        """Stats for every enabled profile; failing profiles are logged and skipped."""
        profiles = self.registry.enabled()
        if not profiles:
            return []

        def _one(profile: Profile) -> UsageStats | None:
            try:
                return self.get_usage_stats(profile.id)
            except UsageError as e:
                logger.warning("Skipping profile %s: %s", profile.id, e)
                return None

        with ThreadPoolExecutor(max_workers=min(len(profiles), 8)) as pool:
            results = list(pool.map(_one, profiles))
        return [r for r in results if r is not None]
