"""Provider abstraction shared by every data source.

A provider is picked from the closed ``ProviderKind`` set by
``build_provider()``.  Every variant exposes the full capability surface;
capabilities that do not apply return empty results instead of raising, so
the engine never needs to branch on the variant except through
``is_local``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from pathlib import Path

from cldbar.config import Settings
from cldbar.errors import ConfigInvalid, SourceUnavailable
from cldbar.profiles.registry import Profile
from cldbar.token_tracker.aggregator import fold_into, resolve_timezone
from cldbar.token_tracker.models import DailyUsage, FileCursor, UsageStats
from cldbar.token_tracker.parsers import LogFormat, ParseResult, parse_file

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    LOCAL_CLAUDE = "local-claude"
    LOCAL_GEMINI = "local-gemini"
    LOCAL_ZAI = "local-zai"
    REMOTE_CLAUDE_API = "remote-claude-api"


class CredentialStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@dataclass
class CredentialCheck:
    """Outcome of a credential probe.

    ``valid`` is tri-state: a network failure says nothing about the key,
    so it is reported as ``None`` rather than ``False``.
    """

    status: CredentialStatus
    reason: str = ""

    @property
    def valid(self) -> bool | None:
        if self.status is CredentialStatus.UNKNOWN:
            return None
        return self.status is CredentialStatus.VALID

    def to_dict(self) -> dict:
        return {"valid": self.valid, "status": self.status.value, "reason": self.reason}


@dataclass
class SourceFile:
    """A candidate source file, stat'ed at discovery time."""

    path: Path
    size: int
    mtime_ns: int
    fmt: LogFormat | None = None

    @property
    def key(self) -> str:
        return str(self.path)

    @property
    def mtime(self) -> datetime:
        return datetime.fromtimestamp(self.mtime_ns / 1e9).astimezone()


@dataclass
class ScanResult:
    """Updated per-file cursors plus what went wrong along the way."""

    cursors: dict[str, FileCursor] = field(default_factory=dict)
    parse_errors: int = 0
    unavailable: list[SourceUnavailable] = field(default_factory=list)
    files_parsed: int = 0
    files_reused: int = 0


def copy_cursor(cursor: FileCursor) -> FileCursor:
    """Deep copy via the cache payload, so folding never mutates the input."""
    return FileCursor.from_payload(cursor.to_payload())


class Provider:
    """Base class; concrete variants override what applies to them."""

    kind: ProviderKind
    provider_type: str = ""
    display_name: str = ""

    def __init__(self, profile: Profile, settings: Settings) -> None:
        self.profile = profile
        self.settings = settings
        self.tz: tzinfo = resolve_timezone(settings.timezone)

    @property
    def is_local(self) -> bool:
        return self.kind is not ProviderKind.REMOTE_CLAUDE_API

    @property
    def activity_window(self) -> timedelta:
        seconds = getattr(self.settings, f"{self.provider_type}_activity_window_seconds", 30 * 60)
        return timedelta(seconds=seconds)

    # ── Local capabilities ────────────────────────────────────────────────

    def discover(self) -> list[SourceFile]:
        return []

    def scan(self, since: datetime | None, cursors: dict[str, FileCursor]) -> ScanResult:
        return ScanResult()

    # ── Remote capabilities ───────────────────────────────────────────────

    def fetch_usage(self, days: int) -> UsageStats:
        return UsageStats.empty(self.display_name)

    def fetch_daily(self, days: int) -> list[DailyUsage]:
        return []

    def fetch_rate_limits(self) -> dict[str, str]:
        """Quota headers captured from the most recent API response."""
        return {}

    def validate_credential(self, secret: str) -> CredentialCheck:
        return CredentialCheck(CredentialStatus.INVALID, "unsupported")


class LocalLogProvider(Provider):
    """Shared incremental scan over append-only log files.

    Subclasses only implement ``discover()``.
    """

    def _stat(self, path: Path, fmt: LogFormat | None) -> SourceFile | None:
        try:
            st = path.stat()
        except OSError as e:
            logger.debug("Cannot stat %s: %s", path, e)
            return None
        return SourceFile(path=path, size=st.st_size, mtime_ns=st.st_mtime_ns, fmt=fmt)

    def scan(self, since: datetime | None, cursors: dict[str, FileCursor]) -> ScanResult:
        """Bring every file's cursor up to date.

        Unchanged files keep their cursor, grown append-only files resume
        from their offset, anything else is reparsed from the start.
        """
        result = ScanResult()
        jobs: list[tuple[SourceFile, FileCursor | None]] = []

        for src in self.discover():
            if since is not None and src.mtime < since:
                continue
            prev = cursors.get(src.key)
            if prev is not None and prev.size == src.size and prev.mtime_ns == src.mtime_ns:
                result.cursors[src.key] = prev
                result.files_reused += 1
                continue
            append_only = src.fmt.append_only if src.fmt else False
            if prev is not None and append_only and prev.append_only and src.size >= prev.offset:
                jobs.append((src, prev))
            else:
                if prev is not None:
                    logger.debug("Reparsing %s from the start", src.path)
                jobs.append((src, None))

        if not jobs:
            return result

        def _parse(job: tuple[SourceFile, FileCursor | None]) -> ParseResult:
            src, prev = job
            return parse_file(src.path, prev.offset if prev else 0, src.fmt)

        workers = max(1, min(self.settings.scan_workers, len(jobs)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            parsed = list(pool.map(_parse, jobs))

        for (src, prev), pr in zip(jobs, parsed):
            if pr.unavailable is not None:
                result.unavailable.append(pr.unavailable)
                continue
            cursor = copy_cursor(prev) if prev else FileCursor(path=src.key)
            fold_into(cursor.days, cursor.sessions, pr.events, self.tz)
            cursor.offset = pr.offset
            cursor.size = src.size
            cursor.mtime_ns = src.mtime_ns
            cursor.append_only = src.fmt.append_only if src.fmt else False
            cursor.parse_errors += pr.parse_errors
            result.cursors[src.key] = cursor
            result.parse_errors += pr.parse_errors
            result.files_parsed += 1

        if result.parse_errors:
            logger.info(
                "%s: skipped %d malformed records", self.profile.id, result.parse_errors
            )
        return result


def build_provider(profile: Profile, settings: Settings) -> Provider:
    """Instantiate the provider variant for a profile.

    Raises ConfigInvalid for (provider_type, source_type) pairs that are not
    supported.
    """
    from cldbar.providers.claude import ClaudeProvider
    from cldbar.providers.claude_api import ClaudeApiProvider
    from cldbar.providers.gemini import GeminiProvider
    from cldbar.providers.zai import ZaiProvider

    pair = (profile.provider_type, profile.source_type)
    if pair == ("claude", "account"):
        return ClaudeProvider(profile, settings)
    if pair == ("claude", "api"):
        return ClaudeApiProvider(profile, settings)
    if pair == ("gemini", "account"):
        return GeminiProvider(profile, settings)
    if pair == ("zai", "account"):
        return ZaiProvider(profile, settings)
    if pair == ("zai", "api"):
        raise ConfigInvalid(f"profile {profile.id}: z.ai API profiles are not supported")
    raise ConfigInvalid(
        f"profile {profile.id}: unsupported provider {profile.provider_type!r}/{profile.source_type!r}"
    )
