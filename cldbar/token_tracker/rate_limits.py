"""Rate-limit window tracking for providers that expose quota telemetry.

Two sources are understood:

* Remote API profiles: the ``anthropic-ratelimit-unified-*`` headers captured
  from the last Admin API response (utilization is a 0-1 fraction there).
* Local Claude accounts: a sidecar JSON snapshot of the OAuth usage payload
  (``{"five_hour": {"utilization": 42.0, "resets_at": "..."}, ...}``), as
  written by statusline tools.  A snapshot older than
  ``rate_limit_max_age_seconds`` is treated as absent.

Utilization is what the provider declared; it is never recomputed from
token counts and never clamped here; reset times are passed through as the
provider sent them.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from cldbar.config import Settings
from cldbar.errors import ParseError
from cldbar.profiles.registry import Profile
from cldbar.providers.base import Provider, ProviderKind
from cldbar.token_tracker.models import RateLimitStatus, RateLimitWindow
from cldbar.token_tracker.parsers import read_json_document

logger = logging.getLogger(__name__)

SIDECAR_FILENAME = "usage-limits.json"

# (status attribute, label, sidecar key, header window name)
WINDOWS = (
    ("five_hour", "5-hour", "five_hour", "5h"),
    ("seven_day", "7-day", "seven_day", "7d"),
    ("seven_day_opus", "7-day Opus", "seven_day_opus", "7d_opus"),
)


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _reset_verbatim(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def window_from_sidecar(label: str, raw: Any) -> RateLimitWindow | None:
    if not isinstance(raw, dict):
        return None
    utilization = _number(raw.get("utilization"))
    if utilization is None:
        return None
    return RateLimitWindow(label=label, utilization=utilization, resets_at=_reset_verbatim(raw.get("resets_at")))


def status_from_sidecar(payload: Any) -> RateLimitStatus:
    """Map an OAuth usage payload onto a RateLimitStatus."""
    if not isinstance(payload, dict):
        return RateLimitStatus.unavailable()
    status = RateLimitStatus(available=False)
    for attr, label, key, _ in WINDOWS:
        window = window_from_sidecar(label, payload.get(key))
        if window is not None:
            setattr(status, attr, window)
            status.available = True
    return status


def status_from_headers(headers: dict[str, str]) -> RateLimitStatus:
    """Map captured ``anthropic-ratelimit-unified-<window>-*`` headers."""
    status = RateLimitStatus(available=False)
    lowered = {k.lower(): v for k, v in headers.items()}
    for attr, label, _, name in WINDOWS:
        prefix = f"anthropic-ratelimit-unified-{name}-"
        fraction = _number(lowered.get(prefix + "utilization"))
        if fraction is None:
            continue
        window = RateLimitWindow(
            label=label,
            utilization=round(fraction * 100, 2),
            resets_at=_reset_verbatim(lowered.get(prefix + "reset")),
        )
        setattr(status, attr, window)
        status.available = True
    return status


class RateLimitTracker:
    """Resolves the current RateLimitStatus for a profile."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def sidecar_paths(self, profile: Profile) -> list[Path]:
        paths = []
        if profile.config_dir:
            paths.append(profile.config_path / SIDECAR_FILENAME)
        paths.extend(Path(p).expanduser() for p in self.settings.rate_limit_sidecar_paths)
        return paths

    def latest_sidecar(self, profile: Profile, now: float | None = None) -> Path | None:
        """Most recently written sidecar that is still fresh, if any."""
        now = now if now is not None else time.time()
        best: tuple[float, Path] | None = None
        for path in self.sidecar_paths(profile):
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if now - mtime > self.settings.rate_limit_max_age_seconds:
                logger.debug("Ignoring stale rate-limit snapshot %s", path)
                continue
            if best is None or mtime > best[0]:
                best = (mtime, path)
        return best[1] if best else None

    def status(self, profile: Profile, provider: Provider, now: float | None = None) -> RateLimitStatus:
        if provider.kind is ProviderKind.REMOTE_CLAUDE_API:
            return status_from_headers(provider.fetch_rate_limits())

        if provider.kind is not ProviderKind.LOCAL_CLAUDE:
            return RateLimitStatus.unavailable()

        path = self.latest_sidecar(profile, now=now)
        if path is None:
            return RateLimitStatus.unavailable()
        try:
            payload = read_json_document(path)
        except (OSError, ParseError) as e:
            logger.warning("Could not read rate-limit snapshot %s: %s", path, e)
            return RateLimitStatus.unavailable()
        return status_from_sidecar(payload)
