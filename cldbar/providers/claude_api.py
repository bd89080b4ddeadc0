"""Remote Claude account read through the Anthropic Admin API.

Requires an Admin API key (``sk-ant-admin...``).  Usage comes from the
messages usage report grouped by model, actual spend from the cost report.
Responses are cached in memory for ``api_cache_ttl_seconds`` so a fast UI
refresh cadence does not hammer the API.

All methods return typed results or raise NetworkError / AuthError /
RateLimited.  One attempt per call; retrying is the next refresh's job.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from cldbar.config import Settings
from cldbar.errors import AuthError, NetworkError, RateLimited
from cldbar.profiles.registry import Profile
from cldbar.providers.base import CredentialCheck, CredentialStatus, Provider, ProviderKind
from cldbar.token_tracker.models import DailyUsage, ModelUsage, UsageStats
from cldbar.token_tracker.pricing import estimate_cost

logger = logging.getLogger(__name__)

USAGE_REPORT_PATH = "/v1/organizations/usage_report/messages"
COST_REPORT_PATH = "/v1/organizations/cost_report"
QUOTA_HEADER_PREFIX = "anthropic-ratelimit-unified-"
PAGE_LIMIT = 31


# ── Response models ──────────────────────────────────────────────────────────


class CacheCreation(BaseModel):
    ephemeral_5m_input_tokens: int = 0
    ephemeral_1h_input_tokens: int = 0


class UsageResult(BaseModel):
    model: str | None = None
    uncached_input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation: CacheCreation | None = None

    @property
    def cache_write_tokens(self) -> int:
        if self.cache_creation is None:
            return 0
        return (
            self.cache_creation.ephemeral_5m_input_tokens
            + self.cache_creation.ephemeral_1h_input_tokens
        )

    @property
    def counts_as_message(self) -> bool:
        # The report has no request count; a row with traffic stands for one
        return self.output_tokens > 0 or self.uncached_input_tokens > 0


class UsageBucket(BaseModel):
    starting_at: str
    ending_at: str = ""
    results: list[UsageResult] = []


class CostResult(BaseModel):
    amount: str = "0"
    currency: str | None = None


class CostBucket(BaseModel):
    starting_at: str = ""
    ending_at: str = ""
    results: list[CostResult] = []


class _Page(BaseModel):
    data: list[dict[str, Any]] = []
    has_more: bool = False
    next_page: str | None = None


class _TtlEntry:
    def __init__(self, data: Any) -> None:
        self.data = data
        self.fetched_at = time.monotonic()

    def fresh(self, ttl: float) -> bool:
        return time.monotonic() - self.fetched_at < ttl


def report_window(days: int, now: datetime | None = None) -> tuple[str, str]:
    """``starting_at`` / ``ending_at`` covering whole UTC days up to today."""
    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=days)
    return start.strftime("%Y-%m-%dT00:00:00Z"), now.strftime("%Y-%m-%dT23:59:59Z")


class ClaudeApiProvider(Provider):
    kind = ProviderKind.REMOTE_CLAUDE_API
    provider_type = "claude"
    display_name = "Claude (API)"

    def __init__(
        self,
        profile: Profile,
        settings: Settings,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(profile, settings)
        self._api_key = profile.api_key or ""
        self._base_url = settings.anthropic_api_base.rstrip("/")
        self._timeout = settings.http_timeout_seconds
        self._transport = transport
        self._lock = threading.Lock()
        self._usage_cache: dict[int, _TtlEntry] = {}
        self._daily_cache: dict[int, _TtlEntry] = {}
        self._quota_headers: dict[str, str] = {}

    def _headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.settings.anthropic_version,
        }

    def _get(
        self,
        path: str,
        params: list[tuple[str, str]],
        api_key: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Perform one GET and map failures onto the typed error kinds."""
        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=timeout or self._timeout,
                transport=self._transport,
            ) as client:
                resp = client.get(path, headers=self._headers(api_key or self._api_key), params=params)
        except httpx.TimeoutException:
            raise NetworkError("Anthropic API request timed out")
        except httpx.HTTPError as e:
            raise NetworkError(f"Anthropic API unreachable: {e}")

        self._capture_quota(resp.headers)

        status = resp.status_code
        if status in (401, 403):
            raise AuthError(f"Anthropic API rejected the key ({status})", status_code=status)
        if status == 429:
            raise RateLimited("Anthropic API rate limit hit", retry_after=_retry_after(resp))
        if status >= 400:
            detail = resp.text[:200]
            raise NetworkError(f"Anthropic API error {status}: {detail}", status_code=status)
        return resp

    def _capture_quota(self, headers: httpx.Headers) -> None:
        quota = {
            k.lower(): v for k, v in headers.items() if k.lower().startswith(QUOTA_HEADER_PREFIX)
        }
        if quota:
            with self._lock:
                self._quota_headers = quota

    def _paginate(self, path: str, params: list[tuple[str, str]]) -> list[dict[str, Any]]:
        """Follow ``has_more`` / ``next_page`` and return every bucket."""
        items: list[dict[str, Any]] = []
        page: str | None = None
        while True:
            query = list(params)
            if page:
                query.append(("page", page))
            resp = self._get(path, query)
            try:
                body = _Page.model_validate(resp.json())
            except (ValueError, ValidationError) as e:
                raise NetworkError(f"Malformed response from {path}: {e}")
            items.extend(body.data)
            if not body.has_more or not body.next_page:
                return items
            page = body.next_page

    def _usage_buckets(self, days: int, group_by_model: bool) -> list[UsageBucket]:
        starting_at, ending_at = report_window(days)
        params = [
            ("starting_at", starting_at),
            ("ending_at", ending_at),
            ("bucket_width", "1d"),
            ("limit", str(PAGE_LIMIT)),
        ]
        if group_by_model:
            params.append(("group_by[]", "model"))
        raw = self._paginate(USAGE_REPORT_PATH, params)
        try:
            return [UsageBucket.model_validate(b) for b in raw]
        except ValidationError as e:
            raise NetworkError(f"Malformed usage report: {e}")

    def fetch_cost_usd(self, days: int) -> float:
        """Actual spend in USD over the window; the API reports cents."""
        starting_at, ending_at = report_window(days)
        params = [
            ("starting_at", starting_at),
            ("ending_at", ending_at),
            ("bucket_width", "1d"),
            ("limit", str(PAGE_LIMIT)),
        ]
        total_cents = 0.0
        for raw in self._paginate(COST_REPORT_PATH, params):
            try:
                bucket = CostBucket.model_validate(raw)
            except ValidationError as e:
                raise NetworkError(f"Malformed cost report: {e}")
            for result in bucket.results:
                try:
                    total_cents += float(result.amount)
                except ValueError:
                    logger.debug("Ignoring non-numeric cost amount %r", result.amount)
        return round(total_cents / 100.0, 2)

    # ── Provider capabilities ─────────────────────────────────────────────

    def fetch_usage(self, days: int) -> UsageStats:
        with self._lock:
            cached = self._usage_cache.get(days)
        if cached and cached.fresh(self.settings.api_cache_ttl_seconds):
            return cached.data

        stats = UsageStats.empty(self.display_name)
        for bucket in self._usage_buckets(days, group_by_model=True):
            for result in bucket.results:
                name = result.model or "unknown"
                usage = stats.model_breakdown.get(name)
                if usage is None:
                    usage = stats.model_breakdown[name] = ModelUsage(model=name)
                usage.input_tokens += result.uncached_input_tokens
                usage.output_tokens += result.output_tokens
                usage.cache_read_tokens += result.cache_read_input_tokens
                usage.cache_write_tokens += result.cache_write_tokens
                if result.counts_as_message:
                    stats.total_messages += 1

        estimated = 0.0
        for usage in stats.model_breakdown.values():
            usage.cost_usd = estimate_cost(self.provider_type, usage)
            estimated += usage.cost_usd
            stats.total_input_tokens += usage.input_tokens
            stats.total_output_tokens += usage.output_tokens
            stats.total_cache_read_tokens += usage.cache_read_tokens
            stats.total_cache_write_tokens += usage.cache_write_tokens

        try:
            stats.estimated_cost_usd = self.fetch_cost_usd(days)
        except (NetworkError, RateLimited) as e:
            logger.warning("Cost report unavailable for %s, using price table: %s", self.profile.id, e)
            stats.estimated_cost_usd = round(estimated, 2)

        with self._lock:
            self._usage_cache[days] = _TtlEntry(stats)
        return stats

    def fetch_daily(self, days: int) -> list[DailyUsage]:
        with self._lock:
            cached = self._daily_cache.get(days)
        if cached and cached.fresh(self.settings.api_cache_ttl_seconds):
            return list(cached.data)

        daily = []
        for bucket in self._usage_buckets(days, group_by_model=False):
            record = DailyUsage(date=bucket.starting_at.split("T")[0])
            for result in bucket.results:
                record.input_tokens += (
                    result.uncached_input_tokens
                    + result.cache_read_input_tokens
                    + result.cache_write_tokens
                )
                record.output_tokens += result.output_tokens
                if result.counts_as_message:
                    record.messages += 1
            daily.append(record)
        daily.sort(key=lambda d: d.date, reverse=True)
        daily = daily[:days]

        with self._lock:
            self._daily_cache[days] = _TtlEntry(daily)
        return list(daily)

    def fetch_rate_limits(self) -> dict[str, str]:
        with self._lock:
            return dict(self._quota_headers)

    def validate_credential(self, secret: str) -> CredentialCheck:
        """Probe the key with the smallest possible usage report request."""
        if not secret:
            return CredentialCheck(CredentialStatus.INVALID, "empty key")
        starting_at, ending_at = report_window(1)
        params = [("starting_at", starting_at), ("ending_at", ending_at), ("limit", "1")]
        try:
            self._get(
                USAGE_REPORT_PATH,
                params,
                api_key=secret,
                timeout=self.settings.validate_timeout_seconds,
            )
        except AuthError as e:
            return CredentialCheck(CredentialStatus.INVALID, e.kind)
        except (NetworkError, RateLimited) as e:
            logger.info("Could not validate key: %s", e)
            return CredentialCheck(CredentialStatus.UNKNOWN, e.kind)
        return CredentialCheck(CredentialStatus.VALID)

    def clear_cache(self) -> None:
        with self._lock:
            self._usage_cache.clear()
            self._daily_cache.clear()


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
