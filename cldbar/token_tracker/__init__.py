from cldbar.token_tracker.aggregator import (
    Aggregate,
    daily_from_snapshots,
    fold,
    is_active,
    merge_snapshots,
    stats_from_snapshots,
)
from cldbar.token_tracker.models import (
    DailyUsage,
    DaySnapshot,
    FileCursor,
    ModelUsage,
    NormalizedEvent,
    RateLimitStatus,
    RateLimitWindow,
    Session,
    UsageStats,
)
from cldbar.token_tracker.parsers import LogFormat, ParseResult, parse_file

# The engine and rate-limit tracker depend on cldbar.providers, which in turn
# imports from this package; import them from their modules directly.

__all__ = [
    "Aggregate",
    "DailyUsage",
    "DaySnapshot",
    "FileCursor",
    "LogFormat",
    "ModelUsage",
    "NormalizedEvent",
    "ParseResult",
    "RateLimitStatus",
    "RateLimitWindow",
    "Session",
    "UsageStats",
    "daily_from_snapshots",
    "fold",
    "is_active",
    "merge_snapshots",
    "parse_file",
    "stats_from_snapshots",
]
