"""Typed error kinds raised and absorbed by the usage engine.

Recoverable kinds (ParseError, SourceUnavailable, CacheCorruption) are
normally caught close to where they happen and turned into empty or partial
results.  The remote kinds (NetworkError, AuthError, RateLimited) and
ConfigInvalid / ProfileNotFound are surfaced to the caller for one profile.
"""

from __future__ import annotations


class UsageError(Exception):
    """Base class for every error the engine raises."""

    kind = "usage_error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.kind
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ParseError(UsageError):
    """A single record could not be decoded."""

    kind = "parse_error"

    def __init__(self, message: str = "", line_no: int | None = None) -> None:
        self.line_no = line_no
        super().__init__(message)


class SourceUnavailable(UsageError):
    """A file or directory is missing or unreadable."""

    kind = "source_unavailable"

    def __init__(self, path: str, reason: str = "") -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if reason else path)


class NetworkError(UsageError):
    """A remote call failed at the transport level or with a 5xx."""

    kind = "network_error"

    def __init__(self, message: str = "", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class AuthError(UsageError):
    """The remote API rejected the credential (401/403)."""

    kind = "auth_error"

    def __init__(self, message: str = "", status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RateLimited(UsageError):
    """The remote API throttled us (429)."""

    kind = "rate_limited"

    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class CacheCorruption(UsageError):
    """A persisted cache row could not be decoded."""

    kind = "cache_corruption"


class ConfigInvalid(UsageError):
    """A profile is missing required fields or names an unknown provider."""

    kind = "config_invalid"


class ProfileNotFound(UsageError):
    kind = "profile_not_found"

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile not found: {profile_id}")
