"""Persistent cache of per-day snapshots and per-file resume cursors."""

from .store import CacheEntry, CacheStore, content_digest, cursor_fingerprint, fingerprint

__all__ = [
    "CacheEntry",
    "CacheStore",
    "content_digest",
    "cursor_fingerprint",
    "fingerprint",
]
