"""Persistent usage cache: SQLite-backed per-day snapshots and file cursors.

Two tables, both keyed by profile:

* ``day_cache``    (profile_id, day) → DaySnapshot JSON + fingerprint
* ``file_cursors`` (profile_id, path) → FileCursor JSON

An entry is only valid while its fingerprint matches the current state of
the sources that produced it; stale entries are overwritten whole, never
patched.  The schema version lives in ``meta``; a mismatch drops every
cache table so the next refresh recomputes from scratch.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from cldbar.errors import CacheCorruption
from cldbar.token_tracker.models import DaySnapshot, FileCursor

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_CACHE_TABLES = ("day_cache", "file_cursors")


def fingerprint(parts: Iterable[str]) -> str:
    """Order-insensitive SHA-256 over fingerprint parts."""
    digest = hashlib.sha256()
    for part in sorted(parts):
        digest.update(part.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def content_digest(path: str | Path) -> str:
    """SHA-256 of a file's bytes, for filesystems with unreliable mtimes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def cursor_fingerprint(cursors: Iterable[FileCursor], mode: str = "stat") -> str:
    """Fingerprint of the files behind a set of cursors.

    ``stat`` mode hashes ``path|size|mtime_ns``; ``content`` mode hashes
    ``path|sha256(bytes)`` and treats unreadable files as ``path|missing``.
    """
    if mode != "content":
        return fingerprint(c.fingerprint_part() for c in cursors)
    parts = []
    for c in cursors:
        try:
            parts.append(f"{c.path}|{content_digest(c.path)}")
        except OSError:
            parts.append(f"{c.path}|missing")
    return fingerprint(parts)


@dataclass
class CacheEntry:
    profile_id: str
    day: str
    snapshot: DaySnapshot
    fingerprint: str
    updated_at: float = 0.0


class CacheStore:
    """SQLite-backed cache of day snapshots and file resume cursors."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'"
            ).fetchone()
            found = row["value"] if row else None
            if found is not None and found != str(SCHEMA_VERSION):
                logger.info(
                    "Cache schema %s != %s, dropping cached data", found, SCHEMA_VERSION
                )
                for table in _CACHE_TABLES:
                    conn.execute(f"DROP TABLE IF EXISTS {table}")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS day_cache (
                    profile_id  TEXT NOT NULL,
                    day         TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    payload     TEXT NOT NULL,
                    updated_at  REAL NOT NULL,
                    PRIMARY KEY (profile_id, day)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS file_cursors (
                    profile_id TEXT NOT NULL,
                    path       TEXT NOT NULL,
                    payload    TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (profile_id, path)
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )

    def _lock(self, profile_id: str, day: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((profile_id, day))
            if lock is None:
                lock = self._locks[(profile_id, day)] = threading.Lock()
            return lock

    @property
    def schema_version(self) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'"
            ).fetchone()
        return int(row["value"]) if row else 0

    # ── Day snapshots ─────────────────────────────────────────────────────

    def get(self, profile_id: str, day: str) -> CacheEntry | None:
        """Return the stored entry for (profile, day), or None.

        Rows whose payload no longer decodes are deleted and reported as a miss.
        """
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM day_cache WHERE profile_id = ? AND day = ?",
                (profile_id, day),
            ).fetchone()
        if row is None:
            return None
        try:
            snapshot = _decode_snapshot(row["payload"])
        except CacheCorruption as e:
            logger.warning("Dropping corrupt cache row %s/%s: %s", profile_id, day, e)
            self._delete_day(profile_id, day)
            return None
        return CacheEntry(
            profile_id=profile_id,
            day=day,
            snapshot=snapshot,
            fingerprint=row["fingerprint"],
            updated_at=row["updated_at"],
        )

    def lookup(self, profile_id: str, day: str, fp: str) -> DaySnapshot | None:
        """Snapshot for (profile, day) only if it was built from ``fp``."""
        entry = self.get(profile_id, day)
        if entry is None or entry.fingerprint != fp:
            return None
        return entry.snapshot

    def put(self, profile_id: str, day: str, snapshot: DaySnapshot, fp: str) -> None:
        """Write (or overwrite) one day's snapshot in a single transaction."""
        payload = json.dumps(snapshot.to_payload(), separators=(",", ":"))
        with self._lock(profile_id, day):
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO day_cache
                        (profile_id, day, fingerprint, payload, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (profile_id, day, fp, payload, time.time()),
                )

    def days(self, profile_id: str) -> list[str]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT day FROM day_cache WHERE profile_id = ? ORDER BY day DESC",
                (profile_id,),
            ).fetchall()
        return [r["day"] for r in rows]

    def _delete_day(self, profile_id: str, day: str) -> None:
        with self._lock(profile_id, day):
            with self._conn() as conn:
                conn.execute(
                    "DELETE FROM day_cache WHERE profile_id = ? AND day = ?",
                    (profile_id, day),
                )

    # ── File cursors ──────────────────────────────────────────────────────

    def get_cursors(self, profile_id: str) -> dict[str, FileCursor]:
        """All resume cursors for a profile, keyed by path."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT path, payload FROM file_cursors WHERE profile_id = ?",
                (profile_id,),
            ).fetchall()

        cursors: dict[str, FileCursor] = {}
        corrupt: list[str] = []
        for row in rows:
            try:
                cursors[row["path"]] = _decode_cursor(row["payload"])
            except CacheCorruption as e:
                logger.warning("Dropping corrupt cursor for %s: %s", row["path"], e)
                corrupt.append(row["path"])
        if corrupt:
            with self._conn() as conn:
                conn.executemany(
                    "DELETE FROM file_cursors WHERE profile_id = ? AND path = ?",
                    [(profile_id, p) for p in corrupt],
                )
        return cursors

    def put_cursors(self, profile_id: str, cursors: dict[str, FileCursor]) -> None:
        """Replace a profile's cursor set atomically.

        Cursors for files that are no longer present are removed.
        """
        now = time.time()
        rows = [
            (profile_id, path, json.dumps(c.to_payload(), separators=(",", ":")), now)
            for path, c in cursors.items()
        ]
        with self._lock(profile_id, "*cursors*"):
            with self._conn() as conn:
                conn.execute("DELETE FROM file_cursors WHERE profile_id = ?", (profile_id,))
                conn.executemany(
                    """
                    INSERT INTO file_cursors (profile_id, path, payload, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    rows,
                )

    # ── Maintenance ───────────────────────────────────────────────────────

    def invalidate(self, profile_id: str) -> None:
        """Forget everything cached for one profile."""
        with self._conn() as conn:
            for table in _CACHE_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE profile_id = ?", (profile_id,))
        logger.info("Invalidated cache for profile %s", profile_id)

    def prune(self, keep_profile_ids: Iterable[str]) -> int:
        """Drop rows belonging to profiles that are no longer configured."""
        keep = list(keep_profile_ids)
        placeholders = ",".join("?" for _ in keep)
        removed = 0
        with self._conn() as conn:
            for table in _CACHE_TABLES:
                if keep:
                    cur = conn.execute(
                        f"DELETE FROM {table} WHERE profile_id NOT IN ({placeholders})",
                        keep,
                    )
                else:
                    cur = conn.execute(f"DELETE FROM {table}")
                removed += cur.rowcount
        if removed:
            logger.info("Pruned %d cache rows for removed profiles", removed)
        return removed


def _decode_snapshot(payload: str) -> DaySnapshot:
    try:
        return DaySnapshot.from_payload(json.loads(payload))
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise CacheCorruption(f"undecodable day snapshot: {e}") from e


def _decode_cursor(payload: str) -> FileCursor:
    try:
        return FileCursor.from_payload(json.loads(payload))
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise CacheCorruption(f"undecodable file cursor: {e}") from e
