"""Local z.ai account: a ``sessions.db`` SQLite file written by the z.ai CLI.

The database is opened read-only through a ``mode=ro`` URI.  It has no byte
offsets to resume from, so any change to the file (or its WAL) rereads the
``messages`` table in full; an unchanged file reuses its cursor.

Sessions are counted from the distinct ``session_id`` values in ``messages``,
so a row in ``sessions`` with no messages yet does not add to the count.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime
from pathlib import Path

from cldbar.errors import ParseError, SourceUnavailable
from cldbar.providers.base import LocalLogProvider, ProviderKind, ScanResult, SourceFile
from cldbar.token_tracker.aggregator import fold_into
from cldbar.token_tracker.models import FileCursor, NormalizedEvent
from cldbar.token_tracker.parsers import parse_timestamp

logger = logging.getLogger(__name__)

_MESSAGES_QUERY = """
    SELECT m.session_id,
           COALESCE(m.model, 'unknown')    AS model,
           COALESCE(m.input_tokens, 0)     AS input_tokens,
           COALESCE(m.output_tokens, 0)    AS output_tokens,
           m.created_at,
           COALESCE(s.working_directory, s.name, '') AS project
    FROM messages m
    LEFT JOIN sessions s ON s.id = m.session_id
    ORDER BY m.created_at
"""


class ZaiProvider(LocalLogProvider):
    kind = ProviderKind.LOCAL_ZAI
    provider_type = "zai"
    display_name = "z.ai"

    @property
    def db_path(self) -> Path:
        override = os.environ.get("ZAI_CONFIG_PATH")
        if override:
            return Path(override).expanduser()
        return self.profile.config_path / "sessions.db"

    def discover(self) -> list[SourceFile]:
        """The database as one source; its WAL companion counts toward the stat."""
        db = self.db_path
        try:
            st = db.stat()
        except OSError:
            return []
        size, mtime_ns = st.st_size, st.st_mtime_ns
        wal = db.with_name(db.name + "-wal")
        try:
            wst = wal.stat()
            size += wst.st_size
            mtime_ns = max(mtime_ns, wst.st_mtime_ns)
        except OSError:
            pass
        return [SourceFile(path=db, size=size, mtime_ns=mtime_ns)]

    def scan(self, since: datetime | None, cursors: dict[str, FileCursor]) -> ScanResult:
        result = ScanResult()
        for src in self.discover():
            if since is not None and src.mtime < since:
                continue
            prev = cursors.get(src.key)
            if prev is not None and prev.size == src.size and prev.mtime_ns == src.mtime_ns:
                result.cursors[src.key] = prev
                result.files_reused += 1
                continue
            try:
                events, errors = self._read_events(src.path)
            except sqlite3.Error as e:
                logger.warning("Could not read z.ai database %s: %s", src.path, e)
                result.unavailable.append(SourceUnavailable(src.key, str(e)))
                continue

            cursor = FileCursor(
                path=src.key,
                offset=src.size,
                size=src.size,
                mtime_ns=src.mtime_ns,
                append_only=False,
                parse_errors=errors,
            )
            fold_into(cursor.days, cursor.sessions, events, self.tz)
            result.cursors[src.key] = cursor
            result.parse_errors += errors
            result.files_parsed += 1
        return result

    def _read_events(self, db: Path) -> tuple[list[NormalizedEvent], int]:
        conn = sqlite3.connect(f"{db.resolve().as_uri()}?mode=ro", uri=True, timeout=5)
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(_MESSAGES_QUERY).fetchall()
        finally:
            conn.close()

        events: list[NormalizedEvent] = []
        errors = 0
        for row in rows:
            try:
                input_tokens = int(row["input_tokens"])
                output_tokens = int(row["output_tokens"])
                if input_tokens < 0 or output_tokens < 0:
                    raise ParseError("negative token count")
                events.append(
                    NormalizedEvent(
                        timestamp=parse_timestamp(row["created_at"]),
                        session_id=str(row["session_id"]),
                        model=str(row["model"]),
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        project=Path(row["project"]).name if row["project"] else "",
                    )
                )
            except (ParseError, OverflowError, TypeError, ValueError) as e:
                errors += 1
                logger.debug("Skipping malformed z.ai message row: %s", e)
        return events, errors
