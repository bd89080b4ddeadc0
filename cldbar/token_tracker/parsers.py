"""Decode on-disk session logs into NormalizedEvents.

Supports the transcript formats written by the Claude Code and Gemini CLIs.
JSONL formats are read incrementally from a byte offset: only complete,
newline-terminated lines are consumed, so a record that is still being
written is picked up on the next pass instead of being counted as garbage.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from cldbar.errors import ParseError, SourceUnavailable
from cldbar.token_tracker.models import NormalizedEvent

logger = logging.getLogger(__name__)

# Epoch values above this are milliseconds (year 5138 in seconds)
_EPOCH_MS_THRESHOLD = 100_000_000_000


class LogFormat(str, Enum):
    CLAUDE_TRANSCRIPT = "claude_transcript"
    GEMINI_SESSION = "gemini_session"
    GEMINI_LEGACY = "gemini_legacy"

    @property
    def append_only(self) -> bool:
        return self is not LogFormat.GEMINI_LEGACY


@dataclass
class ParseResult:
    """Outcome of one pass over one file."""

    events: list[NormalizedEvent] = field(default_factory=list)
    offset: int = 0
    parse_errors: int = 0
    unavailable: SourceUnavailable | None = None


@dataclass
class ParseProgress:
    offset: int
    parse_errors: int = 0
    last_model: str = ""
    last_timestamp: datetime | None = None


def detect_format(path: Path) -> LogFormat | None:
    """Pick the decoding strategy from the file's name and location."""
    name = path.name
    if path.parent.name == "chats" and name.startswith("session-"):
        if name.endswith(".jsonl"):
            return LogFormat.GEMINI_SESSION
        if name.endswith(".json"):
            return LogFormat.GEMINI_LEGACY
    if name.endswith(".jsonl"):
        return LogFormat.CLAUDE_TRANSCRIPT
    return None


# ── Field helpers ────────────────────────────────────────────────────────────


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch seconds/milliseconds into an aware datetime."""
    if isinstance(value, bool):
        raise ParseError("boolean timestamp")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ParseError(f"bad epoch timestamp {value!r}: {e}") from e
    if isinstance(value, str) and value.strip():
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ParseError(f"bad timestamp {value!r}") from e
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts
    raise ParseError("missing timestamp")


def _tokens(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"{key} is not a number: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ParseError(f"{key} is not finite: {value!r}")
    if value < 0 or value != int(value):
        raise ParseError(f"{key} is not a non-negative integer: {value!r}")
    return int(value)


def _text(record: dict[str, Any], key: str) -> str:
    """Optional string field; empty when absent."""
    value = record.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"{key} is not a string: {value!r}")
    return value


# ── Per-format record decoders ───────────────────────────────────────────────


def _claude_event(record: Any, path: Path, progress: ParseProgress) -> NormalizedEvent | None:
    if not isinstance(record, dict):
        raise ParseError("record is not a JSON object")
    if record.get("type") != "assistant":
        return None
    message = record.get("message")
    if not isinstance(message, dict) or not message.get("usage"):
        return None
    usage = message["usage"]
    if not isinstance(usage, dict):
        raise ParseError("usage is not an object")

    model = _text(message, "model") or "unknown"
    if model == "<synthetic>":
        return None

    return NormalizedEvent(
        timestamp=parse_timestamp(record.get("timestamp")),
        session_id=_text(record, "sessionId") or path.stem,
        model=model,
        input_tokens=_tokens(usage, "input_tokens"),
        output_tokens=_tokens(usage, "output_tokens"),
        cache_read_tokens=_tokens(usage, "cache_read_input_tokens"),
        cache_write_tokens=_tokens(usage, "cache_creation_input_tokens"),
        project=path.parent.name,
    )


def _gemini_event(record: Any, path: Path, progress: ParseProgress) -> NormalizedEvent | None:
    if not isinstance(record, dict):
        raise ParseError("record is not a JSON object")
    model = _text(record, "model")
    if model:
        progress.last_model = model
    tokens = record.get("tokens")
    if tokens is None:
        with suppress(ParseError):
            progress.last_timestamp = parse_timestamp(record.get("timestamp"))
        return None
    if not isinstance(tokens, dict):
        raise ParseError("tokens is not an object")

    # Token records may omit the timestamp; the nearest earlier one stands in
    if record.get("timestamp") is None:
        ts = progress.last_timestamp or datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    else:
        ts = parse_timestamp(record["timestamp"])
    progress.last_timestamp = ts

    return NormalizedEvent(
        timestamp=ts,
        session_id=path.stem,
        model=progress.last_model or "gemini-unknown",
        input_tokens=_tokens(tokens, "input"),
        output_tokens=_tokens(tokens, "output"),
        project=path.parent.parent.name,
    )


_JSONL_DECODERS = {
    LogFormat.CLAUDE_TRANSCRIPT: _claude_event,
    LogFormat.GEMINI_SESSION: _gemini_event,
}


# ── Readers ──────────────────────────────────────────────────────────────────


def _complete_lines(path: Path, offset: int) -> Iterator[tuple[int, bytes]]:
    """Yield (end_offset, line) for every newline-terminated line after offset."""
    with open(path, "rb") as f:
        f.seek(offset)
        position = offset
        for raw in f:
            if not raw.endswith(b"\n"):
                # Partial write at the tail; leave it for the next pass
                return
            position += len(raw)
            yield position, raw


def iter_events(
    path: Path,
    fmt: LogFormat,
    progress: ParseProgress,
) -> Iterator[NormalizedEvent]:
    """Lazily decode events from a JSONL file, advancing ``progress``.

    OSError propagates to the caller; per-record failures only bump
    ``progress.parse_errors``.
    """
    decode = _JSONL_DECODERS[fmt]
    for end_offset, raw in _complete_lines(path, progress.offset):
        line = raw.strip()
        if line:
            try:
                record = json.loads(line.decode("utf-8"))
                event = decode(record, path, progress)
            except (UnicodeDecodeError, json.JSONDecodeError, ParseError) as e:
                progress.parse_errors += 1
                logger.debug("Skipping malformed record in %s before byte %d: %s", path, end_offset, e)
                event = None
            if event is not None:
                yield event
        progress.offset = end_offset


def read_json_document(path: Path) -> Any:
    """Read a whole-file JSON document.

    Raises OSError for unreadable files and ParseError for undecodable ones.
    """
    try:
        return json.loads(path.read_bytes().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"{path.name}: {e}") from e


def _parse_legacy(path: Path) -> ParseResult:
    size = path.stat().st_size
    mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    try:
        doc = read_json_document(path)
    except ParseError as e:
        logger.debug("Skipping malformed legacy session %s: %s", path, e)
        return ParseResult(offset=size, parse_errors=1)
    if not isinstance(doc, dict):
        return ParseResult(offset=size, parse_errors=1)

    fallback_ts: datetime = mtime
    for key in ("lastUpdated", "createdAt", "startTime"):
        if doc.get(key):
            try:
                fallback_ts = parse_timestamp(doc[key])
                break
            except ParseError:
                continue

    try:
        doc_model = _text(doc, "model") or "gemini-unknown"
    except ParseError as e:
        logger.debug("Skipping legacy session %s: %s", path, e)
        return ParseResult(offset=size, parse_errors=1)
    result = ParseResult(offset=size)
    messages = doc.get("messages")
    if not isinstance(messages, list):
        return result

    for message in messages:
        if not isinstance(message, dict) or message.get("tokens") is None:
            continue
        try:
            tokens = message["tokens"]
            if not isinstance(tokens, dict):
                raise ParseError("tokens is not an object")
            ts = parse_timestamp(message["timestamp"]) if message.get("timestamp") else fallback_ts
            result.events.append(
                NormalizedEvent(
                    timestamp=ts,
                    session_id=path.stem,
                    model=_text(message, "model") or doc_model,
                    input_tokens=_tokens(tokens, "input"),
                    output_tokens=_tokens(tokens, "output"),
                    project=path.parent.parent.name,
                )
            )
        except ParseError as e:
            result.parse_errors += 1
            logger.debug("Skipping malformed message in %s: %s", path, e)
    return result


def parse_file(path: Path, offset: int = 0, fmt: LogFormat | None = None) -> ParseResult:
    """Parse one source file from ``offset`` and return events plus the new offset.

    Never raises: unreadable files come back with ``unavailable`` set and no
    events, so one bad file cannot abort a provider scan.
    """
    fmt = fmt or detect_format(path)
    if fmt is None:
        return ParseResult(offset=offset)

    try:
        if fmt is LogFormat.GEMINI_LEGACY:
            return _parse_legacy(path)
        progress = ParseProgress(offset=offset)
        events = list(iter_events(path, fmt, progress))
    except OSError as e:
        logger.debug("Could not read %s: %s", path, e)
        return ParseResult(
            offset=offset,
            unavailable=SourceUnavailable(str(path), e.strerror or str(e)),
        )
    return ParseResult(events=events, offset=progress.offset, parse_errors=progress.parse_errors)
