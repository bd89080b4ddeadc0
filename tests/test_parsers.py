"""Tests for the log record parser."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from cldbar.errors import ParseError
from cldbar.token_tracker.parsers import (
    LogFormat,
    detect_format,
    parse_file,
    parse_timestamp,
    read_json_document,
)
from conftest import append_jsonl, assistant_record, write_jsonl


# -- Format detection ----------------------------------------------------------


class TestDetectFormat:
    def test_claude_transcript(self, tmp_path: Path):
        assert detect_format(tmp_path / "proj" / "abc.jsonl") is LogFormat.CLAUDE_TRANSCRIPT

    def test_gemini_session(self, tmp_path: Path):
        path = tmp_path / "tmp" / "hash" / "chats" / "session-1.jsonl"
        assert detect_format(path) is LogFormat.GEMINI_SESSION

    def test_gemini_legacy(self, tmp_path: Path):
        path = tmp_path / "tmp" / "hash" / "chats" / "session-1.json"
        assert detect_format(path) is LogFormat.GEMINI_LEGACY
        assert not LogFormat.GEMINI_LEGACY.append_only

    def test_unknown(self, tmp_path: Path):
        assert detect_format(tmp_path / "notes.txt") is None


# -- Timestamps ----------------------------------------------------------------


class TestParseTimestamp:
    def test_iso_with_z(self):
        ts = parse_timestamp("2026-02-19T10:00:05.000Z")
        assert ts == datetime(2026, 2, 19, 10, 0, 5, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-02-19 10:00:00").tzinfo == timezone.utc

    def test_epoch_seconds_and_millis_agree(self):
        assert parse_timestamp(1_771_495_200) == parse_timestamp(1_771_495_200_000)

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, {"t": 1}])
    def test_rejects_garbage(self, value):
        with pytest.raises(ParseError):
            parse_timestamp(value)


# -- Claude transcripts --------------------------------------------------------


class TestClaudeTranscript:
    def test_extracts_usage_from_assistant_records(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "my-project" / "sess.jsonl",
            [
                {"type": "user", "message": {"content": "hi"}, "timestamp": "2026-02-19T10:00:00Z"},
                assistant_record("s1", "2026-02-19T10:00:05Z", 100, 300, cache_read=2000, cache_write=500),
            ],
        )
        result = parse_file(path)
        assert result.parse_errors == 0
        assert len(result.events) == 1
        event = result.events[0]
        assert event.session_id == "s1"
        assert event.project == "my-project"
        assert event.model == "claude-sonnet-4-6"
        assert (event.input_tokens, event.output_tokens) == (100, 300)
        assert (event.cache_read_tokens, event.cache_write_tokens) == (2000, 500)
        assert result.offset == path.stat().st_size

    def test_session_id_falls_back_to_file_stem(self, tmp_path: Path):
        record = assistant_record("x", "2026-02-19T10:00:05Z", 1, 1)
        del record["sessionId"]
        path = write_jsonl(tmp_path / "p" / "stem-id.jsonl", [record])
        assert parse_file(path).events[0].session_id == "stem-id"

    def test_synthetic_model_is_ignored(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [assistant_record("s", "2026-02-19T10:00:05Z", 5, 5, model="<synthetic>")],
        )
        result = parse_file(path)
        assert result.events == []
        assert result.parse_errors == 0

    def test_malformed_record_does_not_abort_file(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [
                assistant_record("s", "2026-02-19T10:00:00Z", 1, 1),
                "{not json",
                assistant_record("s", "2026-02-19T10:00:02Z", 2, 2),
            ],
        )
        result = parse_file(path)
        assert len(result.events) == 2
        assert result.parse_errors == 1

    @pytest.mark.parametrize("bad", [-5, "12", 1.5, True])
    def test_bad_token_counts_are_parse_errors(self, tmp_path: Path, bad):
        record = assistant_record("s", "2026-02-19T10:00:00Z", 1, 1)
        record["message"]["usage"]["output_tokens"] = bad
        path = write_jsonl(tmp_path / "p" / "s.jsonl", [record])
        result = parse_file(path)
        assert result.events == []
        assert result.parse_errors == 1

    @pytest.mark.parametrize("literal", ["1e400", "-1e400", "Infinity", "-Infinity", "NaN"])
    def test_non_finite_token_counts_are_parse_errors(self, tmp_path: Path, literal):
        bad = json.dumps(assistant_record("s", "2026-02-19T10:00:01Z", 987654321, 1))
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [
                assistant_record("s", "2026-02-19T10:00:00Z", 1, 1),
                bad.replace("987654321", literal),
                assistant_record("s", "2026-02-19T10:00:02Z", 2, 2),
            ],
        )
        result = parse_file(path)
        assert [e.input_tokens for e in result.events] == [1, 2]
        assert result.parse_errors == 1
        assert result.offset == path.stat().st_size

    @pytest.mark.parametrize("model", [123, ["claude-opus-4"], {"id": "claude-opus-4"}])
    def test_non_string_model_is_parse_error(self, tmp_path: Path, model):
        record = assistant_record("s", "2026-02-19T10:00:00Z", 1, 1)
        record["message"]["model"] = model
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [record, assistant_record("s", "2026-02-19T10:00:01Z", 2, 2)],
        )
        result = parse_file(path)
        assert [e.model for e in result.events] == ["claude-sonnet-4-6"]
        assert result.parse_errors == 1

    def test_non_string_session_id_is_parse_error(self, tmp_path: Path):
        record = assistant_record("s", "2026-02-19T10:00:00Z", 1, 1)
        record["sessionId"] = 42
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [record, assistant_record("s", "2026-02-19T10:00:01Z", 2, 2)],
        )
        result = parse_file(path)
        assert [e.session_id for e in result.events] == ["s"]
        assert result.parse_errors == 1

    def test_missing_timestamp_is_parse_error(self, tmp_path: Path):
        record = assistant_record("s", "", 1, 1)
        path = write_jsonl(tmp_path / "p" / "s.jsonl", [record])
        assert parse_file(path).parse_errors == 1

    def test_blank_lines_are_not_errors(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            ["", assistant_record("s", "2026-02-19T10:00:00Z", 1, 1), "   "],
        )
        result = parse_file(path)
        assert len(result.events) == 1
        assert result.parse_errors == 0

    def test_invalid_utf8_is_parse_error(self, tmp_path: Path):
        path = tmp_path / "p" / "s.jsonl"
        path.parent.mkdir(parents=True)
        good = json.dumps(assistant_record("s", "2026-02-19T10:00:00Z", 1, 1)).encode()
        path.write_bytes(b"\xff\xfe{bad}\n" + good + b"\n")
        result = parse_file(path)
        assert len(result.events) == 1
        assert result.parse_errors == 1


# -- Incremental reads ---------------------------------------------------------


class TestIncremental:
    def test_partial_tail_line_is_left_for_next_pass(self, tmp_path: Path):
        path = tmp_path / "p" / "s.jsonl"
        first = json.dumps(assistant_record("s", "2026-02-19T10:00:00Z", 1, 1))
        second = json.dumps(assistant_record("s", "2026-02-19T10:00:01Z", 2, 2))
        path.parent.mkdir(parents=True)
        path.write_text(first + "\n" + second[:20], encoding="utf-8")

        result = parse_file(path)
        assert len(result.events) == 1
        assert result.parse_errors == 0
        assert result.offset == len(first) + 1

        # The writer finishes the line
        path.write_text(first + "\n" + second + "\n", encoding="utf-8")
        resumed = parse_file(path, offset=result.offset)
        assert len(resumed.events) == 1
        assert resumed.events[0].input_tokens == 2
        assert resumed.offset == path.stat().st_size

    def test_resume_from_offset_never_double_counts(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [assistant_record("s", "2026-02-19T10:00:00Z", 10, 1)],
        )
        first = parse_file(path)
        append_jsonl(path, [assistant_record("s", "2026-02-19T10:05:00Z", 20, 2)])
        second = parse_file(path, offset=first.offset)

        total = sum(e.input_tokens for e in first.events + second.events)
        assert total == 30
        assert full_total(path) == 30

    def test_offset_at_eof_yields_nothing(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "p" / "s.jsonl",
            [assistant_record("s", "2026-02-19T10:00:00Z", 10, 1)],
        )
        size = path.stat().st_size
        result = parse_file(path, offset=size)
        assert result.events == []
        assert result.offset == size


def full_total(path: Path) -> int:
    return sum(e.input_tokens for e in parse_file(path).events)


# -- Gemini --------------------------------------------------------------------


class TestGemini:
    def test_session_jsonl_tracks_last_model(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "tmp" / "abc123" / "chats" / "session-42.jsonl",
            [
                {"type": "info", "model": "gemini-2.5-pro", "timestamp": "2026-02-19T10:00:00Z"},
                {"type": "gemini", "tokens": {"input": 40, "output": 8, "cached": 3},
                 "timestamp": "2026-02-19T10:00:01Z"},
                {"type": "gemini", "model": "gemini-2.5-flash", "tokens": {"input": 5, "output": 1},
                 "timestamp": "2026-02-19T10:00:02Z"},
            ],
        )
        events = parse_file(path).events
        assert [e.model for e in events] == ["gemini-2.5-pro", "gemini-2.5-flash"]
        assert events[0].session_id == "session-42"
        assert events[0].project == "abc123"
        assert events[0].input_tokens == 40
        assert events[0].cache_read_tokens == 0

    def test_legacy_document_uses_fallback_timestamp(self, tmp_path: Path):
        path = tmp_path / "tmp" / "h" / "chats" / "session-old.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({
            "model": "gemini-1.5-pro",
            "createdAt": "2026-01-05T08:00:00Z",
            "messages": [
                {"role": "user", "content": "x"},
                {"role": "model", "tokens": {"input": 7, "output": 3}},
            ],
        }), encoding="utf-8")
        result = parse_file(path)
        assert len(result.events) == 1
        event = result.events[0]
        assert event.timestamp == datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)
        assert event.model == "gemini-1.5-pro"
        assert result.offset == path.stat().st_size

    def test_session_jsonl_without_timestamp_uses_previous_one(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "tmp" / "abc123" / "chats" / "session-1.jsonl",
            [
                {"type": "info", "model": "gemini-2.5-pro", "timestamp": "2026-02-19T10:00:00Z"},
                {"type": "gemini", "tokens": {"input": 4, "output": 2}},
            ],
        )
        result = parse_file(path)
        assert result.parse_errors == 0
        (event,) = result.events
        assert event.timestamp == datetime(2026, 2, 19, 10, 0, tzinfo=timezone.utc)

    def test_session_jsonl_without_any_timestamp_uses_mtime(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "tmp" / "abc123" / "chats" / "session-2.jsonl",
            [{"type": "gemini", "tokens": {"input": 4, "output": 2}}],
        )
        mtime = datetime(2026, 2, 20, 7, 30, tzinfo=timezone.utc).timestamp()
        os.utime(path, (mtime, mtime))
        result = parse_file(path)
        assert result.parse_errors == 0
        (event,) = result.events
        assert event.timestamp == datetime(2026, 2, 20, 7, 30, tzinfo=timezone.utc)
        assert event.model == "gemini-unknown"

    def test_session_jsonl_non_string_model_is_parse_error(self, tmp_path: Path):
        path = write_jsonl(
            tmp_path / "tmp" / "abc123" / "chats" / "session-3.jsonl",
            [
                {"type": "gemini", "model": 7, "tokens": {"input": 1, "output": 1},
                 "timestamp": "2026-02-19T10:00:00Z"},
                {"type": "gemini", "model": "gemini-2.5-flash", "tokens": {"input": 5, "output": 1},
                 "timestamp": "2026-02-19T10:00:01Z"},
            ],
        )
        result = parse_file(path)
        assert [e.model for e in result.events] == ["gemini-2.5-flash"]
        assert result.parse_errors == 1

    def test_legacy_bad_messages_are_counted(self, tmp_path: Path):
        path = tmp_path / "tmp" / "h" / "chats" / "session-mixed.json"
        path.parent.mkdir(parents=True)
        path.write_text(
            '{"model": "gemini-1.5-pro", "createdAt": "2026-01-05T08:00:00Z", "messages": ['
            '{"role": "model", "tokens": {"input": 1e400, "output": 1}},'
            '{"role": "model", "model": {}, "tokens": {"input": 2, "output": 1}},'
            '{"role": "model", "tokens": {"input": 7, "output": 3}}]}',
            encoding="utf-8",
        )
        result = parse_file(path)
        assert [e.input_tokens for e in result.events] == [7]
        assert result.parse_errors == 2

    def test_legacy_non_string_document_model(self, tmp_path: Path):
        path = tmp_path / "tmp" / "h" / "chats" / "session-odd.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({
            "model": ["gemini-1.5-pro"],
            "messages": [{"role": "model", "tokens": {"input": 7, "output": 3}}],
        }), encoding="utf-8")
        result = parse_file(path)
        assert result.events == []
        assert result.parse_errors == 1

    def test_legacy_garbage_counts_one_error(self, tmp_path: Path):
        path = tmp_path / "tmp" / "h" / "chats" / "session-bad.json"
        path.parent.mkdir(parents=True)
        path.write_text("{{{", encoding="utf-8")
        result = parse_file(path)
        assert result.events == []
        assert result.parse_errors == 1


# -- Unavailable sources -------------------------------------------------------


class TestUnavailable:
    def test_missing_file_yields_no_events(self, tmp_path: Path):
        result = parse_file(tmp_path / "p" / "gone.jsonl")
        assert result.events == []
        assert result.unavailable is not None
        assert result.unavailable.kind == "source_unavailable"

    def test_directory_yields_no_events(self, tmp_path: Path):
        path = tmp_path / "p" / "dir.jsonl"
        path.mkdir(parents=True)
        result = parse_file(path)
        assert result.events == []
        assert result.unavailable is not None

    def test_read_json_document_raises_parse_error(self, tmp_path: Path):
        path = tmp_path / "x.json"
        path.write_text("nope", encoding="utf-8")
        with pytest.raises(ParseError):
            read_json_document(path)
