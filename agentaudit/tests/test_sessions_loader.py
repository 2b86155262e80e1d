import json
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agentaudit.date_utils import parse_timestamp_ms
from agentaudit.parsers.entries import get_text_content, parse_jsonl_content
from agentaudit.parsers.sessions import (
    build_flags,
    calculate_stats,
    extract_session_metadata,
    load_session,
    load_session_summary,
    token_percent,
)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _message(entry_id: str, timestamp: str, **message) -> dict:
    return {"type": "message", "id": entry_id, "timestamp": timestamp, "message": message}


class SessionLoaderTests(unittest.TestCase):
    def _write_jsonl(self, lines: list, relative_path: str = "session.jsonl") -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines),
            encoding="utf-8",
        )
        return path

    def test_summary_rolls_up_counts_tokens_and_model(self) -> None:
        path = self._write_jsonl(
            [
                {"type": "session", "id": "sess-1", "timestamp": "2026-02-16T10:00:00Z", "cwd": "/work/repo"},
                _message("m1", "2026-02-16T10:00:01Z", role="user", content="list the files"),
                _message(
                    "m2",
                    "2026-02-16T10:00:02Z",
                    role="assistant",
                    provider="anthropic",
                    model="claude-sonnet",
                    content=[
                        {"type": "toolCall", "id": "c1", "name": "bash", "arguments": {"command": "ls"}},
                        {"type": "toolCall", "id": "c2", "name": "read", "arguments": {"path": "a.py"}},
                    ],
                    usage={"input": 1000, "output": 500, "cacheRead": 0, "cacheWrite": 0, "totalTokens": 1500},
                ),
                _message("m3", "2026-02-16T10:00:03Z", role="toolResult", toolName="bash", isError=True),
                _message("m4", "2026-02-16T10:00:04Z", role="toolResult", toolName="read"),
            ]
        )

        summary = load_session_summary("alpha", path)

        self.assertIsNotNone(summary)
        assert summary is not None
        self.assertEqual(summary.id, "sess-1")
        self.assertEqual(summary.agentName, "alpha")
        self.assertEqual(summary.filePath, str(path))
        self.assertEqual(summary.eventCount, 5)
        self.assertEqual(summary.messageCount, 4)
        self.assertEqual(summary.toolCallCount, 2)
        self.assertEqual(summary.toolResultCount, 2)
        self.assertEqual(summary.errorCount, 1)
        self.assertEqual(summary.compactionCount, 0)
        self.assertEqual(summary.tokens, "1.5k")
        self.assertEqual(summary.tokenPercent, 1)
        self.assertEqual(summary.model, "claude-sonnet")
        self.assertEqual(summary.provider, "anthropic")
        self.assertEqual(summary.flags, ["err"])
        self.assertEqual(summary.timestamp, datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(summary.lastActivity, datetime(2026, 2, 16, 10, 0, 4, tzinfo=timezone.utc))
        self.assertFalse(summary.isDeleted)
        self.assertIsNone(summary.topicId)

    def test_entry_count_includes_entries_with_bad_timestamps(self) -> None:
        now = datetime.now(timezone.utc)
        path = self._write_jsonl(
            [
                _message("t0", _iso(now - timedelta(minutes=5)), role="user", content="valid"),
                _message("t1", _iso(now + timedelta(minutes=10)), role="user", content="future"),
                _message("t2", "not a timestamp", role="user", content="broken"),
            ]
        )

        session = load_session("alpha", path)
        summary = load_session_summary("alpha", path)

        assert session is not None and summary is not None
        self.assertEqual(len(session.entries), 3)
        self.assertEqual(session.stats.messageCount, 3)
        self.assertEqual(summary.eventCount, 3)
        # Only the valid timestamp counts toward activity
        expected_ms = parse_timestamp_ms(session.entries[0].timestamp)
        self.assertAlmostEqual(summary.lastActivity.timestamp() * 1000, expected_ms, delta=1)

    def test_compaction_and_missing_model_flags(self) -> None:
        path = self._write_jsonl(
            [
                {"type": "session", "id": "s", "timestamp": "2026-02-16T10:00:00Z"},
                {"type": "compaction", "id": "c", "timestamp": "2026-02-16T11:00:00Z", "summary": "trimmed"},
            ]
        )
        summary = load_session_summary("alpha", path)
        assert summary is not None
        self.assertEqual(summary.compactionCount, 1)
        self.assertEqual(summary.model, "unknown")
        self.assertEqual(summary.flags, ["compact", "model?"])

    def test_file_name_conventions(self) -> None:
        path = self._write_jsonl(
            [{"type": "session", "id": "s", "timestamp": "2026-02-16T10:00:00Z"}],
            relative_path="chat-topic-3f2a-9b.deleted.2026-02-17.jsonl",
        )
        session = load_session("alpha", path)
        assert session is not None
        self.assertTrue(session.isDeleted)
        self.assertEqual(session.topicId, "3f2a-9b")

    def test_missing_file_is_reported_not_raised(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        missing = Path(tmpdir.name) / "gone.jsonl"

        with self.assertLogs("agentaudit.sessions", level="ERROR"):
            self.assertIsNone(load_session("alpha", missing))
        with self.assertLogs("agentaudit.sessions", level="ERROR"):
            self.assertIsNone(load_session_summary("alpha", missing))

    def test_invalid_utf8_bytes_only_affect_their_line(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "mixed.jsonl"
        good = json.dumps({"type": "session", "id": "s1", "timestamp": "2026-02-16T10:00:00Z"}).encode("utf-8")
        accented = b'{"type": "message", "id": "m1", "timestamp": "2026-02-16T10:00:01Z", "message": {"role": "user", "content": "caf\xff"}}'
        path.write_bytes(b"\n".join([good, accented, b"\xff\xfe\xfa not utf-8"]))

        with self.assertLogs("agentaudit.parser", level="WARNING"):
            session = load_session("alpha", path)

        self.assertIsNotNone(session)
        assert session is not None
        self.assertEqual([entry.id for entry in session.entries], ["s1", "m1"])
        self.assertEqual(session.id, "s1")
        self.assertEqual(get_text_content(session.entries[1]), "caf\ufffd")


class SessionMetadataTests(unittest.TestCase):
    def test_model_change_wins_over_assistant_model(self) -> None:
        entries = parse_jsonl_content(
            "\n".join(
                json.dumps(line)
                for line in [
                    {"type": "model_change", "timestamp": "2026-02-16T10:00:00Z", "provider": "openai", "modelId": "gpt-5"},
                    {"type": "model_change", "timestamp": "2026-02-16T10:01:00Z", "provider": "", "modelId": ""},
                    _message("m1", "2026-02-16T10:02:00Z", role="assistant", provider="anthropic", model="claude"),
                ]
            )
        )
        metadata = extract_session_metadata(entries)
        self.assertEqual(metadata.model, "gpt-5")
        self.assertEqual(metadata.provider, "openai")

    def test_provider_is_resolved_independently_of_model(self) -> None:
        entries = parse_jsonl_content(
            "\n".join(
                json.dumps(line)
                for line in [
                    _message("m1", "2026-02-16T10:00:00Z", role="assistant", provider="anthropic", model="claude"),
                    {"type": "model_change", "timestamp": "2026-02-16T10:01:00Z", "modelId": "gpt-5"},
                    {"type": "model_change", "timestamp": "2026-02-16T10:02:00Z", "provider": "openai", "modelId": ""},
                ]
            )
        )
        metadata = extract_session_metadata(entries)
        self.assertEqual(metadata.model, "gpt-5")
        self.assertEqual(metadata.provider, "openai")

        without_provider = entries[:2]
        metadata = extract_session_metadata(without_provider)
        self.assertEqual(metadata.model, "gpt-5")
        self.assertEqual(metadata.provider, "anthropic")

    def test_out_of_range_session_timestamp_falls_back_to_entries(self) -> None:
        entries = parse_jsonl_content(
            "\n".join(
                json.dumps(line)
                for line in [
                    {"type": "session", "id": "s1", "timestamp": "9999-12-31T23:59:59-10:00"},
                    _message("m1", "2026-02-16T10:03:00Z", role="user"),
                    _message("m2", "2026-02-16T10:01:00Z", role="user"),
                ]
            )
        )
        metadata = extract_session_metadata(entries)
        self.assertEqual(metadata.id, "s1")
        self.assertEqual(metadata.timestamp, datetime(2026, 2, 16, 10, 1, tzinfo=timezone.utc))
        self.assertEqual(metadata.lastActivity, datetime(2026, 2, 16, 10, 3, tzinfo=timezone.utc))

    def test_most_recent_assistant_model_is_the_fallback(self) -> None:
        entries = parse_jsonl_content(
            "\n".join(
                json.dumps(line)
                for line in [
                    _message("m1", "2026-02-16T10:00:00Z", role="assistant", provider="anthropic", model="claude-old"),
                    _message("m2", "2026-02-16T10:01:00Z", role="assistant", provider="anthropic", model="claude-new"),
                ]
            )
        )
        self.assertEqual(extract_session_metadata(entries).model, "claude-new")

    def test_start_falls_back_to_earliest_valid_timestamp(self) -> None:
        entries = parse_jsonl_content(
            "\n".join(
                json.dumps(line)
                for line in [
                    _message("m1", "2026-02-16T10:05:00Z", role="user"),
                    _message("m2", "2026-02-16T10:01:00Z", role="user"),
                    _message("m3", "garbage", role="user"),
                ]
            )
        )
        metadata = extract_session_metadata(entries)
        self.assertEqual(metadata.id, "unknown")
        self.assertEqual(metadata.timestamp, datetime(2026, 2, 16, 10, 1, tzinfo=timezone.utc))
        self.assertEqual(metadata.lastActivity, datetime(2026, 2, 16, 10, 5, tzinfo=timezone.utc))

    def test_empty_session_uses_now(self) -> None:
        before = time.time()
        metadata = extract_session_metadata([])
        self.assertGreaterEqual(metadata.timestamp.timestamp(), before - 1)
        self.assertEqual(metadata.cwd, "")


class StatsAndFlagsTests(unittest.TestCase):
    def test_stats_fold_is_independent_per_call(self) -> None:
        entries = parse_jsonl_content(
            json.dumps(_message("m", "2026-02-16T10:00:00Z", role="assistant", usage={"totalTokens": 10}))
        )
        first = calculate_stats(entries)
        second = calculate_stats(entries)
        self.assertEqual(first.totalTokens, 10)
        self.assertEqual(second.totalTokens, 10)
        self.assertEqual(second.assistantMessages, 1)

    def test_token_percent(self) -> None:
        self.assertEqual(token_percent(131000, 262000), 50)
        self.assertEqual(token_percent(26200), 10)
        self.assertEqual(token_percent(0), 0)

    def test_flags_order(self) -> None:
        stats = calculate_stats([])
        stats.errors = 2
        self.assertEqual(build_flags(stats, 1, "unknown"), ["err", "compact", "model?"])
        self.assertEqual(build_flags(calculate_stats([]), 0, "gpt-5"), [])


if __name__ == "__main__":
    unittest.main()
