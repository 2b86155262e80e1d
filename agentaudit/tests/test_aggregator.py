import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from agentaudit.date_utils import now_ms
from agentaudit.models import SessionSummary
from agentaudit.parsers.agents import AgentsRootError
from agentaudit.parsers.sessions import load_session
from agentaudit.services import aggregator as aggregator_module
from agentaudit.services.aggregator import AggregationStatus, EventAggregator, merge_global_events


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _user(entry_id: str, timestamp: str) -> dict:
    return {"type": "message", "id": entry_id, "timestamp": timestamp, "message": {"role": "user", "content": entry_id}}


def _summary(agent: str, path: Path, session_id: str) -> SessionSummary:
    stamp = datetime(2026, 2, 16, 10, 0, tzinfo=timezone.utc)
    return SessionSummary(id=session_id, agentName=agent, filePath=str(path), timestamp=stamp, lastActivity=stamp)


class _Workspace:
    def __init__(self, root: Path):
        self.root = root

    def write(self, agent: str, file_name: str, lines: list[dict]) -> Path:
        sessions_dir = self.root / agent / "sessions"
        sessions_dir.mkdir(parents=True, exist_ok=True)
        path = sessions_dir / file_name
        path.write_text("\n".join(json.dumps(line) for line in lines), encoding="utf-8")
        return path


class MergeGlobalEventsTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.workspace = _Workspace(Path(tmpdir.name))
        self.now = datetime.now(timezone.utc)

    async def test_only_valid_timestamps_are_emitted(self) -> None:
        path = self.workspace.write(
            "alpha",
            "s1.jsonl",
            [
                _user("t0", _iso(self.now - timedelta(minutes=1))),
                _user("t1", _iso(self.now + timedelta(minutes=10))),
                _user("t2", "yesterday-ish"),
            ],
        )
        session = load_session("alpha", path)
        assert session is not None
        self.assertEqual(len(session.entries), 3)

        events = await merge_global_events([_summary("alpha", path, "s1")], now=now_ms())

        self.assertEqual([event.entry.id for event in events], ["t0"])
        self.assertEqual(events[0].agentName, "alpha")
        self.assertEqual(events[0].sessionId, "s1")
        self.assertEqual(events[0].sessionFilePath, str(path))

    async def test_events_are_newest_first_across_sessions_and_ties_keep_order(self) -> None:
        base = self.now - timedelta(hours=1)
        tie = _iso(base + timedelta(minutes=5))
        first = self.workspace.write(
            "alpha",
            "s1.jsonl",
            [_user("a-early", _iso(base)), _user("a-tie", tie), _user("a-late", _iso(base + timedelta(minutes=20)))],
        )
        second = self.workspace.write(
            "beta",
            "s2.jsonl",
            [_user("b-mid", _iso(base + timedelta(minutes=10))), _user("b-tie", tie)],
        )

        events = await merge_global_events([_summary("alpha", first, "s1"), _summary("beta", second, "s2")])

        self.assertEqual(
            [event.entry.id for event in events],
            ["a-late", "b-mid", "a-tie", "b-tie", "a-early"],
        )

    async def test_unreadable_sessions_are_skipped(self) -> None:
        good = self.workspace.write("alpha", "good.jsonl", [_user("ok", _iso(self.now - timedelta(minutes=2)))])

        def loader(agent_name, file_path):
            if file_path.endswith("boom.jsonl"):
                raise RuntimeError("disk on fire")
            if file_path.endswith("none.jsonl"):
                return None
            return load_session(agent_name, file_path)

        summaries = [
            _summary("alpha", good.parent / "boom.jsonl", "boom"),
            _summary("alpha", good.parent / "none.jsonl", "none"),
            _summary("alpha", good, "good"),
        ]
        with self.assertLogs("agentaudit.aggregator", level="WARNING") as captured:
            events = await merge_global_events(summaries, loader=loader)

        self.assertEqual([event.entry.id for event in events], ["ok"])
        self.assertTrue(any("disk on fire" in line for line in captured.output))


class EventAggregatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.workspace = _Workspace(Path(tmpdir.name))
        recent = datetime.now(timezone.utc) - timedelta(minutes=30)
        self.workspace.write(
            "alpha",
            "s1.jsonl",
            [
                {"type": "session", "id": "s1", "timestamp": _iso(recent)},
                _user("m1", _iso(recent + timedelta(minutes=1))),
            ],
        )
        self.workspace.write("alpha", "s2.jsonl", [{"type": "session", "id": "s2", "timestamp": _iso(recent)}])
        self.workspace.write("beta", "s3.jsonl", [{"type": "session", "id": "s3", "timestamp": _iso(recent)}])

    async def test_refresh_populates_collections(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)
        self.assertIs(aggregator.status, AggregationStatus.IDLE)

        ran = await aggregator.refresh(trigger="test")

        self.assertTrue(ran)
        self.assertIs(aggregator.status, AggregationStatus.READY)
        self.assertEqual(aggregator.pass_count, 1)
        self.assertEqual([agent.name for agent in aggregator.agents], ["alpha", "beta"])
        self.assertEqual(len(aggregator.summaries), 3)
        self.assertEqual(len(aggregator.events), 4)
        self.assertIsInstance(aggregator.events, tuple)
        self.assertIsNotNone(aggregator.refreshed_at)
        snapshot = aggregator.snapshot()
        self.assertEqual(snapshot["status"], "ready")
        self.assertEqual(snapshot["eventCount"], 4)

    async def test_missing_root_marks_failed_with_empty_data(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)
        await aggregator.refresh()
        self.assertEqual(len(aggregator.events), 4)

        aggregator.root = self.workspace.root / "missing"
        with self.assertLogs("agentaudit.aggregator", level="ERROR"):
            ran = await aggregator.refresh()

        self.assertTrue(ran)
        self.assertIs(aggregator.status, AggregationStatus.FAILED)
        self.assertIn("Failed to load agents", aggregator.error)
        self.assertEqual(aggregator.agents, ())
        self.assertEqual(aggregator.summaries, ())
        self.assertEqual(aggregator.events, ())

        aggregator.root = self.workspace.root
        await aggregator.refresh()
        self.assertIs(aggregator.status, AggregationStatus.READY)
        self.assertEqual(aggregator.error, "")

    async def test_unexpected_errors_fail_and_propagate(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)
        with patch.object(aggregator_module, "collect_session_summaries", side_effect=RuntimeError("bad summary")):
            with self.assertLogs("agentaudit.aggregator", level="ERROR"):
                with self.assertRaises(RuntimeError):
                    await aggregator.refresh()

        self.assertIs(aggregator.status, AggregationStatus.FAILED)
        self.assertEqual(aggregator.error, "bad summary")
        self.assertFalse(aggregator.is_busy)

    async def test_refresh_during_pass_is_coalesced_into_one_follow_up(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)

        task = asyncio.create_task(aggregator.refresh(trigger="first"))
        await asyncio.sleep(0)
        self.assertTrue(aggregator.is_busy)

        self.assertFalse(await aggregator.refresh(trigger="second"))
        self.assertFalse(await aggregator.refresh(trigger="third"))
        self.assertTrue(await task)

        self.assertEqual(aggregator.pass_count, 2)
        self.assertIs(aggregator.status, AggregationStatus.READY)
        self.assertFalse(aggregator.snapshot()["refreshPending"])

    async def test_failed_pass_clears_a_queued_follow_up(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)

        with patch.object(aggregator_module, "collect_session_summaries", side_effect=AgentsRootError("root vanished")):
            task = asyncio.create_task(aggregator.refresh(trigger="first"))
            await asyncio.sleep(0)
            self.assertTrue(aggregator.is_busy)
            self.assertFalse(await aggregator.refresh(trigger="second"))
            self.assertTrue(aggregator.snapshot()["refreshPending"])

            with self.assertLogs("agentaudit.aggregator", level="ERROR"):
                self.assertTrue(await task)

        self.assertIs(aggregator.status, AggregationStatus.FAILED)
        self.assertEqual(aggregator.pass_count, 1)
        self.assertFalse(aggregator.snapshot()["refreshPending"])

        await aggregator.refresh(trigger="retry")
        self.assertIs(aggregator.status, AggregationStatus.READY)
        self.assertFalse(aggregator.snapshot()["refreshPending"])

    async def test_session_with_out_of_range_timestamp_does_not_fail_the_pass(self) -> None:
        recent = datetime.now(timezone.utc) - timedelta(minutes=10)
        self.workspace.write(
            "beta",
            "far-future.jsonl",
            [
                {"type": "session", "id": "far", "timestamp": "9999-12-31T23:59:59-10:00"},
                _user("f1", _iso(recent)),
            ],
        )
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)

        await aggregator.refresh(trigger="test")

        self.assertIs(aggregator.status, AggregationStatus.READY)
        self.assertEqual(len(aggregator.summaries), 4)
        far = next(summary for summary in aggregator.summaries if summary.id == "far")
        self.assertAlmostEqual(far.timestamp.timestamp(), recent.timestamp(), delta=1)
        self.assertIn("f1", [event.entry.id for event in aggregator.events])

    async def test_readers_keep_previous_data_while_a_pass_runs(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)
        await aggregator.refresh()
        previous = aggregator.events

        task = asyncio.create_task(aggregator.refresh())
        await asyncio.sleep(0)
        self.assertTrue(aggregator.is_busy)
        self.assertIs(aggregator.events, previous)
        await task

    async def test_run_periodic_refreshes_until_cancelled(self) -> None:
        aggregator = EventAggregator(self.workspace.root, include_deleted=False)
        task = asyncio.create_task(aggregator.run_periodic(0.01))
        for _ in range(200):
            if aggregator.pass_count >= 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertGreaterEqual(aggregator.pass_count, 2)


if __name__ == "__main__":
    unittest.main()
