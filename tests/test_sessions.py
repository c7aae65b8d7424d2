"""Tests for the consolidation session audit trail."""

from __future__ import annotations

from datetime import timedelta

import pytest

from memtier.sessions import SessionRecorder


class TestRecordSession:
    async def test_nodes_processed_is_sum_of_counts(self, recorder: SessionRecorder, now) -> None:
        session = await recorder.record_session(
            "local",
            "automatic_hourly",
            {"promoted_to_short_term": 3, "decayed": 2, "evicted": 1},
            metadata={"trigger": "schedule:hourly"},
            started_at=now,
            completed_at=now + timedelta(seconds=2),
        )

        assert session.id > 0
        assert session.nodes_processed == 6
        assert session.patterns_discovered == 0
        assert session.connections_strengthened == 0
        assert session.started_at == now
        assert session.completed_at == now + timedelta(seconds=2)
        assert session.metadata["trigger"] == "schedule:hourly"
        assert session.metadata["counts"]["evicted"] == 1

    async def test_rejects_unknown_session_type(self, recorder: SessionRecorder) -> None:
        with pytest.raises(ValueError, match="Invalid session type"):
            await recorder.record_session("local", "nightly", {})

    async def test_caller_metadata_not_mutated(self, recorder: SessionRecorder) -> None:
        metadata = {"trigger": "force"}
        await recorder.record_session("local", "manual", {"decayed": 1}, metadata=metadata)
        assert metadata == {"trigger": "force"}


class TestListSessions:
    async def test_newest_first_and_owner_scoped(self, recorder: SessionRecorder, now) -> None:
        first = await recorder.record_session("local", "manual", {}, started_at=now)
        second = await recorder.record_session(
            "local", "automatic_daily", {}, started_at=now + timedelta(hours=1)
        )
        await recorder.record_session("someone_else", "manual", {}, started_at=now)

        sessions = await recorder.list_sessions("local")
        assert [s.id for s in sessions] == [second.id, first.id]

    async def test_limit(self, recorder: SessionRecorder, now) -> None:
        for i in range(5):
            await recorder.record_session("local", "manual", {}, started_at=now + timedelta(minutes=i))
        assert len(await recorder.list_sessions("local", limit=3)) == 3

    async def test_limit_must_be_positive(self, recorder: SessionRecorder) -> None:
        with pytest.raises(ValueError):
            await recorder.list_sessions("local", limit=0)

    async def test_to_dict(self, recorder: SessionRecorder) -> None:
        await recorder.record_session("local", "manual", {"evicted": 2})
        (session,) = await recorder.list_sessions("local")
        d = session.to_dict()
        assert d["session_type"] == "manual"
        assert isinstance(d["started_at"], str)
        assert d["metadata"]["counts"] == {"evicted": 2}


class TestSessionSummary:
    async def test_empty(self, recorder: SessionRecorder) -> None:
        assert await recorder.session_summary("local") == {
            "count": 0,
            "last_consolidation": None,
        }

    async def test_counts_and_latest(self, recorder: SessionRecorder, now) -> None:
        await recorder.record_session("local", "manual", {}, started_at=now)
        latest = await recorder.record_session(
            "local", "manual", {}, started_at=now + timedelta(days=1)
        )
        summary = await recorder.session_summary("local")
        assert summary["count"] == 2
        assert summary["last_consolidation"] == latest.to_dict()["started_at"]
