"""Tests for the memtier.server MCP tool layer.

Tests cover:
- Parameter normalization (empty strings -> None / configured owner)
- _error_response structured error formatting
- Every tool delegating to the scheduler
- Error handling in every tool (returns error dict, never raises)
- Lazy scheduler initialization via _ensure_scheduler
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import memtier.server as server_module
from memtier.consolidation import ConsolidationResult
from memtier.nodes import CognitiveNode
from memtier.scheduler import ConsolidationScheduler, RunOutcome
from memtier.schedules import Schedule
from memtier.server import (
    _ensure_scheduler,
    _error_response,
    capture_node,
    consolidation_history,
    force_consolidation,
    memory_stats,
    run_schedule,
    system_status,
    toggle_schedule,
    touch_node,
)

T = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _node() -> CognitiveNode:
    return CognitiveNode(
        id=7,
        owner_id="local",
        content="likes tea",
        memory_tier="working",
        activation_strength=1.0,
        consolidation_score=0.0,
        is_sensitive=False,
        last_accessed_at=T,
        created_at=T,
        updated_at=T,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_scheduler():
    scheduler = MagicMock(spec=ConsolidationScheduler)
    scheduler.initialized = True
    scheduler.owner_id = "local"
    scheduler.initialize = AsyncMock()
    outcome = RunOutcome(
        status="completed",
        message="0 promoted to short-term",
        session_type="manual",
        result=ConsolidationResult(owner_id="local", session_type="manual"),
    )
    scheduler.force_consolidation = AsyncMock(return_value=outcome)
    scheduler.run_schedule = AsyncMock(return_value=outcome)
    scheduler.toggle_schedule = AsyncMock(
        return_value=Schedule(type="weekly", enabled=True, next_run=T)
    )
    scheduler.get_system_status = MagicMock(return_value={"is_healthy": True})
    scheduler.get_memory_stats = AsyncMock(return_value={"total": 0})
    scheduler.sessions = MagicMock()
    scheduler.sessions.list_sessions = AsyncMock(return_value=[])
    scheduler.nodes = MagicMock()
    scheduler.nodes.create_node = AsyncMock(return_value=_node())
    scheduler.nodes.touch_node = AsyncMock(return_value=_node())
    return scheduler


@pytest.fixture(autouse=True)
def patch_scheduler(mock_scheduler):
    with patch.object(server_module, "_scheduler", mock_scheduler):
        yield mock_scheduler


# ===================================================================
# Delegation
# ===================================================================


class TestDelegation:
    async def test_force_consolidation_empty_owner_becomes_none(self, mock_scheduler):
        result = await force_consolidation(owner_id="")
        mock_scheduler.force_consolidation.assert_awaited_once_with(None)
        assert result["status"] == "completed"
        assert result["result"]["owner_id"] == "local"

    async def test_force_consolidation_owner_preserved(self, mock_scheduler):
        await force_consolidation(owner_id="alice")
        mock_scheduler.force_consolidation.assert_awaited_once_with("alice")

    async def test_run_schedule(self, mock_scheduler):
        await run_schedule(schedule_type="weekly")
        mock_scheduler.run_schedule.assert_awaited_once_with("weekly", None)

    async def test_toggle_schedule(self, mock_scheduler):
        result = await toggle_schedule(schedule_type="weekly")
        assert result["type"] == "weekly"
        assert result["enabled"] is True

    async def test_system_status(self, mock_scheduler):
        assert await system_status() == {"is_healthy": True}

    async def test_memory_stats(self, mock_scheduler):
        await memory_stats(owner_id="")
        mock_scheduler.get_memory_stats.assert_awaited_once_with(None)

    async def test_consolidation_history_defaults_owner(self, mock_scheduler):
        result = await consolidation_history(limit=5)
        mock_scheduler.sessions.list_sessions.assert_awaited_once_with("local", limit=5)
        assert result == {"owner_id": "local", "sessions": []}

    async def test_capture_node(self, mock_scheduler):
        result = await capture_node(content="likes tea", is_sensitive=True)
        mock_scheduler.nodes.create_node.assert_awaited_once_with(
            "local", "likes tea", is_sensitive=True
        )
        assert result["id"] == 7

    async def test_touch_node(self, mock_scheduler):
        result = await touch_node(node_id=7)
        mock_scheduler.nodes.touch_node.assert_awaited_once_with("local", 7)
        assert result["memory_tier"] == "working"

    async def test_touch_missing_node(self, mock_scheduler):
        mock_scheduler.nodes.touch_node = AsyncMock(return_value=None)
        result = await touch_node(node_id=99)
        assert result["error"] == "NotFound"


# ===================================================================
# Error handling
# ===================================================================


class TestErrorHandling:
    def test_error_response_shape(self):
        err = _error_response(ValueError("bad schedule"))
        assert err["error"] == "ValueError"
        assert err["detail"] == "bad schedule"
        assert "ValueError" in err["traceback"]

    async def test_run_schedule_invalid_type(self, mock_scheduler):
        mock_scheduler.run_schedule = AsyncMock(side_effect=ValueError("Invalid schedule type"))
        result = await run_schedule(schedule_type="monthly")
        assert result["error"] == "ValueError"

    async def test_force_consolidation_error(self, mock_scheduler):
        mock_scheduler.force_consolidation = AsyncMock(side_effect=RuntimeError("db locked"))
        result = await force_consolidation()
        assert result == {
            "error": "RuntimeError",
            "detail": "db locked",
            "traceback": "RuntimeError: db locked",
        }

    async def test_system_status_error(self, mock_scheduler):
        mock_scheduler.get_system_status = MagicMock(side_effect=RuntimeError("nope"))
        assert (await system_status())["error"] == "RuntimeError"

    async def test_capture_node_error(self, mock_scheduler):
        mock_scheduler.nodes.create_node = AsyncMock(side_effect=ValueError("empty"))
        assert (await capture_node(content=""))["error"] == "ValueError"


# ===================================================================
# Lazy initialisation
# ===================================================================


class TestEnsureScheduler:
    async def test_initializes_when_needed(self, mock_scheduler):
        mock_scheduler.initialized = False
        await _ensure_scheduler()
        mock_scheduler.initialize.assert_awaited_once()

    async def test_skips_when_initialized(self, mock_scheduler):
        await _ensure_scheduler()
        mock_scheduler.initialize.assert_not_awaited()
