"""Shared fixtures for the memtier test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

from memtier.config import DecayConfig, MemtierConfig, SchedulerConfig
from memtier.consolidation import ConsolidationEngine
from memtier.nodes import CognitiveNode, NodeStore
from memtier.scheduler import ConsolidationScheduler
from memtier.sessions import SessionRecorder
from memtier.storage import Storage

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
"""Fixed reference time used for every age comparison in the tests."""

OWNER = "local"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory.

    The database file, backup directory, and all related artefacts live
    entirely inside ``tmp_path`` so tests never touch the user's real data.
    """
    s = Storage(tmp_path / "test.db")
    s._backup_dir = tmp_path / "backups"
    s._backup_dir.mkdir(exist_ok=True)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def node_store(storage: Storage) -> NodeStore:
    return NodeStore(storage, batch_size=500)


@pytest.fixture
def recorder(storage: Storage) -> SessionRecorder:
    return SessionRecorder(storage)


@pytest.fixture
def engine(
    storage: Storage, node_store: NodeStore, recorder: SessionRecorder
) -> ConsolidationEngine:
    return ConsolidationEngine(storage, node_store, recorder, DecayConfig())


@pytest.fixture
def make_node(
    node_store: NodeStore,
) -> Callable[..., Awaitable[CognitiveNode]]:
    """Factory capturing a node whose last access was *idle* before NOW."""

    async def _make(
        content: str = "test node",
        tier: str = "working",
        activation: float = 1.0,
        score: float = 0.0,
        sensitive: bool = False,
        idle: timedelta = timedelta(0),
        owner: str = OWNER,
    ) -> CognitiveNode:
        return await node_store.create_node(
            owner,
            content,
            memory_tier=tier,
            activation_strength=activation,
            consolidation_score=score,
            is_sensitive=sensitive,
            last_accessed_at=NOW - idle,
        )

    return _make


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., MemtierConfig]:
    """Factory for a config rooted in ``tmp_path`` with scheduler overrides."""

    def _make(**scheduler: Any) -> MemtierConfig:
        return MemtierConfig(
            db_path=tmp_path / "test.db",
            backup_dir=tmp_path / "backups",
            scheduler=SchedulerConfig(**{"tick_interval_seconds": 0.01, **scheduler}),
        )

    return _make


@pytest.fixture
async def scheduler(
    make_config: Callable[..., MemtierConfig], storage: Storage
) -> ConsolidationScheduler:
    """An initialized scheduler whose schedules were created at NOW."""
    s = ConsolidationScheduler(config=make_config(), storage=storage)
    await s.initialize(now=NOW)
    yield s  # type: ignore[misc]
    await s.shutdown()
