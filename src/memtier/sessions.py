"""Append-only audit trail of consolidation runs.

Every consolidation run -- scheduled, manual, or partially failed -- writes
exactly one row to ``consolidation_sessions``.  Rows are never updated or
deleted; the storage layer enforces this with ``RAISE(ABORT)`` triggers.

Usage::

    from memtier.sessions import SessionRecorder

    recorder = SessionRecorder(storage)
    session = await recorder.record_session(
        "local", "automatic_hourly", {"promoted_to_short_term": 3},
    )
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from memtier.storage import Storage, from_iso, to_iso, utcnow

log = logging.getLogger(__name__)

SESSION_TYPES: tuple[str, ...] = (
    "automatic_hourly",
    "automatic_daily",
    "automatic_weekly",
    "manual",
)


@dataclass
class ConsolidationSession:
    """One row of the ``consolidation_sessions`` table."""

    id: int
    owner_id: str
    session_type: str
    started_at: datetime
    completed_at: datetime | None
    nodes_processed: int
    patterns_discovered: int = 0
    connections_strengthened: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> ConsolidationSession:
        raw_meta = row["metadata"]
        completed = row["completed_at"]
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            session_type=row["session_type"],
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(completed) if completed else None,
            nodes_processed=row["nodes_processed"],
            patterns_discovered=row["patterns_discovered"],
            connections_strengthened=row["connections_strengthened"],
            metadata=json.loads(raw_meta) if raw_meta else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "session_type": self.session_type,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "nodes_processed": self.nodes_processed,
            "patterns_discovered": self.patterns_discovered,
            "connections_strengthened": self.connections_strengthened,
            "metadata": self.metadata,
        }


def _validate_session_type(session_type: str) -> None:
    if session_type not in SESSION_TYPES:
        raise ValueError(
            f"Invalid session type {session_type!r}. "
            f"Must be one of: {', '.join(SESSION_TYPES)}"
        )


class SessionRecorder:
    """Writes and reads consolidation session rows.

    Parameters
    ----------
    storage:
        An initialised :class:`~memtier.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def record_session(
        self,
        owner_id: str,
        session_type: str,
        counts: Mapping[str, int],
        metadata: dict[str, Any] | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> ConsolidationSession:
        """Append one session row summarising a run.

        ``nodes_processed`` is the sum of *counts*; the per-step breakdown is
        stored in the metadata under ``"counts"``.  Pattern and connection
        counters stay at zero since this subsystem discovers neither.

        Raises
        ------
        ValueError
            If *session_type* is not one of :data:`SESSION_TYPES`.
        """
        _validate_session_type(session_type)
        started = started_at or utcnow()
        completed = completed_at or utcnow()
        meta = dict(metadata or {})
        meta["counts"] = dict(counts)
        nodes_processed = sum(counts.values())

        rows = await self._storage.execute_write_returning(
            """
            INSERT INTO consolidation_sessions
                (owner_id, session_type, started_at, completed_at,
                 nodes_processed, patterns_discovered,
                 connections_strengthened, metadata)
            VALUES (?, ?, ?, ?, ?, 0, 0, ?)
            RETURNING *
            """,
            (
                owner_id,
                session_type,
                to_iso(started),
                to_iso(completed),
                nodes_processed,
                json.dumps(meta, sort_keys=True, default=str),
            ),
        )
        session = ConsolidationSession.from_row(rows[0])
        log.debug(
            "Recorded %s session %d for %s (%d nodes)",
            session_type, session.id, owner_id, nodes_processed,
        )
        return session

    async def list_sessions(
        self, owner_id: str, limit: int = 20
    ) -> list[ConsolidationSession]:
        """Most recent sessions for *owner_id*, newest first."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        rows = await self._storage.execute(
            """
            SELECT * FROM consolidation_sessions
            WHERE owner_id = ?
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            (owner_id, limit),
        )
        return [ConsolidationSession.from_row(r) for r in rows]

    async def session_summary(self, owner_id: str) -> dict[str, Any]:
        """Return ``{"count": int, "last_consolidation": iso | None}``."""
        rows = await self._storage.execute(
            """
            SELECT COUNT(*) AS cnt, MAX(started_at) AS last_started
            FROM consolidation_sessions
            WHERE owner_id = ?
            """,
            (owner_id,),
        )
        row = rows[0]
        return {
            "count": row["cnt"] or 0,
            "last_consolidation": row["last_started"],
        }
