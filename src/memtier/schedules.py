"""Hourly / daily / weekly consolidation schedules.

The :class:`ScheduleRegistry` holds exactly one :class:`Schedule` per type.
It is an in-memory structure owned by the scheduler; when
``scheduler.persist_schedules`` is enabled it is also mirrored to the
``schedules`` table via :meth:`ScheduleRegistry.load` and
:meth:`ScheduleRegistry.save`.

Usage::

    from memtier.schedules import ScheduleRegistry

    registry = ScheduleRegistry()
    registry.initialize(now)
    for schedule in registry.due_schedules(now):
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from memtier.storage import Storage, from_iso, to_iso

log = logging.getLogger(__name__)

SCHEDULE_TYPES: tuple[str, ...] = ("hourly", "daily", "weekly")
"""Schedule types, also the tie-break order for due schedules."""

SCHEDULE_PERIODS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(hours=24),
    "weekly": timedelta(days=7),
}

_ENABLED_BY_DEFAULT: dict[str, bool] = {
    "hourly": True,
    "daily": True,
    "weekly": False,
}


def _validate_type(schedule_type: str) -> None:
    if schedule_type not in SCHEDULE_TYPES:
        raise ValueError(
            f"Invalid schedule type {schedule_type!r}. "
            f"Must be one of: {', '.join(SCHEDULE_TYPES)}"
        )


@dataclass(frozen=True)
class Schedule:
    """A single recurring consolidation schedule."""

    type: str
    enabled: bool
    next_run: datetime
    last_run: datetime | None = None
    processing_nodes: int = 0

    @property
    def period(self) -> timedelta:
        return SCHEDULE_PERIODS[self.type]

    @property
    def session_type(self) -> str:
        return f"automatic_{self.type}"

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_run <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "enabled": self.enabled,
            "last_run": to_iso(self.last_run) if self.last_run else None,
            "next_run": to_iso(self.next_run),
            "processing_nodes": self.processing_nodes,
        }


class ScheduleRegistry:
    """The set of consolidation schedules, one per type."""

    def __init__(self) -> None:
        self._schedules: dict[str, Schedule] = {}

    @property
    def initialized(self) -> bool:
        return len(self._schedules) == len(SCHEDULE_TYPES)

    def initialize(self, now: datetime) -> None:
        """Reset to defaults: hourly and daily on, weekly off."""
        self._schedules = {
            t: Schedule(
                type=t,
                enabled=_ENABLED_BY_DEFAULT[t],
                next_run=now + SCHEDULE_PERIODS[t],
            )
            for t in SCHEDULE_TYPES
        }
        log.debug("Schedule registry initialised at %s", to_iso(now))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, schedule_type: str) -> Schedule:
        _validate_type(schedule_type)
        self._require_initialized()
        return self._schedules[schedule_type]

    def all(self) -> list[Schedule]:
        """Every schedule, in :data:`SCHEDULE_TYPES` order."""
        self._require_initialized()
        return [self._schedules[t] for t in SCHEDULE_TYPES]

    def due_schedules(self, now: datetime) -> list[Schedule]:
        """Enabled schedules with ``next_run <= now``, hourly first."""
        return [s for s in self.all() if s.is_due(now)]

    def next_due(self) -> Schedule | None:
        """The enabled schedule with the earliest ``next_run``, if any."""
        enabled = [s for s in self.all() if s.enabled]
        if not enabled:
            return None
        # min() keeps the first of equal elements, so ties follow type order.
        return min(enabled, key=lambda s: s.next_run)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def toggle(self, schedule_type: str) -> Schedule:
        """Flip ``enabled``; ``next_run`` is left as is."""
        current = self.get(schedule_type)
        updated = replace(current, enabled=not current.enabled)
        self._schedules[schedule_type] = updated
        log.info(
            "Schedule %s %s", schedule_type, "enabled" if updated.enabled else "disabled"
        )
        return updated

    def advance(
        self,
        schedule_type: str,
        ran_at: datetime,
        processing_nodes: int | None = None,
    ) -> Schedule:
        """Mark *schedule_type* as run at *ran_at* and compute its next run."""
        current = self.get(schedule_type)
        updated = replace(
            current,
            last_run=ran_at,
            next_run=ran_at + current.period,
            processing_nodes=(
                current.processing_nodes if processing_nodes is None else processing_nodes
            ),
        )
        self._schedules[schedule_type] = updated
        return updated

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self, storage: Storage, now: datetime) -> bool:
        """Populate from the ``schedules`` table.

        Falls back to :meth:`initialize` when the table does not hold one
        row per type.  Returns ``True`` if persisted rows were used.
        """
        rows = await storage.execute("SELECT * FROM schedules")
        loaded: dict[str, Schedule] = {}
        for row in rows:
            last_run = row["last_run"]
            loaded[row["type"]] = Schedule(
                type=row["type"],
                enabled=bool(row["enabled"]),
                next_run=from_iso(row["next_run"]),
                last_run=from_iso(last_run) if last_run else None,
                processing_nodes=row["processing_nodes"],
            )
        if set(loaded) != set(SCHEDULE_TYPES):
            self.initialize(now)
            return False
        self._schedules = loaded
        log.debug("Loaded %d schedules from storage", len(loaded))
        return True

    async def save(self, storage: Storage) -> None:
        """Upsert every schedule into the ``schedules`` table."""
        await storage.execute_many(
            """
            INSERT INTO schedules (type, enabled, last_run, next_run, processing_nodes)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(type) DO UPDATE SET
                enabled = excluded.enabled,
                last_run = excluded.last_run,
                next_run = excluded.next_run,
                processing_nodes = excluded.processing_nodes
            """,
            [
                (
                    s.type,
                    int(s.enabled),
                    to_iso(s.last_run) if s.last_run else None,
                    to_iso(s.next_run),
                    s.processing_nodes,
                )
                for s in self.all()
            ],
        )

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise RuntimeError("ScheduleRegistry not initialised. Call initialize() first.")
