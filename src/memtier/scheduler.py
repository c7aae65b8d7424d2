"""Scheduled and manual consolidation with a single-flight guard.

The :class:`ConsolidationScheduler` is the one object a host process
creates.  It owns the storage, the consolidation engine, the schedule
registry and a :class:`RunGuard` that lets at most one consolidation run
at a time.  Everything that can start a run -- the background ticker,
:meth:`~ConsolidationScheduler.force_consolidation` and
:meth:`~ConsolidationScheduler.run_schedule` -- goes through the guard; a
caller that finds it held gets an ``already_running`` outcome instead of
queueing.

Usage::

    from memtier.scheduler import ConsolidationScheduler

    scheduler = ConsolidationScheduler()
    await scheduler.initialize()
    scheduler.start()                   # background ticker

    outcome = await scheduler.force_consolidation()
    print(outcome.message)

    await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from memtier.config import DecayConfig, MemtierConfig, get_config
from memtier.consolidation import ConsolidationEngine, ConsolidationResult
from memtier.nodes import NodeStore
from memtier.schedules import Schedule, ScheduleRegistry
from memtier.sessions import SessionRecorder
from memtier.storage import Storage, to_iso, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run guard
# ---------------------------------------------------------------------------


class RunGuard:
    """Atomic ``idle | running`` flag with the name of the current operation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operation: str | None = None

    @property
    def is_running(self) -> bool:
        return self._operation is not None

    @property
    def current_operation(self) -> str | None:
        return self._operation

    def try_acquire(self, operation: str) -> bool:
        """Move to ``running`` unless already there.  Never blocks."""
        with self._lock:
            if self._operation is not None:
                return False
            self._operation = operation
            return True

    def release(self) -> None:
        with self._lock:
            self._operation = None


@dataclass
class SchedulerState:
    """Mutable state owned by one :class:`ConsolidationScheduler`."""

    registry: ScheduleRegistry = field(default_factory=ScheduleRegistry)
    guard: RunGuard = field(default_factory=RunGuard)
    last_decay_run: datetime | None = None


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class RunOutcome:
    """What happened to a request to run a consolidation."""

    status: str
    message: str
    session_type: str | None = None
    schedule_type: str | None = None
    result: ConsolidationResult | None = None

    @property
    def ran(self) -> bool:
        return self.result is not None and not self.result.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "session_type": self.session_type,
            "schedule_type": self.schedule_type,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class TickResult:
    """Outcome of one scheduler tick.

    ``status`` is ``"idle"`` when nothing was due, ``"already_running"`` when
    the guard was held, and otherwise the status of the run that fired.
    """

    status: str
    schedule_type: str | None = None
    outcome: RunOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "schedule_type": self.schedule_type,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }


def _already_running(guard: RunGuard, session_type: str, schedule_type: str | None) -> RunOutcome:
    return RunOutcome(
        status="already_running",
        message=f"Consolidation already running ({guard.current_operation})",
        session_type=session_type,
        schedule_type=schedule_type,
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ConsolidationScheduler:
    """Drives consolidation from schedules and manual triggers.

    Parameters
    ----------
    config:
        Root configuration.  Defaults to :func:`~memtier.config.get_config`.
    storage:
        Pre-built storage backend.  When omitted one is created at
        ``config.db_path``.  Either way :meth:`initialize` initialises it and
        :meth:`shutdown` closes it.
    """

    def __init__(
        self,
        config: MemtierConfig | None = None,
        storage: Storage | None = None,
    ) -> None:
        self._config = config or get_config()
        self._decay_config: DecayConfig = self._config.decay
        self._storage = storage
        self._nodes: NodeStore | None = None
        self._recorder: SessionRecorder | None = None
        self._engine: ConsolidationEngine | None = None
        self._state = SchedulerState()
        self._ticker: asyncio.Task[None] | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, now: datetime | None = None) -> None:
        """Open storage, build the engine and set up the schedules.

        Idempotent.  With ``scheduler.persist_schedules`` enabled the
        registry is restored from the database when possible.
        """
        if self._initialized:
            return
        now = now or utcnow()

        if self._storage is None:
            self._storage = Storage(Path(self._config.db_path))
        await self._storage.initialize()

        self._nodes = NodeStore(self._storage, self._config.scheduler.batch_size)
        self._recorder = SessionRecorder(self._storage)
        self._engine = ConsolidationEngine(
            self._storage, self._nodes, self._recorder, self._decay_config
        )

        if self._config.scheduler.persist_schedules:
            restored = await self._state.registry.load(self._storage, now)
            if not restored:
                await self._state.registry.save(self._storage)
        else:
            self._state.registry.initialize(now)

        self._initialized = True
        logger.info(
            "Consolidation scheduler initialised for owner %s", self._config.owner_id
        )

    async def shutdown(self) -> None:
        """Stop the ticker, persist schedules if configured, close storage."""
        await self.stop()
        if self._initialized and self._config.scheduler.persist_schedules:
            try:
                await self._state.registry.save(self._storage)
            except Exception:
                logger.exception("Failed to persist schedules during shutdown")
        if self._storage is not None:
            await self._storage.close()
        self._initialized = False
        logger.info("Consolidation scheduler shut down")

    @property
    def initialized(self) -> bool:
        """Whether :meth:`initialize` has completed (and no shutdown since)."""
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "Scheduler not initialized. Call await scheduler.initialize() first."
            )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def registry(self) -> ScheduleRegistry:
        return self._state.registry

    @property
    def nodes(self) -> NodeStore:
        self._ensure_initialized()
        return self._nodes  # type: ignore[return-value]

    @property
    def sessions(self) -> SessionRecorder:
        self._ensure_initialized()
        return self._recorder  # type: ignore[return-value]

    @property
    def engine(self) -> ConsolidationEngine:
        self._ensure_initialized()
        return self._engine  # type: ignore[return-value]

    @property
    def decay_config(self) -> DecayConfig:
        return self._decay_config

    @property
    def owner_id(self) -> str:
        return self._config.owner_id

    # ------------------------------------------------------------------
    # Background ticker
    # ------------------------------------------------------------------

    @property
    def ticker_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def start(self) -> None:
        """Spawn the background ticker on the running event loop."""
        self._ensure_initialized()
        if self.ticker_running:
            logger.warning("Scheduler ticker already running")
            return
        self._ticker = asyncio.create_task(self._tick_forever())

    async def stop(self) -> None:
        """Cancel the background ticker and wait for it to finish."""
        if self._ticker is None:
            return
        self._ticker.cancel()
        try:
            await self._ticker
        except asyncio.CancelledError:
            pass
        self._ticker = None

    async def _tick_forever(self) -> None:
        interval = self._config.scheduler.tick_interval_seconds
        logger.info("Scheduler ticker started: checking every %ss", interval)
        while True:
            try:
                await asyncio.sleep(interval)
                await self.run_scheduled_tick()
            except asyncio.CancelledError:
                logger.info("Scheduler ticker stopped")
                raise
            except Exception:
                logger.exception("Scheduler tick failed")

    # ------------------------------------------------------------------
    # Scheduled runs
    # ------------------------------------------------------------------

    async def run_scheduled_tick(self, now: datetime | None = None) -> TickResult:
        """Fire the first due schedule, if any.

        At most one schedule runs per tick (hourly before daily before
        weekly).  The fired schedule is advanced from *now* whether the run
        succeeded or not; a run skipped for the cross-process lock leaves
        it due for the next tick.
        """
        self._ensure_initialized()
        now = now or utcnow()
        guard = self._state.guard

        if guard.is_running:
            logger.debug("Tick skipped: %s in progress", guard.current_operation)
            return TickResult(status="already_running")

        due = self._state.registry.due_schedules(now)
        if not due:
            return TickResult(status="idle")

        schedule = due[0]
        outcome = await self._guarded_run(
            operation=f"scheduled_{schedule.type}",
            session_type=schedule.session_type,
            owner_id=self.owner_id,
            now=now,
            trigger=f"schedule:{schedule.type}",
            advance_type=schedule.type,
        )
        return TickResult(status=outcome.status, schedule_type=schedule.type, outcome=outcome)

    # ------------------------------------------------------------------
    # Manual triggers
    # ------------------------------------------------------------------

    async def force_consolidation(
        self,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> RunOutcome:
        """Run a ``manual`` consolidation immediately.

        Returns an ``already_running`` outcome without doing anything when
        another run holds the guard.  No schedule is advanced.
        """
        self._ensure_initialized()
        return await self._guarded_run(
            operation="manual",
            session_type="manual",
            owner_id=owner_id or self.owner_id,
            now=now or utcnow(),
            trigger="force",
        )

    async def run_schedule(
        self,
        schedule_type: str,
        owner_id: str | None = None,
        now: datetime | None = None,
    ) -> RunOutcome:
        """Run *schedule_type* now, even when it is disabled, and advance it.

        Raises
        ------
        ValueError
            If *schedule_type* is unknown.
        """
        self._ensure_initialized()
        self._state.registry.get(schedule_type)
        return await self._guarded_run(
            operation=f"manual_{schedule_type}",
            session_type="manual",
            owner_id=owner_id or self.owner_id,
            now=now or utcnow(),
            trigger=f"schedule:{schedule_type}",
            advance_type=schedule_type,
        )

    async def toggle_schedule(self, schedule_type: str) -> Schedule:
        """Enable or disable *schedule_type*.  An in-flight run is unaffected."""
        self._ensure_initialized()
        schedule = self._state.registry.toggle(schedule_type)
        await self._persist_schedules()
        return schedule

    def update_decay_config(self, **overrides: Any) -> DecayConfig:
        """Replace decay thresholds for subsequent runs.

        Raises
        ------
        ValueError
            If an override names an unknown field or an invalid value.
        """
        known = {f.name for f in fields(DecayConfig)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown decay settings: {', '.join(sorted(unknown))}")
        self._decay_config = replace(self._decay_config, **overrides)
        if self._engine is not None:
            self._engine.set_decay_config(self._decay_config)
        logger.info("Decay config updated: %s", overrides)
        return self._decay_config

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_system_status(self) -> dict[str, Any]:
        """Health snapshot of the scheduler.

        ``is_healthy`` is ``True`` whenever at least one schedule is enabled.
        """
        self._ensure_initialized()
        registry = self._state.registry
        schedules = registry.all()
        enabled = [s for s in schedules if s.enabled]
        upcoming = registry.next_due()
        guard = self._state.guard
        return {
            "is_healthy": len(enabled) > 0,
            "enabled_schedules": len(enabled),
            "total_schedules": len(schedules),
            "next_execution": to_iso(upcoming.next_run) if upcoming else None,
            "next_execution_type": upcoming.type if upcoming else None,
            "is_running": guard.is_running,
            "current_operation": guard.current_operation,
            "ticker_running": self.ticker_running,
            "schedules": [s.to_dict() for s in schedules],
        }

    async def get_memory_stats(self, owner_id: str | None = None) -> dict[str, Any]:
        """Node and session statistics for *owner_id*."""
        self._ensure_initialized()
        owner = owner_id or self.owner_id
        stats = await self._nodes.memory_stats(owner)  # type: ignore[union-attr]
        sessions = await self._recorder.session_summary(owner)  # type: ignore[union-attr]
        last_decay = self._state.last_decay_run
        return {
            "owner_id": owner,
            **stats,
            "consolidation_sessions": sessions["count"],
            "last_consolidation": sessions["last_consolidation"],
            "last_decay_run": to_iso(last_decay) if last_decay else None,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _guarded_run(
        self,
        operation: str,
        session_type: str,
        owner_id: str,
        now: datetime,
        trigger: str,
        advance_type: str | None = None,
    ) -> RunOutcome:
        guard = self._state.guard
        if not guard.try_acquire(operation):
            return _already_running(guard, session_type, advance_type)

        result: ConsolidationResult | None = None
        try:
            try:
                result = await self._engine.consolidate(  # type: ignore[union-attr]
                    owner_id, session_type, now=now, trigger=trigger
                )
            except Exception as exc:
                logger.exception("Consolidation %s failed", operation)
                outcome = RunOutcome(
                    status="failed",
                    message=f"Consolidation failed: {exc}",
                    session_type=session_type,
                    schedule_type=advance_type,
                )
            else:
                outcome = RunOutcome(
                    status=result.status,
                    message=result.summary,
                    session_type=session_type,
                    schedule_type=advance_type,
                    result=result,
                )
                if not result.skipped and "decay" not in result.errors and "snapshot" not in result.errors:
                    self._state.last_decay_run = now
        finally:
            # A run skipped for the cross-process lock leaves its schedule due.
            if advance_type is not None and not (result is not None and result.skipped):
                self._state.registry.advance(
                    advance_type,
                    now,
                    processing_nodes=result.total if result is not None else 0,
                )
                await self._persist_schedules()
            guard.release()

        return outcome

    async def _persist_schedules(self) -> None:
        if not self._config.scheduler.persist_schedules:
            return
        try:
            await self._state.registry.save(self._storage)  # type: ignore[arg-type]
        except Exception:
            logger.exception("Failed to persist schedules")
