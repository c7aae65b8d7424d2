"""Consolidation runs: promote, decay and evict cognitive nodes.

When :meth:`ConsolidationEngine.consolidate` is called it snapshots the
owner's nodes, lets the :class:`~memtier.decay.DecayPolicy` decide what
happens to each of them, and applies the resulting plan in four bulk steps:

1. **Promote working** -- idle, still-active working nodes move to
   ``short_term``.
2. **Promote short-term** -- idle, strongly active short-term nodes move to
   ``long_term``.
3. **Decay** -- idle long-term nodes lose a fraction of their activation.
4. **Evict** -- stale, inactive, non-sensitive nodes outside ``long_term``
   are deleted.

Each step is isolated: a failing step is logged and recorded in
:attr:`ConsolidationResult.errors` and the run carries on with the next
one.  Every non-preview run ends by appending one row to the session audit
trail, whatever happened to the steps.

Usage::

    from memtier.consolidation import ConsolidationEngine

    engine = ConsolidationEngine(storage, node_store, recorder, cfg.decay)
    result = await engine.consolidate("local", "manual", dry_run=True)
    print(result.summary)

    # Actually apply
    result = await engine.consolidate("local", "manual")
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from memtier.config import DecayConfig, get_config
from memtier.decay import (
    ACTIVATION_FLOOR,
    SHORT_TERM_PROMOTION_SCORE,
    STEPS,
    WORKING_PROMOTION_SCORE,
    DecayPlan,
    DecayPolicy,
)
from memtier.nodes import NodeStore
from memtier.sessions import SessionRecorder
from memtier.storage import Storage, to_iso, utcnow

logger = logging.getLogger(__name__)

_LOCK_NAME = "consolidation"

# Result attribute that holds the count for each step.
_STEP_COUNTERS: dict[str, str] = {
    "promote_to_short_term": "promoted_to_short_term",
    "promote_to_long_term": "promoted_to_long_term",
    "decay": "decayed",
    "evict": "evicted",
}


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationResult:
    """Summary of a single consolidation run.

    Attributes
    ----------
    promoted_to_short_term:
        Working nodes moved to ``short_term``.
    promoted_to_long_term:
        Short-term nodes moved to ``long_term``.
    decayed:
        Long-term nodes whose activation was reduced.
    evicted:
        Nodes deleted.
    errors:
        Failure message per step name (``"snapshot"`` when the nodes could
        not be read at all).
    skipped:
        ``True`` when another process held the consolidation lock.
    session_id:
        Id of the recorded audit row, ``None`` for previews or when the
        write failed (see :attr:`session_error`).
    """

    owner_id: str
    session_type: str
    dry_run: bool = False
    skipped: bool = False
    promoted_to_short_term: int = 0
    promoted_to_long_term: int = 0
    decayed: int = 0
    evicted: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    session_id: int | None = None
    session_error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def counts(self) -> dict[str, int]:
        return {counter: getattr(self, counter) for counter in _STEP_COUNTERS.values()}

    @property
    def total(self) -> int:
        return sum(self.counts().values())

    @property
    def failed(self) -> bool:
        """``True`` when no step managed to complete."""
        if "snapshot" in self.errors:
            return True
        return all(step in self.errors for step in STEPS)

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.failed:
            return "failed"
        if self.errors or self.session_error:
            return "partial"
        return "completed"

    @property
    def summary(self) -> str:
        if self.skipped:
            return "Consolidation skipped: another run holds the lock"
        parts = [
            f"{self.promoted_to_short_term} promoted to short-term",
            f"{self.promoted_to_long_term} promoted to long-term",
            f"{self.decayed} decayed",
            f"{self.evicted} evicted",
        ]
        text = ", ".join(parts)
        if self.dry_run:
            text = f"(dry-run) {text}"
        if self.errors:
            text += f"; failed steps: {', '.join(self.errors)}"
        if self.session_error:
            text += "; session not recorded"
        return text

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-friendly dict."""
        return {
            "owner_id": self.owner_id,
            "session_type": self.session_type,
            "status": self.status,
            "dry_run": self.dry_run,
            **self.counts(),
            "errors": dict(self.errors),
            "session_id": self.session_id,
            "session_error": self.session_error,
            "started_at": to_iso(self.started_at) if self.started_at else None,
            "completed_at": to_iso(self.completed_at) if self.completed_at else None,
            "summary": self.summary,
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Applies the decay policy to an owner's nodes and records the run.

    Parameters
    ----------
    storage:
        Storage backend, used for the cross-process consolidation lock.
    nodes:
        The node store the steps mutate.
    recorder:
        Appends the session row at the end of each run.
    decay_config:
        Policy thresholds.  Defaults to ``get_config().decay``.
    """

    def __init__(
        self,
        storage: Storage,
        nodes: NodeStore,
        recorder: SessionRecorder,
        decay_config: DecayConfig | None = None,
    ) -> None:
        self._storage = storage
        self._nodes = nodes
        self._recorder = recorder
        self._policy = DecayPolicy(decay_config or get_config().decay)

    @property
    def policy(self) -> DecayPolicy:
        return self._policy

    def set_decay_config(self, decay_config: DecayConfig) -> None:
        """Use *decay_config* for all subsequent runs."""
        self._policy = DecayPolicy(decay_config)

    async def consolidate(
        self,
        owner_id: str,
        session_type: str,
        now: datetime | None = None,
        trigger: str | None = None,
        dry_run: bool = False,
    ) -> ConsolidationResult:
        """Run the four consolidation steps for *owner_id*.

        Parameters
        ----------
        owner_id:
            The account whose nodes are processed.
        session_type:
            Recorded on the audit row (``automatic_hourly``, ``manual``...).
        now:
            Reference time for every age comparison.  Defaults to the
            current UTC time.
        trigger:
            Free-form origin tag stored in the session metadata (e.g. the
            schedule that fired).
        dry_run:
            Compute the plan and its counts without touching any node and
            without recording a session.

        Returns
        -------
        ConsolidationResult
            Per-step counts and errors.  Step failures never raise.
        """
        now = now or utcnow()
        result = ConsolidationResult(
            owner_id=owner_id,
            session_type=session_type,
            dry_run=dry_run,
            started_at=utcnow(),
        )
        holder = uuid.uuid4().hex

        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, _LOCK_NAME, holder)

        acquired = await self._storage.execute_transaction(_try_lock)
        if not acquired:
            logger.warning("Consolidation already in progress; skipping")
            result.skipped = True
            return result

        try:
            plan = await self._snapshot_plan(owner_id, now, result)
            if plan is not None:
                if dry_run:
                    for step in STEPS:
                        setattr(result, _STEP_COUNTERS[step], len(plan.ids_for(step)))
                else:
                    await self._apply_steps(owner_id, plan, now, result)
            result.completed_at = utcnow()

            if not dry_run:
                await self._record(result, now, trigger)
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            await self._storage.execute_transaction(_release)

        logger.info(
            "Consolidation %s for %s %s: "
            "short_term=%d  long_term=%d  decayed=%d  evicted=%d  errors=%d",
            session_type,
            owner_id,
            "(dry-run)" if dry_run else "complete",
            result.promoted_to_short_term,
            result.promoted_to_long_term,
            result.decayed,
            result.evicted,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Internal pipeline stages
    # ------------------------------------------------------------------

    async def _snapshot_plan(
        self, owner_id: str, now: datetime, result: ConsolidationResult
    ) -> DecayPlan | None:
        try:
            snapshot = await self._nodes.list_nodes(owner_id)
        except Exception as exc:
            logger.exception("Could not read nodes for %s", owner_id)
            result.errors["snapshot"] = str(exc)
            return None
        plan = self._policy.plan(snapshot, now)
        logger.debug(
            "Plan for %s over %d nodes: %s", owner_id, plan.snapshot_size, plan.counts()
        )
        return plan

    async def _apply_steps(
        self,
        owner_id: str,
        plan: DecayPlan,
        now: datetime,
        result: ConsolidationResult,
    ) -> None:
        for step in STEPS:
            ids = plan.ids_for(step)
            try:
                count = await self._run_step(step, owner_id, ids, now)
            except Exception as exc:
                logger.exception("Consolidation step %s failed for %s", step, owner_id)
                result.errors[step] = str(exc)
                continue
            setattr(result, _STEP_COUNTERS[step], count)
            if count:
                logger.debug("Step %s affected %d nodes", step, count)

    async def _run_step(
        self, step: str, owner_id: str, ids: list[int], now: datetime
    ) -> int:
        guard = self._policy.step_guard(step, now)
        if step == "promote_to_short_term":
            return await self._nodes.promote_nodes(
                owner_id, ids, "short_term", WORKING_PROMOTION_SCORE, now=now, guard=guard
            )
        if step == "promote_to_long_term":
            return await self._nodes.promote_nodes(
                owner_id, ids, "long_term", SHORT_TERM_PROMOTION_SCORE, now=now, guard=guard
            )
        if step == "decay":
            return await self._nodes.decay_nodes(
                owner_id,
                ids,
                self._policy.config.long_term_decay_rate,
                ACTIVATION_FLOOR,
                now=now,
                guard=guard,
            )
        if step == "evict":
            return await self._nodes.delete_nodes(owner_id, ids, guard=guard)
        raise ValueError(f"Unknown step {step!r}")

    async def _record(
        self, result: ConsolidationResult, now: datetime, trigger: str | None
    ) -> None:
        metadata: dict[str, Any] = {
            "reference_time": to_iso(now),
            "policy": self._policy.describe(),
        }
        if trigger:
            metadata["trigger"] = trigger
        if result.errors:
            metadata["errors"] = dict(result.errors)
        try:
            session = await self._recorder.record_session(
                result.owner_id,
                result.session_type,
                result.counts(),
                metadata=metadata,
                started_at=result.started_at,
                completed_at=result.completed_at,
            )
        except Exception as exc:
            # Node mutations already committed stay in place.
            logger.exception("Failed to record consolidation session")
            result.session_error = str(exc)
            return
        result.session_id = session.id
