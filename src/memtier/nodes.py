"""Cognitive node model and the Memory Store contract.

A **cognitive node** is the unit of stored memory.  Every node lives in one
of three tiers, in order of increasing permanence:

- **working** -- freshly captured, volatile.
- **short_term** -- survived the working window with enough activation.
- **long_term** -- consolidated; never evicted, only slowly decayed.

This module provides:

* :class:`CognitiveNode` -- a dataclass mapping 1:1 to a row in the
  ``cognitive_nodes`` table.
* :class:`NodeFilter` -- predicates for :meth:`NodeStore.list_nodes`.
* :class:`NodeStore` -- owner-scoped async read / bulk update / bulk delete
  operations used by the consolidation pipeline, plus the capture and
  access paths used by the host application.

The store applies owner scoping on every statement.  The *policy* filters
(sensitivity, tier, age) are the caller's job: they select the id lists
handed to the bulk operations, and may be passed again as a ``guard``
:class:`NodeFilter` that is re-checked when each row is written.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Iterator, Sequence

from memtier.config import get_config
from memtier.storage import Storage, from_iso, to_iso, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEMORY_TIERS: tuple[str, ...] = (
    "working",
    "short_term",
    "long_term",
)
"""Allowed values for ``memory_tier``, in promotion order."""

_UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "memory_tier",
    "activation_strength",
    "consolidation_score",
    "last_accessed_at",
    "last_consolidated_at",
})


def tier_rank(tier: str) -> int:
    """Position of *tier* in the promotion order (0 = working)."""
    _validate_tier(tier)
    return MEMORY_TIERS.index(tier)


def clamp_unit(value: float) -> float:
    """Clamp *value* into ``[0.0, 1.0]``."""
    return max(0.0, min(1.0, value))


# ---------------------------------------------------------------------------
# CognitiveNode dataclass
# ---------------------------------------------------------------------------


@dataclass
class CognitiveNode:
    """In-memory representation of a single ``cognitive_nodes`` row.

    Timestamps are aware UTC :class:`~datetime.datetime` objects; they are
    stored as ISO-8601 strings.

    Parameters
    ----------
    id:
        Auto-incremented primary key.
    owner_id:
        The account that owns the node.  Every store operation is scoped
        to a single owner.
    content:
        Text payload.
    memory_tier:
        One of :data:`MEMORY_TIERS`.
    activation_strength:
        Relevance in ``[0, 1]``; decays while the node sits idle.
    consolidation_score:
        Maturity in ``[0, 1]``; only ever increases, on promotion.
    is_sensitive:
        Exempts the node from decay and eviction.
    last_accessed_at:
        Last time the node was read or used in a response.
    """

    id: int
    owner_id: str
    content: str
    memory_tier: str
    activation_strength: float
    consolidation_score: float
    is_sensitive: bool
    last_accessed_at: datetime
    created_at: datetime
    updated_at: datetime
    access_count: int = 0
    last_consolidated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> CognitiveNode:
        """Create a :class:`CognitiveNode` from a :class:`sqlite3.Row`."""
        consolidated = row["last_consolidated_at"]
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            content=row["content"],
            memory_tier=row["memory_tier"],
            activation_strength=row["activation_strength"],
            consolidation_score=row["consolidation_score"],
            is_sensitive=bool(row["is_sensitive"]),
            last_accessed_at=from_iso(row["last_accessed_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            access_count=row["access_count"],
            last_consolidated_at=from_iso(consolidated) if consolidated else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-friendly dict (timestamps as ISO strings)."""
        d = asdict(self)
        for key in ("last_accessed_at", "created_at", "updated_at", "last_consolidated_at"):
            if d[key] is not None:
                d[key] = to_iso(d[key])
        return d


@dataclass(frozen=True)
class NodeFilter:
    """Row predicates for :meth:`NodeStore.list_nodes` and the bulk guards.

    ``None`` means "any".  The ``min``/``max`` bounds are inclusive, the
    ``above``/``below`` bounds strict.
    """

    memory_tier: str | None = None
    exclude_tier: str | None = None
    min_activation: float | None = None
    max_activation: float | None = None
    above_activation: float | None = None
    below_activation: float | None = None
    accessed_before: datetime | None = None
    accessed_after: datetime | None = None
    is_sensitive: bool | None = None

    def to_sql(self) -> tuple[str, list[Any]]:
        """Render the filter as a SQL fragment (prefixed with ``AND``)."""
        clauses: list[str] = []
        params: list[Any] = []
        if self.memory_tier is not None:
            _validate_tier(self.memory_tier)
            clauses.append("memory_tier = ?")
            params.append(self.memory_tier)
        if self.exclude_tier is not None:
            _validate_tier(self.exclude_tier)
            clauses.append("memory_tier != ?")
            params.append(self.exclude_tier)
        if self.min_activation is not None:
            clauses.append("activation_strength >= ?")
            params.append(self.min_activation)
        if self.max_activation is not None:
            clauses.append("activation_strength <= ?")
            params.append(self.max_activation)
        if self.above_activation is not None:
            clauses.append("activation_strength > ?")
            params.append(self.above_activation)
        if self.below_activation is not None:
            clauses.append("activation_strength < ?")
            params.append(self.below_activation)
        if self.accessed_before is not None:
            clauses.append("last_accessed_at <= ?")
            params.append(to_iso(self.accessed_before))
        if self.accessed_after is not None:
            clauses.append("last_accessed_at >= ?")
            params.append(to_iso(self.accessed_after))
        if self.is_sensitive is not None:
            clauses.append("is_sensitive = ?")
            params.append(int(self.is_sensitive))
        sql = "".join(f" AND {c}" for c in clauses)
        return sql, params


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_tier(tier: str) -> None:
    """Raise :class:`ValueError` if *tier* is not in :data:`MEMORY_TIERS`."""
    if tier not in MEMORY_TIERS:
        raise ValueError(
            f"Invalid memory tier {tier!r}. "
            f"Must be one of: {', '.join(MEMORY_TIERS)}"
        )


def _validate_unit(name: str, value: float) -> None:
    """Raise :class:`ValueError` if *value* is outside ``[0, 1]``."""
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0.0 and 1.0, got {value}")


def _batched(ids: Sequence[int], size: int) -> Iterator[list[int]]:
    """Yield *ids* in chunks of at most *size* elements."""
    for start in range(0, len(ids), size):
        yield list(ids[start : start + size])


# ---------------------------------------------------------------------------
# Node store
# ---------------------------------------------------------------------------


class NodeStore:
    """Owner-scoped persistence contract for cognitive nodes.

    Bulk operations run in batches of ``scheduler.batch_size`` ids.  Each
    batch commits on its own; a failing batch raises without undoing the
    batches before it.

    Parameters
    ----------
    storage:
        An initialised :class:`~memtier.storage.Storage` instance.
    """

    def __init__(self, storage: Storage, batch_size: int | None = None) -> None:
        self._storage = storage
        self._batch_size = batch_size or get_config().scheduler.batch_size

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_node(
        self,
        owner_id: str,
        content: str,
        memory_tier: str = "working",
        activation_strength: float = 1.0,
        consolidation_score: float = 0.0,
        is_sensitive: bool = False,
        last_accessed_at: datetime | None = None,
    ) -> CognitiveNode:
        """Capture a new node.

        Raises
        ------
        ValueError
            If *content* is empty, the tier is unknown, or a score falls
            outside ``[0, 1]``.
        """
        if not content or not content.strip():
            raise ValueError("Node content must not be empty")
        _validate_tier(memory_tier)
        _validate_unit("activation_strength", activation_strength)
        _validate_unit("consolidation_score", consolidation_score)

        now = to_iso(utcnow())
        accessed = to_iso(last_accessed_at) if last_accessed_at else now
        rows = await self._storage.execute_write_returning(
            """
            INSERT INTO cognitive_nodes
                (owner_id, content, memory_tier, activation_strength,
                 consolidation_score, is_sensitive, last_accessed_at,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (
                owner_id,
                content,
                memory_tier,
                activation_strength,
                consolidation_score,
                int(is_sensitive),
                accessed,
                now,
                now,
            ),
        )
        node = CognitiveNode.from_row(rows[0])
        log.debug("Captured node %d (%s) for %s", node.id, memory_tier, owner_id)
        return node

    async def get(self, node_id: int) -> CognitiveNode | None:
        """Fetch a node by primary key without touching access stats."""
        rows = await self._storage.execute(
            "SELECT * FROM cognitive_nodes WHERE id = ?", (node_id,)
        )
        return CognitiveNode.from_row(rows[0]) if rows else None

    async def list_nodes(
        self,
        owner_id: str,
        node_filter: NodeFilter | None = None,
    ) -> list[CognitiveNode]:
        """Return the owner's nodes matching *node_filter*, oldest access first."""
        where, params = (node_filter or NodeFilter()).to_sql()
        rows = await self._storage.execute(
            f"SELECT * FROM cognitive_nodes WHERE owner_id = ?{where} "
            f"ORDER BY last_accessed_at ASC, id ASC",
            (owner_id, *params),
        )
        return [CognitiveNode.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Bulk mutations
    # ------------------------------------------------------------------

    async def update_nodes(
        self,
        owner_id: str,
        ids: Sequence[int],
        patch: dict[str, Any],
    ) -> int:
        """Set the same field values on every node in *ids*.

        Only :data:`_UPDATABLE_FIELDS` may be patched.  Scores are clamped to
        ``[0, 1]`` and timestamps may be given as :class:`datetime`.

        Returns
        -------
        int
            Number of rows changed.
        """
        if not ids or not patch:
            return 0
        unknown = set(patch) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        for key, value in patch.items():
            if key == "memory_tier":
                _validate_tier(value)
            elif key in ("activation_strength", "consolidation_score"):
                value = clamp_unit(float(value))
            elif isinstance(value, datetime):
                value = to_iso(value)
            values[key] = value

        assignments = ", ".join(f"{key} = ?" for key in values)
        changed = 0
        for batch in _batched(ids, self._batch_size):
            id_ph = ",".join("?" * len(batch))
            changed += await self._storage.execute_write_rowcount(
                f"UPDATE cognitive_nodes SET {assignments}, updated_at = ? "
                f"WHERE owner_id = ? AND id IN ({id_ph})",
                (*values.values(), to_iso(utcnow()), owner_id, *batch),
            )
        return changed

    async def promote_nodes(
        self,
        owner_id: str,
        ids: Sequence[int],
        to_tier: str,
        score_increment: float,
        now: datetime | None = None,
        guard: NodeFilter | None = None,
    ) -> int:
        """Move *ids* into *to_tier* and raise their consolidation score.

        Only nodes currently in a lower tier (and matching *guard*, if given)
        are touched, so a promotion can never demote.  The score is clamped
        at 1.0.
        """
        _validate_tier(to_tier)
        if not ids:
            return 0
        lower_tiers = MEMORY_TIERS[: tier_rank(to_tier)]
        if not lower_tiers:
            return 0
        stamp = to_iso(now or utcnow())
        tier_ph = ",".join("?" * len(lower_tiers))
        where, guard_params = (guard or NodeFilter()).to_sql()

        changed = 0
        for batch in _batched(ids, self._batch_size):
            id_ph = ",".join("?" * len(batch))
            changed += await self._storage.execute_write_rowcount(
                f"UPDATE cognitive_nodes "
                f"SET memory_tier = ?, "
                f"    consolidation_score = MIN(1.0, consolidation_score + ?), "
                f"    last_consolidated_at = ?, updated_at = ? "
                f"WHERE owner_id = ? AND id IN ({id_ph}) "
                f"AND memory_tier IN ({tier_ph}){where}",
                (
                    to_tier, score_increment, stamp, stamp,
                    owner_id, *batch, *lower_tiers, *guard_params,
                ),
            )
        return changed

    async def decay_nodes(
        self,
        owner_id: str,
        ids: Sequence[int],
        rate: float,
        floor: float,
        now: datetime | None = None,
        guard: NodeFilter | None = None,
    ) -> int:
        """Apply ``activation = MAX(floor, activation * (1 - rate))`` to *ids*.

        Rows no longer matching *guard* are left alone.
        """
        if not ids:
            return 0
        multiplier = 1.0 - rate
        stamp = to_iso(now or utcnow())
        where, guard_params = (guard or NodeFilter()).to_sql()

        changed = 0
        for batch in _batched(ids, self._batch_size):
            id_ph = ",".join("?" * len(batch))
            changed += await self._storage.execute_write_rowcount(
                f"UPDATE cognitive_nodes "
                f"SET activation_strength = MIN(1.0, MAX(?, activation_strength * ?)), "
                f"    last_consolidated_at = ?, updated_at = ? "
                f"WHERE owner_id = ? AND id IN ({id_ph}){where}",
                (floor, multiplier, stamp, stamp, owner_id, *batch, *guard_params),
            )
        return changed

    async def delete_nodes(
        self,
        owner_id: str,
        ids: Sequence[int],
        guard: NodeFilter | None = None,
    ) -> int:
        """Hard-delete *ids* belonging to *owner_id* (and matching *guard*)."""
        if not ids:
            return 0
        where, guard_params = (guard or NodeFilter()).to_sql()
        deleted = 0
        for batch in _batched(ids, self._batch_size):
            id_ph = ",".join("?" * len(batch))
            deleted += await self._storage.execute_write_rowcount(
                f"DELETE FROM cognitive_nodes WHERE owner_id = ? AND id IN ({id_ph}){where}",
                (owner_id, *batch, *guard_params),
            )
        return deleted

    # ------------------------------------------------------------------
    # Access tracking
    # ------------------------------------------------------------------

    async def touch_node(
        self,
        owner_id: str,
        node_id: int,
        boost: float = 0.2,
        now: datetime | None = None,
    ) -> CognitiveNode | None:
        """Record a read of *node_id*: bump access stats and activation.

        Returns the updated node, or ``None`` if it does not exist for
        *owner_id*.
        """
        stamp = to_iso(now or utcnow())
        rows = await self._storage.execute_write_returning(
            """
            UPDATE cognitive_nodes
            SET access_count = access_count + 1,
                activation_strength = MIN(1.0, MAX(0.0, activation_strength + ?)),
                last_accessed_at = ?,
                updated_at = ?
            WHERE owner_id = ? AND id = ?
            RETURNING *
            """,
            (boost, stamp, stamp, owner_id, node_id),
        )
        return CognitiveNode.from_row(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def count_nodes_by_tier(self, owner_id: str) -> dict[str, int]:
        """Return ``{tier: count}`` for every tier (zero-filled)."""
        rows = await self._storage.execute(
            """
            SELECT memory_tier, COUNT(*) AS cnt
            FROM cognitive_nodes
            WHERE owner_id = ?
            GROUP BY memory_tier
            """,
            (owner_id,),
        )
        counts = {tier: 0 for tier in MEMORY_TIERS}
        for row in rows:
            counts[row["memory_tier"]] = row["cnt"]
        return counts

    async def memory_stats(self, owner_id: str) -> dict[str, Any]:
        """Aggregate statistics for *owner_id*.

        Returns
        -------
        dict[str, Any]
            ``total``, ``by_tier``, ``sensitive`` and ``avg_activation``.
        """
        agg = await self._storage.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN is_sensitive = 1 THEN 1 ELSE 0 END) AS sensitive,
                   AVG(activation_strength) AS avg_activation
            FROM cognitive_nodes
            WHERE owner_id = ?
            """,
            (owner_id,),
        )
        row = agg[0]
        return {
            "total": row["total"] or 0,
            "by_tier": await self.count_nodes_by_tier(owner_id),
            "sensitive": row["sensitive"] or 0,
            "avg_activation": round(row["avg_activation"] or 0.0, 4),
        }
