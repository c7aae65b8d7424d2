"""Tier promotion, long-term decay and eviction policy.

The :class:`DecayPolicy` decides what happens to every node during a
consolidation run.  It performs no I/O: given a node, a
:class:`~memtier.config.DecayConfig` and an explicit ``now`` it answers
whether the node is promoted, decayed or evicted.

The four steps, always applied in this order:

1. **working -> short_term** -- idle for ``working_memory_threshold_hours``
   with activation above 0.3.  Consolidation score +0.1.
2. **short_term -> long_term** -- idle for ``short_term_threshold_days``
   with activation above 0.5.  Consolidation score +0.2.
3. **Decay** -- ``long_term`` nodes idle for a day lose
   ``long_term_decay_rate`` of their activation, never dropping below 0.1.
   Sensitive nodes are skipped while ``sensitive_memory_protection`` is on.
4. **Evict** -- non-``long_term``, non-sensitive nodes idle for 30 days with
   activation below 0.1 are deleted.

:meth:`DecayPolicy.plan` evaluates every predicate against the same
pre-run snapshot, so the four id lists are disjoint: a node promoted in
step 1 is not promoted again in step 2 nor decayed in step 3 of the same
run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from memtier.config import DecayConfig
from memtier.nodes import CognitiveNode, NodeFilter, clamp_unit

# ---------------------------------------------------------------------------
# Policy constants
# ---------------------------------------------------------------------------

WORKING_PROMOTION_MIN_ACTIVATION: float = 0.3
SHORT_TERM_PROMOTION_MIN_ACTIVATION: float = 0.5
WORKING_PROMOTION_SCORE: float = 0.1
SHORT_TERM_PROMOTION_SCORE: float = 0.2

ACTIVATION_FLOOR: float = 0.1
"""Lowest activation the passive decay step will produce."""

DECAY_IDLE_AFTER = timedelta(days=1)

EVICTION_MAX_ACTIVATION: float = 0.1
"""Nodes must be strictly below this activation to be evicted."""

EVICTION_IDLE_AFTER = timedelta(days=30)

STEPS: tuple[str, ...] = (
    "promote_to_short_term",
    "promote_to_long_term",
    "decay",
    "evict",
)
"""Step names in execution order."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NodeTransition:
    """The outcome of one consolidation run for a single node."""

    node_id: int
    step: str | None
    memory_tier: str
    activation_strength: float
    consolidation_score: float
    evicted: bool = False

    @property
    def changed(self) -> bool:
        return self.step is not None


@dataclass
class DecayPlan:
    """Node ids selected by each step, computed from one snapshot."""

    promote_to_short_term: list[int] = field(default_factory=list)
    promote_to_long_term: list[int] = field(default_factory=list)
    decay: list[int] = field(default_factory=list)
    evict: list[int] = field(default_factory=list)
    snapshot_size: int = 0

    def ids_for(self, step: str) -> list[int]:
        if step not in STEPS:
            raise ValueError(f"Unknown step {step!r}")
        return getattr(self, step)

    @property
    def total(self) -> int:
        return sum(len(self.ids_for(step)) for step in STEPS)

    def counts(self) -> dict[str, int]:
        return {step: len(self.ids_for(step)) for step in STEPS}


# ---------------------------------------------------------------------------
# DecayPolicy
# ---------------------------------------------------------------------------


class DecayPolicy:
    """Pure decision logic for a consolidation run.

    Parameters
    ----------
    config:
        Thresholds and the sensitive-node protection switch.
    """

    def __init__(self, config: DecayConfig) -> None:
        self._cfg = config
        self._working_after = timedelta(hours=config.working_memory_threshold_hours)
        self._short_term_after = timedelta(days=config.short_term_threshold_days)

    @property
    def config(self) -> DecayConfig:
        return self._cfg

    # ------------------------------------------------------------------
    # Per-step predicates
    # ------------------------------------------------------------------

    def promotes_to_short_term(self, node: CognitiveNode, now: datetime) -> bool:
        return (
            node.memory_tier == "working"
            and now - node.last_accessed_at >= self._working_after
            and node.activation_strength > WORKING_PROMOTION_MIN_ACTIVATION
        )

    def promotes_to_long_term(self, node: CognitiveNode, now: datetime) -> bool:
        return (
            node.memory_tier == "short_term"
            and now - node.last_accessed_at >= self._short_term_after
            and node.activation_strength > SHORT_TERM_PROMOTION_MIN_ACTIVATION
        )

    def is_decay_protected(self, node: CognitiveNode) -> bool:
        return self._cfg.sensitive_memory_protection and node.is_sensitive

    def decays(self, node: CognitiveNode, now: datetime) -> bool:
        return (
            node.memory_tier == "long_term"
            and not self.is_decay_protected(node)
            and now - node.last_accessed_at >= DECAY_IDLE_AFTER
        )

    def evicts(self, node: CognitiveNode, now: datetime) -> bool:
        # Sensitive and long-term nodes are never deleted.
        return (
            node.memory_tier != "long_term"
            and not node.is_sensitive
            and node.activation_strength < EVICTION_MAX_ACTIVATION
            and now - node.last_accessed_at >= EVICTION_IDLE_AFTER
        )

    def step_guard(self, step: str, now: datetime) -> NodeFilter:
        """The predicate of *step* at *now* as a :class:`NodeFilter`.

        The bulk writes re-check it, so a node touched after the snapshot
        was taken no longer qualifies.
        """
        if step == "promote_to_short_term":
            return NodeFilter(
                memory_tier="working",
                above_activation=WORKING_PROMOTION_MIN_ACTIVATION,
                accessed_before=now - self._working_after,
            )
        if step == "promote_to_long_term":
            return NodeFilter(
                memory_tier="short_term",
                above_activation=SHORT_TERM_PROMOTION_MIN_ACTIVATION,
                accessed_before=now - self._short_term_after,
            )
        if step == "decay":
            return NodeFilter(
                memory_tier="long_term",
                accessed_before=now - DECAY_IDLE_AFTER,
                is_sensitive=False if self._cfg.sensitive_memory_protection else None,
            )
        if step == "evict":
            return NodeFilter(
                exclude_tier="long_term",
                is_sensitive=False,
                below_activation=EVICTION_MAX_ACTIVATION,
                accessed_before=now - EVICTION_IDLE_AFTER,
            )
        raise ValueError(f"Unknown step {step!r}")

    def decayed_activation(self, activation: float) -> float:
        """Activation after one decay step (floored at :data:`ACTIVATION_FLOOR`)."""
        return min(1.0, max(ACTIVATION_FLOOR, activation * (1.0 - self._cfg.long_term_decay_rate)))

    # ------------------------------------------------------------------
    # Whole-node and whole-snapshot decisions
    # ------------------------------------------------------------------

    def next_state(self, node: CognitiveNode, now: datetime) -> NodeTransition:
        """Compute the state *node* will be in after one run at *now*."""
        if self.promotes_to_short_term(node, now):
            return NodeTransition(
                node_id=node.id,
                step="promote_to_short_term",
                memory_tier="short_term",
                activation_strength=node.activation_strength,
                consolidation_score=clamp_unit(node.consolidation_score + WORKING_PROMOTION_SCORE),
            )
        if self.promotes_to_long_term(node, now):
            return NodeTransition(
                node_id=node.id,
                step="promote_to_long_term",
                memory_tier="long_term",
                activation_strength=node.activation_strength,
                consolidation_score=clamp_unit(node.consolidation_score + SHORT_TERM_PROMOTION_SCORE),
            )
        if self.decays(node, now):
            return NodeTransition(
                node_id=node.id,
                step="decay",
                memory_tier=node.memory_tier,
                activation_strength=self.decayed_activation(node.activation_strength),
                consolidation_score=node.consolidation_score,
            )
        if self.evicts(node, now):
            return NodeTransition(
                node_id=node.id,
                step="evict",
                memory_tier=node.memory_tier,
                activation_strength=node.activation_strength,
                consolidation_score=node.consolidation_score,
                evicted=True,
            )
        return NodeTransition(
            node_id=node.id,
            step=None,
            memory_tier=node.memory_tier,
            activation_strength=node.activation_strength,
            consolidation_score=node.consolidation_score,
        )

    def plan(self, nodes: Iterable[CognitiveNode], now: datetime) -> DecayPlan:
        """Select the nodes each step will act on, from one snapshot."""
        plan = DecayPlan()
        for node in nodes:
            plan.snapshot_size += 1
            step = self.next_state(node, now).step
            if step is not None:
                plan.ids_for(step).append(node.id)
        return plan

    def describe(self) -> dict[str, Any]:
        """Thresholds in effect, for audit metadata."""
        return {
            "working_memory_threshold_hours": self._cfg.working_memory_threshold_hours,
            "short_term_threshold_days": self._cfg.short_term_threshold_days,
            "long_term_decay_rate": self._cfg.long_term_decay_rate,
            "sensitive_memory_protection": self._cfg.sensitive_memory_protection,
        }
