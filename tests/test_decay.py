"""Tests for the pure decay policy.

No database is involved: nodes are built in memory and every decision is
made against a fixed reference time.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from memtier.config import DecayConfig
from memtier.decay import STEPS, DecayPlan, DecayPolicy
from memtier.nodes import CognitiveNode

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

_next_id = iter(range(1, 10_000))


def _node(
    tier: str = "working",
    activation: float = 1.0,
    score: float = 0.0,
    sensitive: bool = False,
    idle: timedelta = timedelta(0),
) -> CognitiveNode:
    return CognitiveNode(
        id=next(_next_id),
        owner_id="local",
        content="node",
        memory_tier=tier,
        activation_strength=activation,
        consolidation_score=score,
        is_sensitive=sensitive,
        last_accessed_at=NOW - idle,
        created_at=NOW - idle,
        updated_at=NOW - idle,
    )


@pytest.fixture
def policy() -> DecayPolicy:
    return DecayPolicy(DecayConfig())


# -----------------------------------------------------------------------
# Promotion
# -----------------------------------------------------------------------


class TestPromotion:
    def test_working_node_promoted_after_threshold(self, policy) -> None:
        node = _node(activation=0.4, idle=timedelta(hours=7))
        transition = policy.next_state(node, NOW)

        assert transition.step == "promote_to_short_term"
        assert transition.memory_tier == "short_term"
        assert transition.consolidation_score == pytest.approx(0.1)
        assert transition.activation_strength == 0.4

    def test_threshold_age_is_inclusive(self, policy) -> None:
        node = _node(activation=0.4, idle=timedelta(hours=6))
        assert policy.promotes_to_short_term(node, NOW)

    def test_recent_working_node_stays(self, policy) -> None:
        node = _node(activation=0.9, idle=timedelta(hours=5))
        assert policy.next_state(node, NOW).changed is False

    def test_activation_bar_is_strict(self, policy) -> None:
        node = _node(activation=0.3, idle=timedelta(hours=7))
        assert not policy.promotes_to_short_term(node, NOW)

    def test_short_term_promoted_to_long_term(self, policy) -> None:
        node = _node(tier="short_term", activation=0.6, score=0.1, idle=timedelta(days=8))
        transition = policy.next_state(node, NOW)

        assert transition.memory_tier == "long_term"
        assert transition.consolidation_score == pytest.approx(0.3)

    def test_short_term_needs_activation_above_half(self, policy) -> None:
        node = _node(tier="short_term", activation=0.5, idle=timedelta(days=8))
        assert not policy.promotes_to_long_term(node, NOW)

    def test_score_is_clamped(self, policy) -> None:
        node = _node(tier="short_term", activation=0.9, score=0.95, idle=timedelta(days=8))
        assert policy.next_state(node, NOW).consolidation_score == 1.0

    def test_sensitive_nodes_are_still_promoted(self, policy) -> None:
        node = _node(activation=0.4, sensitive=True, idle=timedelta(hours=7))
        assert policy.promotes_to_short_term(node, NOW)

    def test_custom_thresholds(self) -> None:
        policy = DecayPolicy(DecayConfig(working_memory_threshold_hours=1))
        node = _node(activation=0.4, idle=timedelta(hours=2))
        assert policy.promotes_to_short_term(node, NOW)


# -----------------------------------------------------------------------
# Decay
# -----------------------------------------------------------------------


class TestDecay:
    def test_decay_arithmetic(self, policy) -> None:
        assert policy.decayed_activation(0.50) == pytest.approx(0.49)

    def test_decay_never_drops_below_floor(self, policy) -> None:
        assert policy.decayed_activation(0.101) == pytest.approx(0.1)
        assert policy.decayed_activation(0.1) == pytest.approx(0.1)

    def test_idle_long_term_node_decays(self, policy) -> None:
        node = _node(tier="long_term", activation=0.5, idle=timedelta(days=2))
        transition = policy.next_state(node, NOW)

        assert transition.step == "decay"
        assert transition.memory_tier == "long_term"
        assert transition.activation_strength == pytest.approx(0.49)

    def test_recent_long_term_node_untouched(self, policy) -> None:
        node = _node(tier="long_term", activation=0.5, idle=timedelta(hours=12))
        assert not policy.decays(node, NOW)

    def test_sensitive_node_protected(self, policy) -> None:
        node = _node(tier="long_term", activation=0.5, sensitive=True, idle=timedelta(days=3))
        assert not policy.decays(node, NOW)

    def test_sensitive_node_decays_without_protection(self) -> None:
        policy = DecayPolicy(DecayConfig(sensitive_memory_protection=False))
        node = _node(tier="long_term", activation=0.5, sensitive=True, idle=timedelta(days=3))
        assert policy.decays(node, NOW)

    def test_only_long_term_nodes_decay(self, policy) -> None:
        node = _node(tier="short_term", activation=0.2, idle=timedelta(days=3))
        assert not policy.decays(node, NOW)


# -----------------------------------------------------------------------
# Eviction
# -----------------------------------------------------------------------


class TestEviction:
    def test_stale_inactive_working_node_evicted(self, policy) -> None:
        node = _node(activation=0.05, idle=timedelta(days=40))
        transition = policy.next_state(node, NOW)

        assert transition.step == "evict"
        assert transition.evicted is True

    def test_long_term_node_never_evicted(self, policy) -> None:
        node = _node(tier="long_term", activation=0.05, idle=timedelta(days=40))
        assert not policy.evicts(node, NOW)
        assert policy.next_state(node, NOW).evicted is False

    def test_sensitive_node_never_evicted(self) -> None:
        policy = DecayPolicy(DecayConfig(sensitive_memory_protection=False))
        node = _node(activation=0.05, sensitive=True, idle=timedelta(days=40))
        assert not policy.evicts(node, NOW)

    def test_activation_bar_is_strict(self, policy) -> None:
        node = _node(tier="short_term", activation=0.1, idle=timedelta(days=40))
        assert not policy.evicts(node, NOW)

    def test_young_node_kept(self, policy) -> None:
        node = _node(activation=0.05, idle=timedelta(days=29))
        assert not policy.evicts(node, NOW)


# -----------------------------------------------------------------------
# Plan
# -----------------------------------------------------------------------


class TestPlan:
    def test_plan_partitions_snapshot(self, policy) -> None:
        promote_working = _node(activation=0.9, idle=timedelta(days=30))
        promote_short = _node(tier="short_term", activation=0.8, idle=timedelta(days=10))
        decay = _node(tier="long_term", activation=0.5, idle=timedelta(days=2))
        evict = _node(activation=0.05, idle=timedelta(days=45))
        untouched = _node(activation=0.9)

        plan = policy.plan([promote_working, promote_short, decay, evict, untouched], NOW)

        assert plan.promote_to_short_term == [promote_working.id]
        assert plan.promote_to_long_term == [promote_short.id]
        assert plan.decay == [decay.id]
        assert plan.evict == [evict.id]
        assert plan.snapshot_size == 5
        assert plan.total == 4

    def test_step_lists_are_disjoint(self, policy) -> None:
        nodes = [
            _node(tier=tier, activation=activation, idle=timedelta(days=days))
            for tier in ("working", "short_term", "long_term")
            for activation in (0.05, 0.4, 0.9)
            for days in (0, 2, 40)
        ]
        plan = policy.plan(nodes, NOW)

        seen: set[int] = set()
        for step in STEPS:
            ids = set(plan.ids_for(step))
            assert not ids & seen
            seen |= ids

    def test_working_node_promoted_once_per_run(self, policy) -> None:
        # Idle long enough for both thresholds, but still working at snapshot time.
        node = _node(activation=0.9, idle=timedelta(days=30))
        plan = policy.plan([node], NOW)

        assert plan.promote_to_short_term == [node.id]
        assert plan.promote_to_long_term == []

    def test_unknown_step_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown step"):
            DecayPlan().ids_for("compress")

    def test_counts(self, policy) -> None:
        plan = policy.plan([_node(activation=0.05, idle=timedelta(days=31))], NOW)
        assert plan.counts() == {
            "promote_to_short_term": 0,
            "promote_to_long_term": 0,
            "decay": 0,
            "evict": 1,
        }


class TestDecayConfig:
    def test_rejects_rate_above_one(self) -> None:
        with pytest.raises(ValueError, match="long_term_decay_rate"):
            DecayConfig(long_term_decay_rate=1.5)

    def test_rejects_negative_threshold(self) -> None:
        with pytest.raises(ValueError):
            DecayConfig(short_term_threshold_days=-1)


# -----------------------------------------------------------------------
# Write-time guards
# -----------------------------------------------------------------------


class TestStepGuard:
    def test_eviction_guard(self, policy) -> None:
        guard = policy.step_guard("evict", NOW)
        assert guard.exclude_tier == "long_term"
        assert guard.is_sensitive is False
        assert guard.below_activation == 0.1
        assert guard.accessed_before == NOW - timedelta(days=30)

    def test_decay_guard_follows_protection(self, policy) -> None:
        protected = policy.step_guard("decay", NOW)
        assert protected.memory_tier == "long_term"
        assert protected.is_sensitive is False
        assert protected.accessed_before == NOW - timedelta(days=1)

        unprotected = DecayPolicy(DecayConfig(sensitive_memory_protection=False))
        assert unprotected.step_guard("decay", NOW).is_sensitive is None

    def test_promotion_guard_uses_threshold(self, policy) -> None:
        guard = policy.step_guard("promote_to_short_term", NOW)
        assert guard.memory_tier == "working"
        assert guard.above_activation == 0.3
        assert guard.accessed_before == NOW - timedelta(hours=6)

    def test_unknown_step(self, policy) -> None:
        with pytest.raises(ValueError):
            policy.step_guard("compress", NOW)
