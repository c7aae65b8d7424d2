"""memtier -- tiered cognitive memory with scheduled consolidation.

Quick start::

    from memtier import ConsolidationScheduler

    async def main():
        scheduler = ConsolidationScheduler()
        await scheduler.initialize()

        node = await scheduler.nodes.create_node("local", "Prefers tea")
        outcome = await scheduler.force_consolidation()

        await scheduler.shutdown()

For lower-level access, import from submodules::

    from memtier.nodes import CognitiveNode, NodeStore, MEMORY_TIERS
    from memtier.decay import DecayPolicy, DecayPlan
    from memtier.consolidation import ConsolidationEngine, ConsolidationResult
    from memtier.schedules import Schedule, ScheduleRegistry
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from memtier.scheduler import ConsolidationScheduler, RunOutcome, TickResult
from memtier.nodes import CognitiveNode, MEMORY_TIERS
from memtier.schedules import Schedule, SCHEDULE_TYPES

__all__ = [
    "__version__",
    "ConsolidationScheduler",
    "RunOutcome",
    "TickResult",
    "CognitiveNode",
    "MEMORY_TIERS",
    "Schedule",
    "SCHEDULE_TYPES",
]
