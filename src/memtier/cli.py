"""CLI entry points for inspecting and driving consolidation.

Usage::

    python -m memtier status
    python -m memtier stats
    python -m memtier consolidate --dry-run
    python -m memtier consolidate --owner alice
    python -m memtier tick
    python -m memtier history --limit 5

With no command, ``python -m memtier`` starts the MCP server instead.

``tick`` only finds due schedules when ``MEMTIER_SCHEDULER__PERSIST_SCHEDULES``
is enabled; otherwise every process starts from fresh schedules.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

from memtier.scheduler import ConsolidationScheduler


COMMANDS: tuple[str, ...] = ("status", "stats", "consolidate", "tick", "history")


async def _open_scheduler() -> ConsolidationScheduler:
    scheduler = ConsolidationScheduler()
    await scheduler.initialize()
    return scheduler


def _format_counts(result: dict[str, Any]) -> list[str]:
    return [
        f"  promoted to short-term: {result['promoted_to_short_term']}",
        f"  promoted to long-term:  {result['promoted_to_long_term']}",
        f"  decayed:                {result['decayed']}",
        f"  evicted:                {result['evicted']}",
    ]


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


async def _status() -> str:
    scheduler = await _open_scheduler()
    try:
        status = scheduler.get_system_status()
    finally:
        await scheduler.shutdown()

    lines = [
        "memtier status:",
        f"  healthy:   {'yes' if status['is_healthy'] else 'no'}",
        f"  schedules: {status['enabled_schedules']}/{status['total_schedules']} enabled",
        f"  next run:  {status['next_execution'] or 'none'}"
        + (f" ({status['next_execution_type']})" if status["next_execution_type"] else ""),
        "",
    ]
    for schedule in status["schedules"]:
        state = "on " if schedule["enabled"] else "off"
        lines.append(
            f"  {schedule['type']:7s} [{state}] next {schedule['next_run']}"
            f"  last {schedule['last_run'] or 'never'}"
        )
    return "\n".join(lines)


async def _stats(owner_id: str | None) -> str:
    scheduler = await _open_scheduler()
    try:
        stats = await scheduler.get_memory_stats(owner_id)
    finally:
        await scheduler.shutdown()

    lines = [f"memtier stats ({stats['owner_id']}):", f"  total nodes: {stats['total']}"]
    for tier, count in stats["by_tier"].items():
        lines.append(f"    {tier:10s} {count}")
    lines.extend([
        f"  sensitive:        {stats['sensitive']}",
        f"  avg activation:   {stats['avg_activation']:.3f}",
        f"  sessions:         {stats['consolidation_sessions']}",
        f"  last consolidation: {stats['last_consolidation'] or 'never'}",
    ])
    return "\n".join(lines)


async def _consolidate(owner_id: str | None, dry_run: bool) -> str:
    scheduler = await _open_scheduler()
    try:
        if dry_run:
            result = await scheduler.engine.consolidate(
                owner_id or scheduler.owner_id, "manual", dry_run=True
            )
            status, message, payload = result.status, result.summary, result.to_dict()
        else:
            outcome = await scheduler.force_consolidation(owner_id)
            status, message = outcome.status, outcome.message
            payload = outcome.result.to_dict() if outcome.result else None
    finally:
        await scheduler.shutdown()

    lines = [f"memtier consolidate: {status}", f"  {message}"]
    if payload is not None:
        lines.extend(_format_counts(payload))
        for step, error in payload["errors"].items():
            lines.append(f"  error in {step}: {error}")
    return "\n".join(lines)


async def _tick() -> str:
    scheduler = await _open_scheduler()
    try:
        tick = await scheduler.run_scheduled_tick()
    finally:
        await scheduler.shutdown()

    if tick.schedule_type is None:
        return f"memtier tick: {tick.status} (no schedule fired)"
    lines = [f"memtier tick: {tick.schedule_type} -> {tick.status}"]
    if tick.outcome is not None:
        lines.append(f"  {tick.outcome.message}")
    return "\n".join(lines)


async def _history(owner_id: str | None, limit: int) -> str:
    scheduler = await _open_scheduler()
    try:
        owner = owner_id or scheduler.owner_id
        sessions = await scheduler.sessions.list_sessions(owner, limit=limit)
    finally:
        await scheduler.shutdown()

    if not sessions:
        return f"memtier history ({owner}): no sessions"
    lines = [f"memtier history ({owner}):"]
    for s in sessions:
        lines.append(
            f"  #{s.id:<5d} {s.started_at:%Y-%m-%d %H:%M}  {s.session_type:17s}"
            f"  {s.nodes_processed} nodes"
            + ("  (errors)" if s.metadata.get("errors") else "")
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# Dispatch
# ------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memtier",
        description="Inspect and drive memory consolidation.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show scheduler health and schedules")

    stats = sub.add_parser("stats", help="Show node counts per tier")
    stats.add_argument("--owner", default=None, help="Owner id (default: configured owner)")

    consolidate = sub.add_parser("consolidate", help="Run a manual consolidation")
    consolidate.add_argument("--owner", default=None, help="Owner id (default: configured owner)")
    consolidate.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without modifying anything",
    )

    sub.add_parser("tick", help="Run one scheduler tick")

    history = sub.add_parser("history", help="List recent consolidation sessions")
    history.add_argument("--owner", default=None, help="Owner id (default: configured owner)")
    history.add_argument("--limit", type=int, default=20, help="Number of sessions (default: 20)")
    return parser


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m memtier``,
        e.g. ``["consolidate", "--dry-run"]``.
    """
    if not args:
        return  # Fall through to MCP server.

    ns = _build_parser().parse_args(args)

    if ns.command == "status":
        output = asyncio.run(_status())
    elif ns.command == "stats":
        output = asyncio.run(_stats(ns.owner))
    elif ns.command == "consolidate":
        output = asyncio.run(_consolidate(ns.owner, ns.dry_run))
    elif ns.command == "tick":
        output = asyncio.run(_tick())
    elif ns.command == "history":
        output = asyncio.run(_history(ns.owner, ns.limit))
    else:  # pragma: no cover - argparse rejects unknown commands
        print(f"Unknown command: {ns.command}", file=sys.stderr)
        sys.exit(1)

    print(output)
    sys.exit(0)
