"""MCP server exposing the consolidation scheduler as tools via stdio transport.

The ``mcp`` object is imported by :mod:`memtier.__main__` and launched with
``mcp.run()`` over stdio.

Architecture notes
------------------
* A single global :pydata:`_scheduler` instance is initialised by the server
  lifespan, which also starts the background ticker.  Tools still call
  :func:`_ensure_scheduler` so they work when invoked outside the lifespan.
* Empty-string parameters from MCP (which lacks first-class optionals) are
  normalised to ``None`` before forwarding to the scheduler.
* All tools catch exceptions and return structured error dicts so the MCP
  server never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from mcp.server.fastmcp import FastMCP

from memtier.scheduler import ConsolidationScheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Server and scheduler instances
# ---------------------------------------------------------------------------

_scheduler = ConsolidationScheduler()


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Initialise the scheduler and run the ticker for the server's lifetime."""
    await _ensure_scheduler()
    _scheduler.start()
    try:
        yield
    finally:
        await _scheduler.shutdown()


mcp = FastMCP(
    "memtier",
    instructions="Tiered cognitive memory with scheduled consolidation",
    lifespan=_lifespan,
)


async def _ensure_scheduler() -> None:
    """Initialise the scheduler if the lifespan has not done so yet."""
    if not _scheduler.initialized:
        await _scheduler.initialize()


def _error_response(err: Exception) -> dict[str, Any]:
    """Create a structured error dict for MCP tool responses."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


# ===================================================================
# MCP Tools
# ===================================================================


@mcp.tool()
async def force_consolidation(owner_id: str = "") -> dict[str, Any]:
    """Run a manual consolidation pass right now.

    Promotes idle working and short-term memories, decays idle long-term
    memories and evicts stale low-activation ones.  If a consolidation is
    already in progress nothing is queued and the status says so.

    Args:
        owner_id: Whose memories to consolidate.  Leave empty for the
            configured default owner.

    Returns:
        A dict with keys:
        - status: completed, partial, failed, already_running or skipped
        - message: Human-readable summary with counts
        - result: Per-step counts and errors (null if nothing ran)
    """
    try:
        await _ensure_scheduler()
        outcome = await _scheduler.force_consolidation(owner_id or None)
        return outcome.to_dict()
    except Exception as exc:
        logger.exception("force_consolidation failed")
        return _error_response(exc)


@mcp.tool()
async def run_schedule(schedule_type: str, owner_id: str = "") -> dict[str, Any]:
    """Run one schedule immediately, even if it is disabled, and advance it.

    Args:
        schedule_type: One of "hourly", "daily", "weekly".
        owner_id: Whose memories to consolidate.  Leave empty for the
            configured default owner.
    """
    try:
        await _ensure_scheduler()
        outcome = await _scheduler.run_schedule(schedule_type, owner_id or None)
        return outcome.to_dict()
    except Exception as exc:
        logger.exception("run_schedule failed")
        return _error_response(exc)


@mcp.tool()
async def toggle_schedule(schedule_type: str) -> dict[str, Any]:
    """Enable a disabled schedule or disable an enabled one.

    Args:
        schedule_type: One of "hourly", "daily", "weekly".

    Returns:
        The updated schedule: type, enabled, last_run, next_run,
        processing_nodes.
    """
    try:
        await _ensure_scheduler()
        schedule = await _scheduler.toggle_schedule(schedule_type)
        return schedule.to_dict()
    except Exception as exc:
        logger.exception("toggle_schedule failed")
        return _error_response(exc)


@mcp.tool()
async def system_status() -> dict[str, Any]:
    """Report scheduler health, the next execution and whether a run is in progress."""
    try:
        await _ensure_scheduler()
        return _scheduler.get_system_status()
    except Exception as exc:
        logger.exception("system_status failed")
        return _error_response(exc)


@mcp.tool()
async def memory_stats(owner_id: str = "") -> dict[str, Any]:
    """Count memories per tier and report average activation and last runs.

    Args:
        owner_id: Whose memories to describe.  Leave empty for the
            configured default owner.
    """
    try:
        await _ensure_scheduler()
        return await _scheduler.get_memory_stats(owner_id or None)
    except Exception as exc:
        logger.exception("memory_stats failed")
        return _error_response(exc)


@mcp.tool()
async def consolidation_history(owner_id: str = "", limit: int = 20) -> dict[str, Any]:
    """List recent consolidation sessions, newest first.

    Args:
        owner_id: Whose sessions to list.  Leave empty for the configured
            default owner.
        limit: Maximum number of sessions (default 20).
    """
    try:
        await _ensure_scheduler()
        owner = owner_id or _scheduler.owner_id
        sessions = await _scheduler.sessions.list_sessions(owner, limit=limit)
        return {
            "owner_id": owner,
            "sessions": [s.to_dict() for s in sessions],
        }
    except Exception as exc:
        logger.exception("consolidation_history failed")
        return _error_response(exc)


@mcp.tool()
async def capture_node(
    content: str,
    owner_id: str = "",
    is_sensitive: bool = False,
) -> dict[str, Any]:
    """Store a new memory in the working tier.

    Args:
        content: The text to remember.
        owner_id: Owner of the memory.  Leave empty for the configured
            default owner.
        is_sensitive: Protect the memory from decay and eviction.
    """
    try:
        await _ensure_scheduler()
        node = await _scheduler.nodes.create_node(
            owner_id or _scheduler.owner_id,
            content,
            is_sensitive=is_sensitive,
        )
        return node.to_dict()
    except Exception as exc:
        logger.exception("capture_node failed")
        return _error_response(exc)


@mcp.tool()
async def touch_node(node_id: int, owner_id: str = "") -> dict[str, Any]:
    """Record that a memory was used: refresh its access time and boost activation.

    Args:
        node_id: The memory to touch.
        owner_id: Owner of the memory.  Leave empty for the configured
            default owner.
    """
    try:
        await _ensure_scheduler()
        node = await _scheduler.nodes.touch_node(owner_id or _scheduler.owner_id, node_id)
        if node is None:
            return {"error": "NotFound", "detail": f"Node {node_id} not found"}
        return node.to_dict()
    except Exception as exc:
        logger.exception("touch_node failed")
        return _error_response(exc)
