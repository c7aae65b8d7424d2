"""Entry point for ``python -m memtier``.

Dispatches to CLI commands (status, stats, consolidate, tick, history) or
starts the MCP server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    from memtier.cli import COMMANDS

    if args and (args[0] in COMMANDS or args[0] in ("-h", "--help")):
        from memtier.cli import dispatch
        dispatch(args)
        return

    # The server lifespan owns the scheduler and its background ticker.
    from memtier.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
