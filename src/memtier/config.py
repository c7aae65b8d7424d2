"""Central configuration for the memtier system.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MEMTIER_`` (nested keys use
double underscores, e.g. ``MEMTIER_DECAY__LONG_TERM_DECAY_RATE=0.05``).

Usage::

    from memtier.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.decay.working_memory_threshold_hours)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DecayConfig:
    """Thresholds that drive tier promotion, long-term decay and eviction."""

    working_memory_threshold_hours: float = 6
    """Hours without access after which a ``working`` node may move to
    ``short_term``."""

    short_term_threshold_days: float = 7
    """Days without access after which a ``short_term`` node may move to
    ``long_term``."""

    long_term_decay_rate: float = 0.02
    """Fraction of activation lost per consolidation by an idle ``long_term``
    node."""

    sensitive_memory_protection: bool = True
    """When set, nodes flagged ``is_sensitive`` are skipped by the decay step.
    Eviction never deletes sensitive nodes either way, and promotion still
    applies to them."""

    def __post_init__(self) -> None:
        if self.working_memory_threshold_hours < 0:
            raise ValueError("working_memory_threshold_hours must be >= 0")
        if self.short_term_threshold_days < 0:
            raise ValueError("short_term_threshold_days must be >= 0")
        if not 0.0 <= self.long_term_decay_rate <= 1.0:
            raise ValueError(
                f"long_term_decay_rate must be between 0.0 and 1.0, "
                f"got {self.long_term_decay_rate}"
            )


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Parameters for the background ticker and schedule bookkeeping."""

    tick_interval_seconds: float = 60.0
    persist_schedules: bool = False
    """Keep the schedule registry in the ``schedules`` table across restarts.
    Off by default: every process starts from the default schedules."""

    batch_size: int = 500  # SQLite placeholder limit per bulk statement


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MemtierConfig:
    """Root configuration object for the memtier system.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.memtier/memtier.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.memtier/backups"))
    backup_count: int = 5
    owner_id: str = "local"

    decay: DecayConfig = field(default_factory=DecayConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    def __post_init__(self) -> None:
        # Expand ~ in path fields.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "db_path", self.db_path.expanduser())
        object.__setattr__(self, "backup_dir", self.backup_dir.expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MEMTIER_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: MemtierConfig | None = None


def get_config(*, reload: bool = False) -> MemtierConfig:
    """Return the current :class:`MemtierConfig`.

    On the first call the config is built by merging defaults with any
    ``MEMTIER_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(MemtierConfig, _ENV_PREFIX)
    return _cached_config
