"""Default settings, overridable through ``CARLY_*`` environment variables.

Every setting has a default in :data:`DEFAULTS`.  ``default("time_limit")``
returns ``CARLY_TIME_LIMIT`` from the environment when it is set (coerced to
the type of the default), and the default otherwise.  The environment is
consulted on every call so tests can override settings with
``monkeypatch.setenv``.
"""

from __future__ import annotations

import os
from typing import Any

ENV_PREFIX = "CARLY_"

DEFAULTS: dict[str, Any] = {
    # Where run artifacts are written.
    "store_dir": "store",
    # Seconds of client + conductor activity in the main phase.
    "time_limit": 60.0,
    # Client processes; 0 means one per node.
    "concurrency": 0,
    # Pause before each add in the batch-set workload.
    "add_delay": 1.0,
    # Pause before the final read.
    "final_read_delay": 65.0,
    # Conductor schedule: quiet period before each start, and fault duration.
    "nemesis_quiet": 20.0,
    "nemesis_active": 40.0,
    # Pause between healing all faults and the final client phase.
    "recovery_time": 10.0,
    # Backoff when no node is reachable at all.
    "no_host_backoff": 2.0,
    "replication_factor": 3,
    "keyspace": "jepsen_keyspace",
    "compaction_strategy": "SizeTieredCompactionStrategy",
    # Clock scrambler bound, in milliseconds.
    "clock_drift_ms": 10000,
    # Per-message delay applied by slow-network tests, in seconds.
    "slow_net_delay": 0.05,
    # How long to wait for in-flight ops after an abort before giving up on them.
    "abort_grace": 5.0,
    # Configuration budget for the linearizability search.
    "max_configurations": 100000,
    "cassandra_stress_executable": "cassandra-stress",
}


def _coerce(raw: str, like: Any) -> Any:
    if isinstance(like, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(like, int):
        return int(raw)
    if isinstance(like, float):
        return float(raw)
    return raw


def env_name(key: str) -> str:
    return ENV_PREFIX + key.upper()


def default(key: str) -> Any:
    """Return the setting *key*, honouring its environment override."""
    try:
        fallback = DEFAULTS[key]
    except KeyError:
        raise KeyError(f"unknown setting {key!r}") from None
    raw = os.environ.get(env_name(key))
    if raw is None or raw == "":
        return fallback
    try:
        return _coerce(raw, fallback)
    except ValueError as e:
        raise ValueError(f"{env_name(key)}={raw!r}: {e}") from e


def settings(**overrides: Any) -> dict[str, Any]:
    """Return every setting, with environment and keyword overrides applied."""
    result = {key: default(key) for key in DEFAULTS}
    for key, value in overrides.items():
        if key not in DEFAULTS:
            raise KeyError(f"unknown setting {key!r}")
        if value is not None:
            result[key] = value
    return result
