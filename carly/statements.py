"""Abstract statements understood by a :class:`~carly.client.Connection`.

The harness does not speak a concrete database protocol.  Clients build
these records and hand them to ``Connection.execute``; a driver adapter
(or :mod:`carly.memory`) interprets them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConsistencyLevel(str, Enum):
    ONE = "one"
    QUORUM = "quorum"
    ALL = "all"

    def required(self, replicas: int) -> int:
        """Number of replica acknowledgements needed out of *replicas*."""
        if self is ConsistencyLevel.ONE:
            return min(1, replicas)
        if self is ConsistencyLevel.QUORUM:
            return replicas // 2 + 1
        return replicas


@dataclass(frozen=True)
class CreateKeyspace:
    name: str
    replication_factor: int = 3
    if_not_exists: bool = True


@dataclass(frozen=True)
class UseKeyspace:
    name: str


@dataclass(frozen=True)
class CreateTable:
    name: str
    columns: tuple[tuple[str, str], ...]
    primary_key: str
    compaction: str | None = None
    if_not_exists: bool = True


@dataclass(frozen=True)
class Insert:
    table: str
    values: dict[str, Any] = field(hash=False)
    consistency: ConsistencyLevel = ConsistencyLevel.QUORUM


@dataclass(frozen=True)
class Batch:
    """Statements applied atomically: all of them or none."""

    statements: tuple[Insert, ...]
    consistency: ConsistencyLevel = ConsistencyLevel.QUORUM


@dataclass(frozen=True)
class Select:
    """Read every row of *table*."""

    table: str
    consistency: ConsistencyLevel = ConsistencyLevel.ALL


Statement = CreateKeyspace | UseKeyspace | CreateTable | Insert | Batch | Select
