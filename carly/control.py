"""The control plane: what the harness may do to the system under test.

Conductors inject faults only through :class:`ControlPlane`, and the
orchestrator installs the database only through :class:`DB`.  A concrete
implementation decides how (SSH, containers, an in-process simulation);
the harness depends on nothing beyond these methods.
"""

from __future__ import annotations

from collections.abc import Mapping, Set
from typing import Any

#: ``grudge[node]`` is the set of nodes whose traffic *node* drops.
Grudge = Mapping[str, Set[str]]


class ControlPlane:
    """Node-level fault primitives over a named node set."""

    def start(self, node: str, service: str) -> None:
        raise NotImplementedError

    def stop(self, node: str, service: str) -> None:
        """Kill *service* on *node*."""
        raise NotImplementedError

    def partition(self, grudge: Grudge) -> None:
        """Drop traffic according to *grudge*, replacing any earlier partition."""
        raise NotImplementedError

    def heal(self) -> None:
        """Remove every partition."""
        raise NotImplementedError

    def set_clock_offset(self, node: str, delta_ms: int) -> None:
        raise NotImplementedError

    def reset_clocks(self) -> None:
        """Resynchronize every node's clock."""
        raise NotImplementedError

    def bootstrap(self, node: str) -> None:
        """Join *node* to the cluster."""
        raise NotImplementedError

    def decommission(self, node: str) -> None:
        """Remove *node* from the cluster, streaming its data away first."""
        raise NotImplementedError

    def flush(self, node: str) -> None:
        raise NotImplementedError

    def compact(self, node: str) -> None:
        raise NotImplementedError

    def slow_network(self, delay: float) -> None:
        """Delay every message by *delay* seconds."""
        raise NotImplementedError

    def fast_network(self) -> None:
        raise NotImplementedError


class DB:
    """Installs and removes the database on a node."""

    def setup(self, test: Any, node: str) -> None:
        raise NotImplementedError

    def teardown(self, test: Any, node: str) -> None:
        raise NotImplementedError


class NoopDB(DB):
    def setup(self, test, node):
        pass

    def teardown(self, test, node):
        pass
