"""An in-process replicated store to run tests against.

:class:`InMemoryCluster` plays every external role at once: it is the
:class:`~carly.control.ControlPlane` conductors inject faults through, the
:class:`~carly.control.DB` the orchestrator installs, and the
:class:`~carly.client.Connector` clients open connections with.

It models just enough of a Dynamo-style database for faults to matter:

- Each key lives on ``replication_factor`` nodes of the ring.  A write at
  a consistency level is rejected with ``UnavailableError`` unless the
  coordinator can reach enough live replicas; otherwise it is applied to
  every replica the coordinator can reach and *hinted* for the rest.
  Hints are replayed when the network heals or a node restarts.
- A :class:`~carly.statements.Batch` is all-or-nothing: availability of
  every statement is checked before any of them is applied.
- A read scans the whole table, so it needs enough of the *ring* to be
  reachable, and returns the union of what those nodes hold.
- Partitions, crashes, bootstrap, decommission and clock offsets are
  driven through the control-plane methods.
- Tests can script failures with :meth:`InMemoryCluster.inject`.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
import zlib
from collections.abc import Callable, Sequence
from typing import Any

from carly.control import DB, ControlPlane, Grudge
from carly.errors import AlreadyExistsError, ClientError, NoHostAvailableError, UnavailableError
from carly.statements import Batch, CreateKeyspace, CreateTable, Insert, Select, UseKeyspace

logger = logging.getLogger(__name__)

_Table = tuple[str, str]  # (keyspace, table)


class _Injection:
    __slots__ = ("error", "remaining", "when", "apply")

    def __init__(self, error: ClientError, count: int, when: Callable[[Any], bool] | None, apply: bool):
        self.error = error
        self.remaining = count
        self.when = when
        self.apply = apply


class InMemoryCluster(ControlPlane, DB):
    """A simulated cluster of *nodes*.

    Args:
        nodes: Every node name.
        joining: Nodes that are installed but not part of the ring until
            they are bootstrapped.
        latency: Seconds each statement takes.
    """

    def __init__(self, nodes: Sequence[str], *, joining: Sequence[str] = (), latency: float = 0.0):
        self.nodes = list(nodes)
        self.base_latency = latency
        self.latency = latency
        self.events: list[tuple[Any, ...]] = []
        self._lock = threading.RLock()
        self._ring: list[str] = [n for n in self.nodes if n not in joining]
        self._installed: set[str] = set()
        self._up: set[str] = set()
        self._grudge: dict[str, set[str]] = {}
        self._clock_offsets: dict[str, int] = {}
        self._data: dict[str, dict[_Table, dict[Any, dict[str, Any]]]] = {n: {} for n in self.nodes}
        self._hints: list[tuple[str, _Table, Any, dict[str, Any]]] = []
        self._keyspaces: dict[str, int] = {}
        self._tables: dict[_Table, CreateTable] = {}
        self._injections: list[_Injection] = []
        self._round_robin = itertools.count()

    def __repr__(self):
        return f"InMemoryCluster(ring={self.ring()!r}, up={sorted(self._up)!r})"

    def _event(self, *event: Any) -> None:
        self.events.append(event)
        logger.debug("cluster: %s", event)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def ring(self) -> list[str]:
        with self._lock:
            return list(self._ring)

    def up(self) -> set[str]:
        with self._lock:
            return set(self._up)

    def grudge(self) -> dict[str, set[str]]:
        with self._lock:
            return {node: set(dropped) for node, dropped in self._grudge.items()}

    def clock_offsets(self) -> dict[str, int]:
        with self._lock:
            return dict(self._clock_offsets)

    def tables(self) -> list[_Table]:
        with self._lock:
            return list(self._tables)

    def rows(self, node: str, keyspace: str, table: str) -> dict[Any, dict[str, Any]]:
        with self._lock:
            return dict(self._data[node].get((keyspace, table), {}))

    def pending_hints(self) -> int:
        with self._lock:
            return len(self._hints)

    # ------------------------------------------------------------------
    # DB
    # ------------------------------------------------------------------

    def setup(self, test: Any, node: str) -> None:
        with self._lock:
            self._installed.add(node)
            if node in self._ring:
                self._up.add(node)
            self._event("setup", node)

    def teardown(self, test: Any, node: str) -> None:
        with self._lock:
            self._installed.discard(node)
            self._up.discard(node)
            self._data[node] = {}
            self._hints = [h for h in self._hints if h[0] != node]
            self._event("teardown", node)

    # ------------------------------------------------------------------
    # Control plane
    # ------------------------------------------------------------------

    def start(self, node: str, service: str) -> None:
        with self._lock:
            if node not in self._installed:
                raise RuntimeError(f"{service} is not installed on {node}")
            self._up.add(node)
            self._event("start", node, service)
            self._deliver_hints()

    def stop(self, node: str, service: str) -> None:
        with self._lock:
            self._up.discard(node)
            self._event("stop", node, service)

    def partition(self, grudge: Grudge) -> None:
        with self._lock:
            self._grudge = {node: set(dropped) for node, dropped in grudge.items()}
            self._event("partition", self.grudge())

    def heal(self) -> None:
        with self._lock:
            self._grudge = {}
            self._event("heal")
            self._deliver_hints()

    def set_clock_offset(self, node: str, delta_ms: int) -> None:
        with self._lock:
            self._clock_offsets[node] = delta_ms
            self._event("clock", node, delta_ms)

    def reset_clocks(self) -> None:
        with self._lock:
            self._clock_offsets = {}
            self._event("reset-clocks")

    def bootstrap(self, node: str) -> None:
        with self._lock:
            if node not in self._installed:
                raise RuntimeError(f"cannot bootstrap {node}: not installed")
            if node in self._ring:
                raise RuntimeError(f"{node} is already a member")
            self._data[node] = {}
            self._up.add(node)
            for member in self._ring:
                self._stream(member, node)
            self._ring.append(node)
            self._event("bootstrap", node)

    def decommission(self, node: str) -> None:
        with self._lock:
            if node not in self._ring:
                raise RuntimeError(f"{node} is not a member")
            if node not in self._up:
                raise RuntimeError(f"cannot decommission {node}: it is down")
            self._ring.remove(node)
            for member in self._ring:
                self._stream(node, member)
            self._up.discard(node)
            self._data[node] = {}
            self._event("decommission", node)

    def flush(self, node: str) -> None:
        with self._lock:
            self._event("flush", node)

    def compact(self, node: str) -> None:
        with self._lock:
            self._event("compact", node)

    def slow_network(self, delay: float) -> None:
        with self._lock:
            self.latency = self.base_latency + delay
            self._event("slow", delay)

    def fast_network(self) -> None:
        with self._lock:
            self.latency = self.base_latency
            self._event("fast")

    # ------------------------------------------------------------------
    # Scripted failures
    # ------------------------------------------------------------------

    def inject(
        self,
        error: ClientError,
        count: int = 1,
        *,
        when: Callable[[Any], bool] | None = None,
        apply: bool = False,
    ) -> None:
        """Make the next *count* statements matching *when* raise *error*.

        With *apply*, the statement takes effect before the error is raised,
        like a write that timed out after reaching its replicas.
        """
        with self._lock:
            self._injections.append(_Injection(error, count, when, apply))

    def _take_injection(self, statement: Any) -> _Injection | None:
        for injection in self._injections:
            if injection.remaining > 0 and (injection.when is None or injection.when(statement)):
                injection.remaining -= 1
                if injection.remaining == 0:
                    self._injections.remove(injection)
                return injection
        return None

    # ------------------------------------------------------------------
    # Connector
    # ------------------------------------------------------------------

    def connect(self, nodes: Sequence[str]) -> MemoryConnection:
        return MemoryConnection(self, nodes)

    def execute(self, conn: MemoryConnection, statement: Any) -> Any:
        with self._lock:
            injection = self._take_injection(statement)
            if injection is not None and not injection.apply:
                raise injection.error
            coordinator = self._coordinator(conn.contacts)
            result = self._execute(conn, coordinator, statement)
            if injection is not None:
                raise injection.error
            return result

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _coordinator(self, contacts: Sequence[str]) -> str:
        live = [n for n in contacts if n in self._up]
        if not live:
            raise NoHostAvailableError(f"All host(s) tried for query failed (tried: {', '.join(contacts)})")
        return live[next(self._round_robin) % len(live)]

    def _can_talk(self, a: str, b: str) -> bool:
        if a not in self._up or b not in self._up:
            return False
        return b not in self._grudge.get(a, ()) and a not in self._grudge.get(b, ())

    def _replicas(self, keyspace: str, table: str, key: Any) -> list[str]:
        ring = sorted(self._ring)
        rf = min(self._keyspaces[keyspace], len(ring))
        start = zlib.crc32(f"{table}:{key!r}".encode()) % len(ring)
        return [ring[(start + i) % len(ring)] for i in range(rf)]

    def _stream(self, source: str, target: str) -> None:
        for table, rows in self._data[source].items():
            self._data[target].setdefault(table, {}).update(rows)

    def _deliver_hints(self) -> None:
        remaining = []
        for node, table, key, row in self._hints:
            if node in self._up and node in self._ring:
                self._data[node].setdefault(table, {})[key] = dict(row)
            else:
                remaining.append((node, table, key, row))
        self._hints = remaining

    def _execute(self, conn: MemoryConnection, coordinator: str, statement: Any) -> Any:
        if isinstance(statement, CreateKeyspace):
            if statement.name in self._keyspaces:
                if statement.if_not_exists:
                    return None
                raise AlreadyExistsError(f"Keyspace {statement.name} already exists")
            self._keyspaces[statement.name] = statement.replication_factor
            self._event("create-keyspace", statement.name)
            return None
        if isinstance(statement, UseKeyspace):
            if statement.name not in self._keyspaces:
                raise ClientError(f"Keyspace {statement.name!r} does not exist")
            conn.keyspace = statement.name
            return None
        keyspace = conn.keyspace
        if keyspace is None:
            raise ClientError("No keyspace has been specified")
        if isinstance(statement, CreateTable):
            table = (keyspace, statement.name)
            if table in self._tables:
                if statement.if_not_exists:
                    return None
                raise AlreadyExistsError(f"Table {keyspace}.{statement.name} already exists")
            self._tables[table] = statement
            self._event("create-table", keyspace, statement.name)
            return None
        if isinstance(statement, Insert):
            self._write(keyspace, coordinator, [statement], statement.consistency)
            return None
        if isinstance(statement, Batch):
            self._write(keyspace, coordinator, list(statement.statements), statement.consistency)
            return None
        if isinstance(statement, Select):
            return self._read(keyspace, coordinator, statement)
        raise ClientError(f"unsupported statement {statement!r}")

    def _schema(self, keyspace: str, table: str) -> CreateTable:
        try:
            return self._tables[(keyspace, table)]
        except KeyError:
            raise ClientError(f"unconfigured table {table}") from None

    def _write(self, keyspace: str, coordinator: str, inserts: list[Insert], consistency: Any) -> None:
        plan = []
        for insert in inserts:
            schema = self._schema(keyspace, insert.table)
            key = insert.values[schema.primary_key]
            replicas = self._replicas(keyspace, insert.table, key)
            reachable = [r for r in replicas if self._can_talk(coordinator, r)]
            needed = consistency.required(len(replicas))
            if len(reachable) < needed:
                raise UnavailableError(
                    f"Cannot achieve consistency level {consistency.value.upper()} "
                    f"(required {needed}, alive {len(reachable)})"
                )
            plan.append(((keyspace, insert.table), key, dict(insert.values), replicas, reachable))
        for table, key, row, replicas, reachable in plan:
            for replica in replicas:
                if replica in reachable:
                    self._data[replica].setdefault(table, {})[key] = dict(row)
                else:
                    self._hints.append((replica, table, key, row))

    def _read(self, keyspace: str, coordinator: str, statement: Select) -> list[dict[str, Any]]:
        self._schema(keyspace, statement.table)
        ring = self._ring
        reachable = [m for m in ring if self._can_talk(coordinator, m)]
        needed = statement.consistency.required(min(self._keyspaces[keyspace], len(ring)))
        if statement.consistency.value == "all":
            needed = len(ring)
        if len(reachable) < needed:
            raise UnavailableError(
                f"Cannot achieve consistency level {statement.consistency.value.upper()} "
                f"(required {needed}, alive {len(reachable)})"
            )
        merged: dict[Any, dict[str, Any]] = {}
        for member in reachable:
            merged.update(self._data[member].get((keyspace, statement.table), {}))
        return [dict(merged[key]) for key in sorted(merged, key=repr)]


class MemoryConnection:
    """A session against an :class:`InMemoryCluster`."""

    def __init__(self, cluster: InMemoryCluster, contacts: Sequence[str]):
        self.cluster = cluster
        self.contacts = list(contacts)
        self.keyspace: str | None = None
        self.closed = False

    def execute(self, statement: Any) -> Any:
        if self.closed:
            raise ClientError("connection is closed")
        if self.cluster.latency > 0:
            time.sleep(self.cluster.latency)
        return self.cluster.execute(self, statement)

    def close(self) -> None:
        self.closed = True
