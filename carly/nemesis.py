"""
Conductors: independently scheduled actors that inject faults.

Each conductor runs as its own logical process.  Its generator emits
``{"f": "start"}`` and ``{"f": "stop"}`` ops into the same history as the
client ops, and the conductor moves between two states::

    idle --start--> active --stop--> idle

``teardown`` heals whatever fault is still active, so an aborted run
never leaves the cluster partitioned, crashed or skewed.

Conductors that change the cluster's topology (bootstrap, decommission)
or take nodes down (crash) coordinate through a shared
:class:`ClusterState` instead of sleeping and hoping: a node claimed by
one conductor is never acted on by another until it is released.

Partition topologies are plain functions from a node list to a grudge
(``bridge``, ``random_halves``, ``isolate_random_node``) and are handed to
:class:`Partitioner`, which only knows how to apply and heal a grudge.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable, Sequence
from enum import Enum
from typing import Any

from carly import setups
from carly.common import Op
from carly.control import Grudge
from carly.errors import UnknownOperation
from carly.generator import Cycle, Generator, Sleep

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared coordination
# ---------------------------------------------------------------------------


class ClusterState:
    """Which nodes are in the ring, and which are busy with a fault.

    Shared by reference between the conductors of one test.  Every access
    goes through one lock; ``topology_lock`` additionally serializes whole
    bootstrap and decommission actions, which take a while.
    """

    def __init__(self, nodes: Iterable[str], pending_bootstrap: Iterable[str] = ()):
        pending = list(pending_bootstrap)
        self._lock = threading.Lock()
        self.topology_lock = threading.Lock()
        self._members: list[str] = [n for n in nodes if n not in pending]
        self._pending: list[str] = pending
        self._decommissioned: list[str] = []
        self._claims: dict[str, str] = {}

    def __repr__(self):
        with self._lock:
            return f"ClusterState(members={self._members!r}, pending={self._pending!r}, claims={self._claims!r})"

    def members(self) -> list[str]:
        with self._lock:
            return list(self._members)

    def pending_bootstrap(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def decommissioned(self) -> list[str]:
        with self._lock:
            return list(self._decommissioned)

    def claims(self) -> dict[str, str]:
        with self._lock:
            return dict(self._claims)

    def claim(self, owner: str, candidates: Iterable[str], count: int | None = None) -> list[str]:
        """Claim up to *count* unclaimed nodes from *candidates*, in order."""
        claimed: list[str] = []
        with self._lock:
            for node in candidates:
                if count is not None and len(claimed) >= count:
                    break
                if node in self._claims:
                    continue
                self._claims[node] = owner
                claimed.append(node)
        return claimed

    def release(self, owner: str, nodes: Iterable[str]) -> None:
        with self._lock:
            for node in nodes:
                if self._claims.get(node) == owner:
                    del self._claims[node]

    def joined(self, node: str) -> None:
        with self._lock:
            if node in self._pending:
                self._pending.remove(node)
            if node not in self._members:
                self._members.append(node)

    def left(self, node: str) -> None:
        """Record a decommission; the node may be bootstrapped again later."""
        with self._lock:
            if node in self._members:
                self._members.remove(node)
            self._decommissioned.append(node)
            if node not in self._pending:
                self._pending.append(node)


def node_subset(nodes: Sequence[str], count: int) -> list[str]:
    """The last *count* nodes: a deterministic choice of nodes to hold back."""
    if count <= 0:
        return []
    return list(nodes[-count:])


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class ConductorState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


class Conductor:
    """Base class for conductors.

    Subclasses implement :meth:`start_fault` and :meth:`stop_fault`, each
    returning a short description of what was done, and may override
    :meth:`heal` when undoing a fault differs from stopping it.
    """

    #: Name used in logs; also the default process name.
    name = "nemesis"

    def __init__(self) -> None:
        self.state = ConductorState.IDLE
        self._lock = threading.Lock()
        self._torn_down = False

    def __repr__(self):
        return f"{type(self).__name__}({self.state.value})"

    def setup(self, test: Any) -> Conductor:
        self._torn_down = False
        return self

    def invoke(self, test: Any, op: Op) -> Op:
        handlers = {"start": self._start, "stop": self._stop}
        try:
            handler = handlers[op.f]
        except KeyError:
            raise UnknownOperation(self, op.f) from None
        with self._lock:
            return handler(test, op)

    def _start(self, test: Any, op: Op) -> Op:
        if self.state is ConductorState.ACTIVE:
            return op.info("already active")
        value = self.start_fault(test)
        self.state = ConductorState.ACTIVE
        logger.info("%s start: %s", self.name, value)
        if self._torn_down:
            # The run was torn down while this fault was being started.
            logger.warning("%s started a fault after teardown; healing it", self.name)
            self._heal_quietly(test)
        return op.info(value=value)

    def _stop(self, test: Any, op: Op) -> Op:
        if self.state is ConductorState.IDLE:
            return op.info("not active")
        value = self.stop_fault(test)
        self.state = ConductorState.IDLE
        logger.info("%s stop: %s", self.name, value)
        return op.info(value=value)

    def teardown(self, test: Any) -> None:
        """Heal any active fault.  Errors are logged, never raised.

        A fault action still running after an abort holds the conductor
        for at most ``abort_grace`` seconds; after that the heal runs
        anyway.
        """
        self._torn_down = True
        grace = setups.default("abort_grace")
        locked = self._lock.acquire(timeout=grace)
        if not locked:
            logger.warning("%s is still busy after %ss; healing anyway", self.name, grace)
        try:
            self._heal_quietly(test)
        finally:
            if locked:
                self._lock.release()

    def _heal_quietly(self, test: Any) -> None:
        try:
            self.heal(test)
        except Exception:
            logger.warning("%s failed to heal during teardown", self.name, exc_info=True)
        finally:
            self.state = ConductorState.IDLE

    def start_fault(self, test: Any) -> Any:
        raise NotImplementedError

    def stop_fault(self, test: Any) -> Any:
        raise NotImplementedError

    def heal(self, test: Any) -> None:
        if self.state is ConductorState.ACTIVE:
            self.stop_fault(test)

    def schedule(self, quiet: float | None = None, active: float | None = None) -> Generator:
        """The default op stream: wait, start, wait, stop, forever."""
        return start_stop_cycle(quiet, active)


def start_stop_cycle(quiet: float | None = None, active: float | None = None) -> Cycle:
    if quiet is None:
        quiet = setups.default("nemesis_quiet")
    if active is None:
        active = setups.default("nemesis_active")
    return Cycle([Sleep(quiet), {"f": "start"}, Sleep(active), {"f": "stop"}])


class NoopConductor(Conductor):
    """Does nothing, but still moves through its states."""

    def start_fault(self, test):
        return "noop"

    def stop_fault(self, test):
        return "noop"


# ---------------------------------------------------------------------------
# Partitions
# ---------------------------------------------------------------------------


def complete_grudge(components: Iterable[Iterable[str]]) -> dict[str, set[str]]:
    """Every node drops traffic from every node outside its own component."""
    components = [list(c) for c in components]
    everyone = {n for c in components for n in c}
    grudge: dict[str, set[str]] = {}
    for component in components:
        others = everyone - set(component)
        for node in component:
            grudge[node] = set(others)
    return grudge


def halves(nodes: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split *nodes* in two; the second half is the larger one."""
    mid = len(nodes) // 2
    return list(nodes[:mid]), list(nodes[mid:])


def bridge(nodes: Sequence[str]) -> dict[str, set[str]]:
    """Cut the network in half, except one node that still talks to both halves."""
    first, second = halves(nodes)
    grudge = complete_grudge([first, second])
    if not second:
        return grudge
    middle = second[0]
    grudge[middle] = set()
    for dropped in grudge.values():
        dropped.discard(middle)
    return grudge


def random_halves(nodes: Sequence[str], rng: random.Random | None = None) -> dict[str, set[str]]:
    nodes = list(nodes)
    (rng or random).shuffle(nodes)
    return complete_grudge(halves(nodes))


def isolate_random_node(nodes: Sequence[str], rng: random.Random | None = None) -> dict[str, set[str]]:
    nodes = list(nodes)
    victim = (rng or random).choice(nodes)
    return complete_grudge([[victim], [n for n in nodes if n != victim]])


def describe_grudge(grudge: Grudge) -> str:
    cut = {node: sorted(dropped) for node, dropped in sorted(grudge.items()) if dropped}
    return f"Cut off {cut}" if cut else "no partition"


class Partitioner(Conductor):
    """Applies a grudge on start and heals the network on stop.

    *grudge* picks the topology: it is called with the test's node list on
    every start.
    """

    name = "partitioner"

    def __init__(self, grudge: Callable[[list[str]], Grudge]):
        super().__init__()
        self.grudge = grudge

    def start_fault(self, test):
        grudge = self.grudge(list(test.nodes))
        test.control.partition(grudge)
        return describe_grudge(grudge)

    def stop_fault(self, test):
        test.control.heal()
        return "fully connected"

    def heal(self, test):
        test.control.heal()


def partition_bridge(rng: random.Random | None = None) -> Partitioner:
    """Bridge partitions over a freshly shuffled node order."""
    rng = rng or random.Random()

    def grudge(nodes):
        rng.shuffle(nodes)
        return bridge(nodes)

    return Partitioner(grudge)


def partition_random_halves(rng: random.Random | None = None) -> Partitioner:
    rng = rng or random.Random()
    return Partitioner(lambda nodes: random_halves(nodes, rng))


def partition_random_node(rng: random.Random | None = None) -> Partitioner:
    rng = rng or random.Random()
    return Partitioner(lambda nodes: isolate_random_node(nodes, rng))


# ---------------------------------------------------------------------------
# Crashes, clocks, compaction
# ---------------------------------------------------------------------------


def random_subset(nodes: Sequence[str], rng: random.Random) -> list[str]:
    """A random, non-empty subset of *nodes*."""
    nodes = list(nodes)
    if not nodes:
        return []
    return rng.sample(nodes, rng.randint(1, len(nodes)))


class Crasher(Conductor):
    """Kills the database on a random subset of nodes, and restarts it on stop."""

    name = "crasher"

    def __init__(self, service: str = "scylla", *, rng: random.Random | None = None):
        super().__init__()
        self.service = service
        self._rng = rng or random.Random()
        self.crashed: list[str] = []

    def start_fault(self, test):
        targets = test.state.claim(self.name, random_subset(test.state.members(), self._rng))
        self.crashed = targets
        for node in targets:
            test.control.stop(node, self.service)
        return f"killed {self.service} on {targets}"

    def stop_fault(self, test):
        restarted = list(self.crashed)
        try:
            for node in restarted:
                test.control.start(node, self.service)
        finally:
            test.state.release(self.name, restarted)
            self.crashed = []
        return f"restarted {self.service} on {restarted}"

    def heal(self, test):
        if self.crashed:
            self.stop_fault(test)


class ClockScrambler(Conductor):
    """Offsets each node's clock by up to *dt_ms*, and resyncs on stop."""

    name = "clock-scrambler"

    def __init__(self, dt_ms: int | None = None, *, rng: random.Random | None = None):
        super().__init__()
        self.dt_ms = setups.default("clock_drift_ms") if dt_ms is None else dt_ms
        self._rng = rng or random.Random()

    def start_fault(self, test):
        offsets = {node: self._rng.randint(-self.dt_ms, self.dt_ms) for node in test.nodes}
        for node, delta in offsets.items():
            test.control.set_clock_offset(node, delta)
        return {"clock-offsets": offsets}

    def stop_fault(self, test):
        test.control.reset_clocks()
        return "clocks reset"

    def heal(self, test):
        test.control.reset_clocks()


class FlushAndCompacter(Conductor):
    """Flushes memtables on start and forces a major compaction on stop."""

    name = "flush-and-compacter"

    def start_fault(self, test):
        members = test.state.members()
        for node in members:
            test.control.flush(node)
        return f"flushed {members}"

    def stop_fault(self, test):
        members = test.state.members()
        for node in members:
            test.control.compact(node)
        return f"compacted {members}"

    def heal(self, test):
        pass


# ---------------------------------------------------------------------------
# Topology changes
# ---------------------------------------------------------------------------


class Bootstrapper(Conductor):
    """Joins one not-yet-bootstrapped node to the cluster on each start."""

    name = "bootstrapper"

    def start_fault(self, test):
        with test.state.topology_lock:
            claimed = test.state.claim(self.name, test.state.pending_bootstrap(), count=1)
            if not claimed:
                return "no node available to bootstrap"
            node = claimed[0]
            try:
                test.control.bootstrap(node)
                test.state.joined(node)
            finally:
                test.state.release(self.name, claimed)
        return f"bootstrapped {node}"

    def stop_fault(self, test):
        return "idle"

    def heal(self, test):
        pass


class Decommissioner(Conductor):
    """Decommissions one random member on each start.

    Never shrinks the ring below *min_members*.  Decommissioned nodes go
    back to the pending-bootstrap set so a :class:`Bootstrapper` can bring
    them back.
    """

    name = "decommissioner"

    def __init__(self, min_members: int | None = None, *, rng: random.Random | None = None):
        super().__init__()
        self.min_members = min_members
        self._rng = rng or random.Random()

    def start_fault(self, test):
        floor = self.min_members
        if floor is None:
            floor = setups.default("replication_factor")
        with test.state.topology_lock:
            members = test.state.members()
            if len(members) <= floor:
                return f"only {len(members)} members, not decommissioning"
            self._rng.shuffle(members)
            claimed = test.state.claim(self.name, members, count=1)
            if not claimed:
                return "no node available to decommission"
            node = claimed[0]
            try:
                test.control.decommission(node)
                test.state.left(node)
            finally:
                test.state.release(self.name, claimed)
        return f"decommissioned {node}"

    def stop_fault(self, test):
        return "idle"

    def heal(self, test):
        pass
