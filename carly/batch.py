"""
The batch-set workload.

Each ``add`` of value *v* writes two rows in one atomic batch at QUORUM::

    a: id=v,  value=v
    b: id=-v, value=v

so tables ``a`` and ``b`` hold the same set of values at all times.  A
``read`` selects every value from both tables at ALL.  If the two sets
differ the batch was not atomic, and the read is recorded as a ``fail``
with both sets as its value and ``error="divergent-tables"``.

The catalog at the bottom pairs the workload with every supported fault
(partitions, crashes, clock drift, flush and compact), optionally combined
with bootstrapping or decommissioning nodes and with a slow network.
"""

from __future__ import annotations

import itertools
import logging
import random
import shutil
import socket
import subprocess
import tempfile
import threading
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from carly import setups
from carly.checker import Checker, Compose, SetChecker, UnbridledOptimism, WellFormed
from carly.client import Client, complete_exceptionally
from carly.core import DEFAULT_NODES, Test, cassandra_test, std_generator
from carly.errors import ClientError, UnavailableError, UnknownOperation
from carly.generator import Clients, Delay, Fn, Once, Phases, TimeLimit
from carly.history import is_client_process
from carly.model import SetModel
from carly.nemesis import (
    Bootstrapper,
    ClockScrambler,
    Conductor,
    Crasher,
    Decommissioner,
    FlushAndCompacter,
    node_subset,
    partition_bridge,
    partition_random_halves,
    partition_random_node,
)
from carly.statements import Batch, ConsistencyLevel, CreateKeyspace, CreateTable, Insert, Select, UseKeyspace

logger = logging.getLogger(__name__)

TABLES = ("a", "b")
DIVERGENT = "divergent-tables"

# Schema creation races between clients otherwise.
_setup_lock = threading.Lock()


class BatchSetClient(Client):
    """A set implemented with batched inserts into two mirrored tables."""

    def __init__(self, conn: Any = None):
        self.conn = conn

    def __repr__(self):
        return f"BatchSetClient({self.conn!r})"

    def setup(self, test, node):
        keyspace = setups.default("keyspace")
        with _setup_lock:
            conn = test.connector.connect(list(test.nodes))
            try:
                conn.execute(CreateKeyspace(keyspace, setups.default("replication_factor")))
                conn.execute(UseKeyspace(keyspace))
                for table in TABLES:
                    conn.execute(
                        CreateTable(
                            table,
                            (("id", "int"), ("value", "int")),
                            primary_key="id",
                            compaction=setups.default("compaction_strategy"),
                        )
                    )
            except Exception:
                conn.close()
                raise
        return BatchSetClient(conn)

    def invoke(self, test, op):
        if op.f == "add":
            return self._add(op)
        if op.f == "read":
            return self._read(op)
        raise UnknownOperation(self, op.f)

    def _add(self, op):
        value = op.value
        batch = Batch(
            (
                Insert("a", {"id": value, "value": value}),
                Insert("b", {"id": -value, "value": value}),
            ),
            consistency=ConsistencyLevel.QUORUM,
        )
        try:
            self.conn.execute(batch)
        except ClientError as e:
            return complete_exceptionally(op, e)
        return op.ok()

    def _read(self, op):
        try:
            value_a = self._select("a")
            value_b = self._select("b")
        except ClientError as e:
            if isinstance(e, UnavailableError):
                logger.info("Not enough replicas - failing")
            return complete_exceptionally(op, e, idempotent=True)
        if value_a != value_b:
            return op.fail(DIVERGENT, value=[value_a, value_b])
        return op.ok(value_a)

    def _select(self, table: str) -> set[int]:
        rows = self.conn.execute(Select(table, consistency=ConsistencyLevel.ALL))
        return {row["value"] for row in rows}

    def teardown(self, test):
        logger.info("Tearing down client with conn %r", self.conn)
        if self.conn is not None:
            self.conn.close()


def adds() -> Fn:
    """Adds of 0, 1, 2, ... in order, shared by all processes."""
    counter = itertools.count()
    return Fn(lambda: {"f": "add", "value": next(counter)})


def read_once() -> Clients:
    return Clients(Once({"f": "read"}))


class CrossTableChecker(Checker):
    """Valid when no read saw different values in the two tables."""

    def check(self, test, model, history, opts):
        reads = [op for op in history.completions(f="read") if is_client_process(op.process)]
        divergent = [op for op in reads if op.error == DIVERGENT]
        return {
            "valid": not divergent,
            "read_count": len(reads),
            "divergent_count": len(divergent),
            "divergent": [op.to_dict() for op in divergent[:10]],
        }


def batch_set_checker() -> Compose:
    return Compose(
        {
            "set": SetChecker(),
            "cross-table": CrossTableChecker(),
            "well-formed": WellFormed(),
        }
    )


def batch_set_test(name: str, opts: Mapping[str, Any] | None = None) -> Test:
    """The batch-set workload under the conductors in ``opts["conductors"]``.

    Timing options (``time_limit``, ``add_delay``, ``final_read_delay``,
    ``recovery_time``, ``quiet``, ``active``) default to :mod:`carly.setups`.
    Everything else is passed to :func:`~carly.core.cassandra_test`.
    """
    opts = dict(opts or {})
    conductors: dict[str, Conductor] = dict(opts.pop("conductors", {}))
    time_limit = opts.pop("time_limit", None) or setups.default("time_limit")
    add_delay = opts.pop("add_delay", None)
    final_read_delay = opts.pop("final_read_delay", None)
    main = std_generator(
        Delay(setups.default("add_delay") if add_delay is None else add_delay, adds()),
        conductors,
        time_limit=time_limit,
        recovery_time=opts.pop("recovery_time", None),
        quiet=opts.pop("quiet", None),
        active=opts.pop("active", None),
    )
    final = Clients(
        Delay(
            setups.default("final_read_delay") if final_read_delay is None else final_read_delay,
            Once({"f": "read"}),
        )
    )
    opts.setdefault("client", BatchSetClient())
    opts.setdefault("model", SetModel())
    opts.setdefault("checker", batch_set_checker())
    return cassandra_test(
        f"batch set {name}",
        {
            **opts,
            "conductors": conductors,
            "time_limit": time_limit,
            "generator": Phases(main, final),
        },
    )


def sanity_test(opts: Mapping[str, Any] | None = None) -> Test:
    """Two seconds of adds and no faults: does the cluster work at all?"""
    opts = dict(opts or {})
    opts.pop("seed", None)
    time_limit = opts.pop("time_limit", None) or 2.0
    opts.setdefault("client", BatchSetClient())
    opts.setdefault("generator", TimeLimit(time_limit, Clients(Delay(1, adds()))))
    opts.setdefault("checker", Compose({"happy": UnbridledOptimism(), "well-formed": WellFormed()}))
    return cassandra_test("sanity check", {**opts, "time_limit": time_limit})


# ---------------------------------------------------------------------------
# Sidekicks
# ---------------------------------------------------------------------------


def _resolve(node: str) -> str:
    try:
        return socket.gethostbyname(node)
    except OSError:
        return node


def cassandra_stress(duration: str = "5m", threads: int = 500) -> Callable[[Test, Path], None]:
    """A sidekick running a ``cassandra-stress`` write load against the first node.

    The stress log is copied into the run directory when the tool exits.
    """
    log_name = "cassandra-stress.log"

    def sidekick(test: Test, path: Path) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            tmp_log = Path(tmp) / log_name
            args = [
                setups.default("cassandra_stress_executable"),
                "write",
                "no-warmup",
                f"duration={duration}",
                "-rate",
                f"threads={threads}",
                "-mode",
                "native",
                "cql3",
                "-node",
                _resolve(test.nodes[0]),
                "-log",
                f"file={tmp_log}",
            ]
            logger.info("running stress test: %s", " ".join(args))
            subprocess.run(args, capture_output=True, text=True, check=False)
            if tmp_log.exists() and path.is_dir():
                logger.info("Copying %s to %s", tmp_log, path / log_name)
                shutil.copy(tmp_log, path / log_name)

    return sidekick


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

#: Fault injectors by name; each factory takes the test's random generator.
NEMESES: dict[str, Callable[[random.Random], Conductor]] = {
    "bridge": partition_bridge,
    "halves": partition_random_halves,
    "isolate node": partition_random_node,
    "crash": lambda rng: Crasher(rng=rng),
    "clock drift": lambda rng: ClockScrambler(rng=rng),
    "flush and compact": lambda rng: FlushAndCompacter(),
}

TestFactory = Callable[..., Test]


def _variant(
    nemesis: str,
    *,
    bootstrap: bool = False,
    decommission: bool = False,
    stress: bool = False,
    slow_net: bool = False,
) -> tuple[str, TestFactory]:
    name = nemesis
    if bootstrap:
        name += " bootstrap"
    if decommission:
        name += " decommission"
    if stress:
        name += " stress"
    if slow_net:
        name += " slow network"

    def build(opts: Mapping[str, Any] | None = None) -> Test:
        opts = dict(opts or {})
        rng = random.Random(opts.pop("seed", None))
        nodes = tuple(opts.get("nodes", DEFAULT_NODES))
        conductors: dict[str, Conductor] = {"nemesis": NEMESES[nemesis](rng)}
        if bootstrap:
            opts.setdefault("bootstrap", node_subset(nodes, 2))
            conductors["bootstrapper"] = Bootstrapper()
        if decommission:
            conductors["decommissioner"] = Decommissioner(rng=rng)
        if stress or slow_net:
            opts.setdefault("sidekick", cassandra_stress())
        if slow_net:
            opts.setdefault("slow_network", setups.default("slow_net_delay"))
        conductors.update(opts.pop("conductors", {}))
        return batch_set_test(name, {**opts, "conductors": conductors})

    return f"batch set {name}", build


def _catalog() -> dict[str, TestFactory]:
    tests: dict[str, TestFactory] = {"sanity check": sanity_test}
    variants = [_variant(n) for n in NEMESES]
    topology_faults = ["bridge", "halves", "isolate node", "crash", "clock drift"]
    variants += [_variant(n, bootstrap=True) for n in topology_faults]
    variants += [_variant(n, decommission=True) for n in topology_faults]
    variants.append(_variant("crash", bootstrap=True, stress=True))
    for n in ["bridge", "halves", "isolate node"]:
        variants.append(_variant(n, slow_net=True))
        variants.append(_variant(n, bootstrap=True, slow_net=True))
        variants.append(_variant(n, decommission=True, slow_net=True))
    tests.update(variants)
    return tests


#: Every named test: full name -> factory taking an options mapping.
TESTS: dict[str, TestFactory] = _catalog()


def lookup(name: str) -> TestFactory:
    """Find a test by its full name, or by its name without ``batch set``."""
    for candidate in (name, f"batch set {name}"):
        if candidate in TESTS:
            return TESTS[candidate]
    raise KeyError(f"no test named {name!r}")
