"""
Test definitions and the run lifecycle.

A :class:`Test` bundles everything one run needs: the nodes, a client
template, the generator, named conductors, a checker and the hooks into
the system under test.  :func:`run` drives it::

    DB setup on every node
    client setup (one per client process; failure aborts the run)
    conductor setup, sidekick start, optional slow network
    WorkerPool runs the generator to exhaustion
    client + conductor teardown (conductors heal their faults)
    DB teardown
    checker -> results, artifacts written to the store

Teardown steps are best effort: they log errors and carry on, so a
failure in one never leaves the cluster faulted.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from carly import setups, store
from carly.checker import UNKNOWN, Checker, UnbridledOptimism, check_safe
from carly.client import Client, Connector, NoopClient, safe_teardown
from carly.control import DB, ControlPlane, NoopDB
from carly.errors import SetupError
from carly.generator import Once, Phases, Route, Sleep, TimeLimit, Void, coerce
from carly.history import History
from carly.memory import InMemoryCluster
from carly.model import Model
from carly.nemesis import ClusterState, Conductor
from carly.scheduler import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_NODES = ("n1", "n2", "n3", "n4", "n5")


@dataclass(frozen=True)
class Test:
    """One test definition.

    Generators and conductors are stateful, so build a fresh ``Test`` for
    every run.  ``state`` is the one field conductors mutate, through its
    own lock.
    """

    __test__ = False

    name: str
    nodes: tuple[str, ...] = DEFAULT_NODES
    client: Client = field(default_factory=NoopClient)
    generator: Any = None
    conductors: Mapping[str, Conductor] = field(default_factory=dict)
    checker: Checker = field(default_factory=UnbridledOptimism)
    model: Model | None = None
    control: ControlPlane | None = None
    db: DB = field(default_factory=NoopDB)
    connector: Connector | None = None
    #: Client processes; 0 means one per node.
    concurrency: int = 0
    #: Duration of the main client + conductor phase, for :func:`std_generator`.
    time_limit: float | None = None
    state: ClusterState | None = None
    sidekick: Callable[[Test, Path], None] | None = None
    #: Per-message delay applied for the whole run, in seconds.
    slow_network: float | None = None
    store_dir: str | None = None
    leave_db_running: bool = False
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "nodes", tuple(self.nodes))
        if not self.nodes:
            raise ValueError("a test needs at least one node")

    @property
    def client_count(self) -> int:
        return self.concurrency or len(self.nodes)

    def with_options(self, **changes: Any) -> Test:
        return replace(self, **changes)


@dataclass
class RunResult:
    test: Test
    history: History
    results: dict[str, Any]
    path: Path | None = None

    @property
    def valid(self) -> bool | str:
        return self.results.get("valid", UNKNOWN)


def exit_code(valid: bool | str | RunResult) -> int:
    """0 unless a checker found the history invalid."""
    if isinstance(valid, RunResult):
        valid = valid.valid
    return 1 if valid is False else 0


def std_generator(
    client_gen: Any,
    conductors: Mapping[str, Conductor],
    *,
    time_limit: float | None = None,
    recovery_time: float | None = None,
    quiet: float | None = None,
    active: float | None = None,
) -> Phases:
    """Clients and conductors together for *time_limit*, then recover.

    1. Clients run *client_gen* while each conductor cycles through its
       start/stop schedule, until the time limit.
    2. Every conductor is told to stop.
    3. Everybody sleeps for *recovery_time*.
    """
    if time_limit is None:
        time_limit = setups.default("time_limit")
    if recovery_time is None:
        recovery_time = setups.default("recovery_time")
    main = TimeLimit(
        time_limit,
        Route({name: c.schedule(quiet, active) for name, c in conductors.items()}, clients=client_gen),
    )
    stop_all = Route({name: Once({"f": "stop"}) for name in conductors})
    return Phases(main, stop_all, Sleep(recovery_time))


def cassandra_test(name: str, opts: Mapping[str, Any] | None = None) -> Test:
    """A test against a replicated cluster, with the usual defaults.

    Recognized *opts*: ``nodes``, ``bootstrap`` (nodes held back until a
    bootstrapper joins them), ``cluster`` (the system under test; an
    :class:`~carly.memory.InMemoryCluster` by default) and any
    :class:`Test` field.
    """
    opts = dict(opts or {})
    nodes = tuple(opts.pop("nodes", DEFAULT_NODES))
    bootstrap = list(opts.pop("bootstrap", ()))
    unknown = set(bootstrap) - set(nodes)
    if unknown:
        raise ValueError(f"bootstrap nodes {sorted(unknown)} are not test nodes")
    cluster = opts.pop("cluster", None)
    if cluster is None:
        cluster = InMemoryCluster(nodes, joining=bootstrap)
    opts.setdefault("control", cluster)
    opts.setdefault("db", cluster)
    opts.setdefault("connector", cluster)
    opts.setdefault("state", ClusterState(nodes, pending_bootstrap=bootstrap))
    opts.setdefault("time_limit", setups.default("time_limit"))
    return Test(name=name, nodes=nodes, **opts)


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


def _setup_db(test: Test) -> None:
    for node in test.nodes:
        try:
            test.db.setup(test, node)
        except Exception as e:
            raise SetupError(f"could not set up the database on {node}: {e}") from e


def _teardown_db(test: Test) -> None:
    for node in test.nodes:
        try:
            test.db.teardown(test, node)
        except Exception:
            logger.warning("Error tearing down the database on %s", node, exc_info=True)


def _open_client(test: Test, process: int) -> Client:
    node = test.nodes[process % len(test.nodes)]
    return test.client.setup(test, node)


def _open_clients(test: Test) -> dict[int, Client]:
    opened: dict[int, Client] = {}
    for process in range(test.client_count):
        try:
            opened[process] = _open_client(test, process)
        except Exception as e:
            for client in opened.values():
                safe_teardown(client, test)
            raise SetupError(f"could not set up client {process}: {e}") from e
    logger.info("Opened %d clients", len(opened))
    return opened


def _setup_conductors(test: Test) -> dict[str, Conductor]:
    ready: dict[str, Conductor] = {}
    for name, conductor in test.conductors.items():
        try:
            ready[name] = conductor.setup(test)
        except Exception as e:
            _teardown_conductors(test, ready)
            raise SetupError(f"could not set up conductor {name}: {e}") from e
    return ready


def _teardown_conductors(test: Test, conductors: Mapping[str, Conductor]) -> None:
    for name, conductor in conductors.items():
        logger.info("Tearing down conductor %s", name)
        conductor.teardown(test)


def _start_sidekick(test: Test, path: Path) -> threading.Thread | None:
    if test.sidekick is None:
        return None

    def sidekick():
        try:
            test.sidekick(test, path)
        except Exception:
            logger.warning("Sidekick for %r failed", test.name, exc_info=True)

    thread = threading.Thread(target=sidekick, name=f"carly sidekick {test.name}", daemon=True)
    thread.start()
    return thread


def run(test: Test, *, abort_after: float | None = None, save: bool = True) -> RunResult:
    """Run *test* and check its history.

    Raises :class:`~carly.errors.SetupError` if the database, a client or a
    conductor cannot be set up; nothing is generated in that case.
    """
    started = datetime.now()
    path = store.prepare(test, started) if save else store.run_dir(test, started)
    logger.info("Running test %r against %s", test.name, ", ".join(test.nodes))

    try:
        _setup_db(test)
        clients = _open_clients(test)
        try:
            conductors = _setup_conductors(test)
        except SetupError:
            for client in clients.values():
                safe_teardown(client, test)
            raise
        sidekick = None
        pool = WorkerPool(
            test,
            coerce(test.generator) if test.generator is not None else Void(),
            clients,
            conductors,
            reopen=lambda process: _open_client(test, process),
        )
        try:
            if test.slow_network is not None and test.control is not None:
                test.control.slow_network(test.slow_network)
            sidekick = _start_sidekick(test, path)
            history = pool.run(abort_after=abort_after)
        finally:
            for client in list(pool.clients.values()):
                safe_teardown(client, test)
            _teardown_conductors(test, conductors)
            if test.slow_network is not None and test.control is not None:
                try:
                    test.control.fast_network()
                except Exception:
                    logger.warning("Could not restore the network", exc_info=True)
            if sidekick is not None:
                sidekick.join(timeout=setups.default("abort_grace"))
                if sidekick.is_alive():
                    logger.warning("Sidekick for %r is still running", test.name)
    finally:
        if not test.leave_db_running:
            _teardown_db(test)

    logger.info("Run complete: %d ops; analyzing", len(history))
    results = check_safe(test.checker, test, test.model, history)
    result = RunResult(test, history, results, path if save else None)
    if save:
        store.save(path, test, history, results)
        logger.info("Wrote artifacts to %s", path)
    if results["valid"] is True:
        logger.info("Everything looks good!")
    elif results["valid"] is False:
        logger.warning("Analysis invalid!")
    else:
        logger.warning("Errors occurred during analysis, but no anomalies found.")
    return result


def node_names(count: int, prefix: str = "n") -> tuple[str, ...]:
    return tuple(f"{prefix}{i}" for i in range(1, count + 1))


def parse_nodes(values: Sequence[str] | None) -> tuple[str, ...]:
    """Nodes from repeated or comma-separated ``--node`` values."""
    if not values:
        return DEFAULT_NODES
    nodes: list[str] = []
    for value in values:
        nodes.extend(part.strip() for part in value.split(",") if part.strip())
    return tuple(nodes)
