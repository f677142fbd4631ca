"""
Generators: lazy, composable sources of operations.

A generator is asked for an operation each time a worker is ready to issue
one::

    result = gen.op(test, ctx, process)

and answers with one of three things:

- an op template, a ``dict`` with at least ``"f"`` and optionally
  ``"value"``;
- :data:`PENDING`, meaning "nothing for you right now, ask again later"
  (used by barriers such as :class:`Phases`);
- ``None``, meaning the generator is exhausted for this process.

Exhaustion is never signalled by raising.  Generators are shared by all
workers, so any internal state is guarded by a lock, and nothing blocks
the calling thread except the explicit pauses of :class:`Sleep`,
:class:`Delay` and :class:`Stagger`.

Example -- adds from every client for ten seconds, one per second per
process, then a single read::

    >>> gen = phases(
    ...     time_limit(10, delay(1, clients(fn(next_add)))),
    ...     clients(once({"f": "read"})),
    ... )
"""

from __future__ import annotations

import itertools
import random
import threading
import time
from collections.abc import Callable, Collection, Iterable, Mapping
from typing import Any

from carly.common import Process
from carly.history import is_client_process


class _Pending:
    """Sentinel type for "no op available yet"."""

    _instance: _Pending | None = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "PENDING"

    def __bool__(self):
        return False


PENDING = _Pending()


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class Context:
    """Shared state describing the workers a generator is serving.

    Tracks which processes are still live, provides the run's relative
    clock, and carries the stop flag that cuts pauses short when the run
    ends.  Workers that receive :data:`PENDING` wait on the progress
    condition, which is notified whenever an op completes, a process
    retires or a barrier advances.
    """

    def __init__(self, processes: Iterable[Process], *, start_ns: int | None = None):
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._live: set[Process] = set(processes)
        self._generation = 0
        self._stop = threading.Event()
        self._start_ns = time.monotonic_ns() if start_ns is None else start_ns

    # -- clock -----------------------------------------------------------

    def now(self) -> int:
        """Nanoseconds since the context was created."""
        return time.monotonic_ns() - self._start_ns

    def elapsed(self) -> float:
        return self.now() / 1e9

    # -- processes -------------------------------------------------------

    def is_client(self, process: Process) -> bool:
        return is_client_process(process)

    def live_processes(self) -> frozenset[Process]:
        with self._lock:
            return frozenset(self._live)

    def retire(self, process: Process) -> None:
        """Mark *process* as finished; barriers stop waiting for it."""
        with self._condition:
            self._live.discard(process)
            self._generation += 1
            self._condition.notify_all()

    def replace(self, old: Process, new: Process) -> None:
        """Swap a crashed process for its replacement."""
        with self._condition:
            self._live.discard(old)
            self._live.add(new)
            self._generation += 1
            self._condition.notify_all()

    # -- stop flag -------------------------------------------------------

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Stop handing out ops and wake every sleeping or waiting worker."""
        self._stop.set()
        self.notify_progress()

    def sleep(self, seconds: float) -> bool:
        """Pause for *seconds*.  Returns False if the run stopped meanwhile."""
        if seconds <= 0:
            return not self.stopped
        return not self._stop.wait(seconds)

    # -- progress --------------------------------------------------------

    def progress_marker(self) -> int:
        with self._lock:
            return self._generation

    def notify_progress(self) -> None:
        with self._condition:
            self._generation += 1
            self._condition.notify_all()

    def wait_for_progress(self, marker: int, timeout: float) -> bool:
        """Wait until progress happened after *marker* was taken, or timeout."""
        with self._condition:
            return self._condition.wait_for(
                lambda: self._generation != marker or self._stop.is_set(),
                timeout=timeout,
            )


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class Generator:
    """Base class for generators.  Subclasses implement :meth:`op`."""

    def op(self, test: Any, ctx: Context, process: Process) -> dict[str, Any] | _Pending | None:
        """Return the next op template for *process*, PENDING, or None."""
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}()"


def coerce(gen: Any) -> Generator:
    """Turn generator-like values into generators.

    ``None`` never produces anything, a ``dict`` produces copies of itself
    forever, and a zero-argument callable is called once per request.
    """
    if gen is None:
        return Void()
    if isinstance(gen, Generator):
        return gen
    if isinstance(gen, Mapping):
        return Repeat(gen)
    if callable(gen):
        return Fn(gen)
    raise TypeError(f"cannot use {gen!r} as a generator")


# ---------------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------------


class Void(Generator):
    """Exhausted from the start."""

    def op(self, test, ctx, process):
        return None


class Once(Generator):
    """Emits a single op, to whichever process asks first."""

    def __init__(self, template: Mapping[str, Any]):
        self.template = dict(template)
        self._lock = threading.Lock()
        self._emitted = False

    def op(self, test, ctx, process):
        with self._lock:
            if self._emitted:
                return None
            self._emitted = True
        return dict(self.template)

    def __repr__(self):
        return f"Once({self.template!r})"


class Repeat(Generator):
    """Emits copies of the same op forever."""

    def __init__(self, template: Mapping[str, Any]):
        self.template = dict(template)

    def op(self, test, ctx, process):
        return dict(self.template)

    def __repr__(self):
        return f"Repeat({self.template!r})"


class Fn(Generator):
    """Calls ``fn()`` for every request; ``fn`` returns a template or None.

    Calls are serialized so that ``fn`` may keep unguarded state.
    """

    def __init__(self, fn: Callable[[], Mapping[str, Any] | None]):
        self.fn = fn
        self._lock = threading.Lock()

    def op(self, test, ctx, process):
        with self._lock:
            result = self.fn()
        return None if result is None else dict(result)


class Seq(Generator):
    """Emits one op from each element of *items*, in order.

    Elements are op templates (emitted once) or generators (asked once;
    an element that yields nothing, such as a :class:`Sleep`, is skipped).
    """

    _END = object()

    def __init__(self, items: Iterable[Any]):
        self._items = iter(items)
        self._lock = threading.Lock()

    def op(self, test, ctx, process):
        while not ctx.stopped:
            with self._lock:
                item = next(self._items, self._END)
            if item is self._END:
                return None
            if isinstance(item, Mapping):
                return dict(item)
            result = coerce(item).op(test, ctx, process)
            if result is not None:
                return result
        return None


class Cycle(Seq):
    """Like :class:`Seq`, but starts over after the last element."""

    def __init__(self, items: Iterable[Any]):
        items = list(items)
        if not items:
            raise ValueError("Cycle needs at least one element")
        super().__init__(itertools.cycle(items))


class Sleep(Generator):
    """Pauses the requesting process for *seconds*, then yields nothing."""

    def __init__(self, seconds: float):
        self.seconds = seconds

    def op(self, test, ctx, process):
        ctx.sleep(self.seconds)
        return None

    def __repr__(self):
        return f"Sleep({self.seconds})"


# ---------------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------------


class Delay(Generator):
    """Pauses *seconds* before every request to the wrapped generator.

    The pause is per requesting process, so consecutive ops from one
    process are always at least *seconds* apart.
    """

    def __init__(self, seconds: float, gen: Any):
        self.seconds = seconds
        self.gen = coerce(gen)

    def op(self, test, ctx, process):
        if not ctx.sleep(self.seconds):
            return None
        return self.gen.op(test, ctx, process)

    def __repr__(self):
        return f"Delay({self.seconds}, {self.gen!r})"


class Stagger(Generator):
    """Pauses a random time in ``[0, 2 * seconds)`` before every request."""

    def __init__(self, seconds: float, gen: Any, *, rng: random.Random | None = None):
        self.seconds = seconds
        self.gen = coerce(gen)
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    def op(self, test, ctx, process):
        with self._lock:
            pause = self._rng.uniform(0, 2 * self.seconds)
        if not ctx.sleep(pause):
            return None
        return self.gen.op(test, ctx, process)


class TimeLimit(Generator):
    """Stops emitting once *seconds* have passed since the first request.

    An op produced by the wrapped generator after the deadline (for
    instance at the end of a :class:`Delay` pause) is discarded.
    """

    def __init__(self, seconds: float, gen: Any):
        self.seconds = seconds
        self.gen = coerce(gen)
        self._lock = threading.Lock()
        self._deadline: int | None = None

    def deadline(self, ctx: Context) -> int:
        with self._lock:
            if self._deadline is None:
                self._deadline = ctx.now() + int(self.seconds * 1e9)
            return self._deadline

    def op(self, test, ctx, process):
        deadline = self.deadline(ctx)
        if ctx.now() >= deadline:
            return None
        result = self.gen.op(test, ctx, process)
        if result is not None and result is not PENDING and ctx.now() >= deadline:
            return None
        return result

    def __repr__(self):
        return f"TimeLimit({self.seconds}, {self.gen!r})"


class Limit(Generator):
    """Emits at most *n* ops in total, across all processes."""

    def __init__(self, n: int, gen: Any):
        self.gen = coerce(gen)
        self._remaining = n
        self._lock = threading.Lock()

    def op(self, test, ctx, process):
        with self._lock:
            if self._remaining <= 0:
                return None
            self._remaining -= 1
        result = self.gen.op(test, ctx, process)
        if result is None or result is PENDING:
            with self._lock:
                self._remaining += 1
        return result


class Phases(Generator):
    """Runs each generator to exhaustion before starting the next.

    A process that has exhausted the current phase gets :data:`PENDING`
    until every live process has exhausted it too.  Processes still
    waiting on an op from the current phase hold the barrier closed, so
    the next phase starts only once all of them have completed.
    """

    def __init__(self, *gens: Any):
        self.gens = [coerce(g) for g in gens]
        self._lock = threading.Lock()
        self._index = 0
        self._done: set[Process] = set()

    @property
    def phase(self) -> int:
        with self._lock:
            return self._index

    def op(self, test, ctx, process):
        while True:
            with self._lock:
                index = self._index
                exhausted = process in self._done
            if index >= len(self.gens):
                return None
            # A process that has exhausted this phase only re-checks the barrier.
            if not exhausted:
                result = self.gens[index].op(test, ctx, process)
                if result is not None:
                    return result
            with self._lock:
                if self._index != index:
                    continue
                self._done.add(process)
                advanced = ctx.live_processes() <= self._done
                if advanced:
                    self._index += 1
                    self._done = set()
            if not advanced:
                return PENDING
            ctx.notify_progress()

    def __repr__(self):
        return f"Phases({', '.join(map(repr, self.gens))})"


class On(Generator):
    """Restricts a generator to the processes matching *processes*.

    *processes* is either a predicate or a collection of process ids.
    """

    def __init__(self, processes: Callable[[Process], bool] | Collection[Process], gen: Any):
        if callable(processes):
            self._matches = processes
        else:
            allowed = frozenset(processes)
            self._matches = allowed.__contains__
        self.gen = coerce(gen)

    def op(self, test, ctx, process):
        if not self._matches(process):
            return None
        return self.gen.op(test, ctx, process)


class Clients(Generator):
    """Restricts a generator to client processes, excluding conductors."""

    def __init__(self, gen: Any):
        self.gen = coerce(gen)

    def op(self, test, ctx, process):
        if not ctx.is_client(process):
            return None
        return self.gen.op(test, ctx, process)

    def __repr__(self):
        return f"Clients({self.gen!r})"


class Route(Generator):
    """Sends each process to its own generator.

    Processes named in *routes* (usually conductors) get their own
    generator; client processes fall back to *clients*.  Any other
    process is exhausted immediately.
    """

    def __init__(self, routes: Mapping[Process, Any], clients: Any = None):
        self.routes = {process: coerce(g) for process, g in routes.items()}
        self.clients = Clients(clients) if clients is not None else None

    def op(self, test, ctx, process):
        gen = self.routes.get(process)
        if gen is not None:
            return gen.op(test, ctx, process)
        if self.clients is not None:
            return self.clients.op(test, ctx, process)
        return None


class Mix(Generator):
    """Picks one of *gens* at random for each request, skipping exhausted ones."""

    def __init__(self, gens: Iterable[Any], *, rng: random.Random | None = None):
        self.gens = [coerce(g) for g in gens]
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    def op(self, test, ctx, process):
        with self._lock:
            order = self._rng.sample(range(len(self.gens)), len(self.gens))
        pending = False
        for i in order:
            result = self.gens[i].op(test, ctx, process)
            if result is PENDING:
                pending = True
            elif result is not None:
                return result
        return PENDING if pending else None


# ---------------------------------------------------------------------------
# Functional spellings
# ---------------------------------------------------------------------------


def once(template: Mapping[str, Any]) -> Once:
    return Once(template)


def repeat(template: Mapping[str, Any]) -> Repeat:
    return Repeat(template)


def fn(f: Callable[[], Mapping[str, Any] | None]) -> Fn:
    return Fn(f)


def seq(items: Iterable[Any]) -> Seq:
    return Seq(items)


def cycle(items: Iterable[Any]) -> Cycle:
    return Cycle(items)


def sleep(seconds: float) -> Sleep:
    return Sleep(seconds)


def delay(seconds: float, gen: Any) -> Delay:
    return Delay(seconds, gen)


def stagger(seconds: float, gen: Any) -> Stagger:
    return Stagger(seconds, gen)


def time_limit(seconds: float, gen: Any) -> TimeLimit:
    return TimeLimit(seconds, gen)


def limit(n: int, gen: Any) -> Limit:
    return Limit(n, gen)


def phases(*gens: Any) -> Phases:
    return Phases(*gens)


def on(processes: Callable[[Process], bool] | Collection[Process], gen: Any) -> On:
    return On(processes, gen)


def clients(gen: Any) -> Clients:
    return Clients(gen)


def conductors(routes: Mapping[Process, Any], clients: Any = None) -> Route:
    return Route(routes, clients)


def mix(gens: Iterable[Any]) -> Mix:
    return Mix(gens)
