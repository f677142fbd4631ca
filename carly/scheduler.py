"""
Worker pool: drives clients and conductors concurrently into one history.

There is one worker thread per logical process, client or conductor.
Each worker loops::

    template = generator.op(test, ctx, process)   # None ends the worker
    history.append(invoke)
    completion = actor.invoke(test, invoke)       # client or conductor
    history.append(completion)

so a process never issues its next op before the previous one completed,
while different processes overlap freely.  Timestamps come from the
pool's :class:`~carly.generator.Context` clock and are taken under the
same lock as the append, so history order agrees with time order.

Stopping:

- **Soft stop** (generators exhausted, time limit, :meth:`WorkerPool.stop`):
  no new ops are handed out; in-flight ops run to completion.
- **Abort** (:meth:`WorkerPool.abort`): additionally records every in-flight
  op as ``info`` right away.  If its worker eventually returns, that late
  completion is dropped, so each invoke still has at most one completion.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from carly import setups
from carly.client import Client, safe_teardown
from carly.common import COMPLETIONS, Op, OpType, Process
from carly.errors import RunAborted
from carly.generator import PENDING, Context, Generator
from carly.history import History
from carly.nemesis import Conductor

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs a generator against a set of clients and conductors.

    Args:
        test: The test being run; passed through to generators and actors.
        generator: The op source shared by every worker.
        clients: Bound client per client process (integers ``0..n-1``).
        conductors: Conductor per conductor process name.
        reopen: Called with a new process id to open a replacement client
            after a client crashed.  Without it, a crashed process retires.
        time_limit: Soft-stop the pool after this many seconds.
        poll_interval: Longest a worker waits after receiving PENDING
            before asking its generator again.
    """

    def __init__(
        self,
        test: Any,
        generator: Generator,
        clients: Mapping[int, Client],
        conductors: Mapping[str, Conductor] | None = None,
        *,
        reopen: Callable[[int], Client] | None = None,
        time_limit: float | None = None,
        poll_interval: float = 0.05,
    ):
        self.test = test
        self.generator = generator
        self.clients: dict[Process, Client] = dict(clients)
        self.conductors: dict[Process, Conductor] = dict(conductors or {})
        self.reopen = reopen
        self.time_limit = time_limit
        self.poll_interval = poll_interval
        self.concurrency = len(self.clients)
        self.history = History()
        self.ctx = Context([*self.clients, *self.conductors])
        self.threads: list[threading.Thread] = []
        self.errors: dict[Process, Exception] = {}
        self._lock = threading.Lock()
        self._in_flight: dict[Process, Op] = {}
        self._aborted = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, abort_after: float | None = None) -> History:
        """Start every worker, wait for them, and return the frozen history."""
        self.start()
        self.wait(abort_after=abort_after)
        return self.history.freeze()

    def start(self) -> None:
        for process, client in self.clients.items():
            self._spawn(process, client)
        for process, conductor in self.conductors.items():
            self._spawn(process, conductor)

    def stop(self) -> None:
        """Hand out no new ops; let in-flight ops finish."""
        self.ctx.stop()

    def abort(self, reason: str = "aborted") -> list[Op]:
        """Stop, and resolve every in-flight op as ``info`` immediately.

        Returns the completions that were recorded.
        """
        self.ctx.stop()
        recorded = []
        with self._lock:
            self._aborted = True
            for process, invoke in sorted(self._in_flight.items(), key=lambda kv: kv[1].index):
                completion = invoke.info(reason)
                completion.time = self.ctx.now()
                self.history.append(completion)
                recorded.append(completion)
                logger.warning("Process %r aborted with %r in flight", process, invoke)
            self._in_flight.clear()
        self.ctx.notify_progress()
        return recorded

    @property
    def aborted(self) -> bool:
        return self._aborted

    def in_flight(self) -> dict[Process, Op]:
        with self._lock:
            return dict(self._in_flight)

    def wait(self, abort_after: float | None = None) -> None:
        """Wait for every worker to finish.

        Soft-stops the pool once *time_limit* has elapsed, and aborts it
        once *abort_after* seconds have elapsed.  A KeyboardInterrupt aborts
        the pool and raises :class:`~carly.errors.RunAborted` with the
        history recorded so far.  Raises the first error a worker hit, if any.
        """
        started = time.monotonic()
        try:
            while any(t.is_alive() for t in self.threads):
                elapsed = time.monotonic() - started
                if self.time_limit is not None and elapsed >= self.time_limit and not self.ctx.stopped:
                    logger.info("Time limit of %ss reached; no new operations", self.time_limit)
                    self.stop()
                if abort_after is not None and elapsed >= abort_after and not self._aborted:
                    logger.warning("Run exceeded %ss; aborting", abort_after)
                    self.abort("timed out")
                    break
                for t in self.threads:
                    t.join(timeout=self.poll_interval)
                    if t.is_alive():
                        break
        except KeyboardInterrupt as e:
            self.abort("interrupted")
            raise RunAborted("interrupted", self.history.freeze()) from e
        if self._aborted:
            self._join_stragglers(setups.default("abort_grace"))

        if self.errors:
            first_error = next(iter(self.errors.values()))
            raise first_error

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _spawn(self, process: Process, actor: Client | Conductor) -> None:
        thread = threading.Thread(
            target=self._worker,
            args=(process, actor),
            name=f"carly worker {process}",
            daemon=True,
        )
        self.threads.append(thread)
        thread.start()

    def _join_stragglers(self, grace: float) -> None:
        deadline = time.monotonic() + grace
        for t in self.threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self.threads if t.is_alive()]
        if alive:
            logger.warning("Workers still running after abort: %s", ", ".join(alive))

    def _worker(self, process: Process, actor: Client | Conductor) -> None:
        ctx = self.ctx
        try:
            while not ctx.stopped:
                marker = ctx.progress_marker()
                template = self.generator.op(self.test, ctx, process)
                if template is None:
                    break
                if template is PENDING:
                    ctx.wait_for_progress(marker, self.poll_interval)
                    continue
                if ctx.stopped:
                    break
                invoke = self._record_invoke(process, template)
                if invoke is None:
                    break
                completion, crashed = self._invoke(actor, invoke)
                if not self._record_completion(process, completion):
                    break
                ctx.notify_progress()
                if crashed:
                    replacement = self._replace_client(process, actor)
                    if replacement is None:
                        return
                    process, actor = replacement
        except Exception as e:
            logger.error("Worker %r failed", process, exc_info=True)
            self.errors[process] = e
            ctx.stop()
        finally:
            ctx.retire(process)

    def _invoke(self, actor: Client | Conductor, invoke: Op) -> tuple[Op, bool]:
        """Invoke *actor*; a raised exception becomes an ``info`` completion."""
        try:
            completion = actor.invoke(self.test, invoke)
        except Exception as e:
            logger.warning("Process %r crashed invoking %r", invoke.process, invoke, exc_info=True)
            return invoke.info(f"{type(e).__name__}: {e}"), isinstance(actor, Client)
        return _normalize(invoke, completion), False

    def _replace_client(self, process: Process, client: Client) -> tuple[int, Client] | None:
        """Retire a crashed client process and open its replacement.

        The crashed op may still be in flight inside the database, so the
        old process id is never reused.
        """
        safe_teardown(client, self.test)
        if self.reopen is None or not isinstance(process, int):
            return None
        new_process = process + self.concurrency
        try:
            new_client = self.reopen(new_process)
        except Exception:
            logger.warning("Could not reopen client for process %r", new_process, exc_info=True)
            return None
        with self._lock:
            self.clients.pop(process, None)
            self.clients[new_process] = new_client
        self.ctx.replace(process, new_process)
        logger.info("Process %r crashed; continuing as process %r", process, new_process)
        return new_process, new_client

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _record_invoke(self, process: Process, template: Mapping[str, Any]) -> Op | None:
        if "f" not in template:
            raise ValueError(f"op template {template!r} has no 'f'")
        with self._lock:
            if self._aborted:
                return None
            op = Op(
                process=process,
                type=OpType.INVOKE,
                f=template["f"],
                value=template.get("value"),
                time=self.ctx.now(),
            )
            self.history.append(op)
            self._in_flight[process] = op
        return op

    def _record_completion(self, process: Process, completion: Op) -> bool:
        with self._lock:
            if self._in_flight.pop(process, None) is None:
                logger.info("Dropping late completion %r of an aborted op", completion)
                return False
            completion.time = self.ctx.now()
            self.history.append(completion)
        return True


def _normalize(invoke: Op, completion: Any) -> Op:
    """Make sure a completion belongs to *invoke* and has a terminal type."""
    if not isinstance(completion, Op) or completion.type not in COMPLETIONS:
        logger.warning("Invalid completion %r for %r", completion, invoke)
        return invoke.info("invalid completion")
    if completion.process != invoke.process or completion.f != invoke.f:
        return dataclasses.replace(completion, process=invoke.process, f=invoke.f, index=-1)
    return completion
