"""
Clients: per-process handles to the system under test.

A :class:`Client` is set up once per client process, invoked repeatedly,
and torn down at the end of the run::

    bound = template.setup(test, node)
    completion = bound.invoke(test, invocation)
    bound.teardown(test)

``invoke`` must return a completion whose type is exactly one of ok, fail
or info.  Clients talk to the database through the abstract
:class:`Connector` / :class:`Connection` pair, so the harness never depends
on a concrete driver.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol

from carly import setups
from carly.common import Op
from carly.errors import ClientError, NoHostAvailableError, OperationTimeoutError, UnavailableError

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """An open session against the system under test."""

    def execute(self, statement: Any) -> Any:
        """Run *statement*; raise a :class:`~carly.errors.ClientError` on failure."""
        ...

    def close(self) -> None: ...


class Connector(Protocol):
    """Opens connections against a set of contact nodes."""

    def connect(self, nodes: Sequence[str]) -> Connection: ...


class Client:
    """Base class for clients.

    Subclasses implement :meth:`setup`, :meth:`invoke` and, if they hold
    resources, :meth:`teardown`.  ``setup`` returns a *new* client bound to
    its connection; the instance it is called on acts as a template and
    is never invoked directly.
    """

    def setup(self, test: Any, node: str) -> Client:
        """Open a connection for one process and return the bound client.

        Must be idempotent: schema that already exists counts as success.
        """
        return self

    def invoke(self, test: Any, op: Op) -> Op:
        raise NotImplementedError

    def teardown(self, test: Any) -> None:
        """Release the connection.  Errors are logged by the caller."""


class NoopClient(Client):
    """Acknowledges every op without touching anything."""

    def invoke(self, test, op):
        return op.ok()


def complete_exceptionally(op: Op, error: ClientError, *, idempotent: bool = False) -> Op:
    """Classify a client error into a fail or info completion of *op*.

    - Unavailable: the statement was rejected, ``fail``.
    - No host available: back off briefly (the whole cluster may be down),
      then ``fail``.
    - Timeout: ``info``, since replicas may have applied it.  An
      *idempotent* op (a read) changes nothing either way, so its timeout
      is a ``fail``.
    - Anything else: ``fail`` if the error is definite, else ``info``.
    """
    message = str(error) or type(error).__name__
    if isinstance(error, NoHostAvailableError):
        backoff = setups.default("no_host_backoff")
        logger.info("All nodes are down - sleeping %ss", backoff)
        time.sleep(backoff)
        return op.fail(message)
    if isinstance(error, UnavailableError):
        return op.fail(message)
    if isinstance(error, OperationTimeoutError):
        if idempotent:
            return op.fail("timed-out")
        return op.info("timed-out")
    if error.definite:
        return op.fail(message)
    return op.info(message)


def safe_teardown(client: Client, test: Any) -> None:
    """Tear down *client*, logging rather than raising on error."""
    try:
        client.teardown(test)
    except Exception:
        logger.warning("Error tearing down client %r", client, exc_info=True)
