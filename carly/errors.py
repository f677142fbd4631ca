"""
Exception hierarchy for carly.

Two families live here:

1. **Harness errors** (``SetupError``, ``RunAborted``, ``HistoryError``,
   ``UnknownOperation``) describe problems with the test run itself.

2. **Client errors** (``ClientError`` and subclasses) are raised by a
   ``Connection`` when a statement does not complete normally.  Their
   class decides how the op is recorded:

   - ``UnavailableError``: not enough live replicas, the statement was
     rejected before doing anything.  Definite failure.
   - ``NoHostAvailableError``: no node could even be contacted.  Definite
     failure, after a short backoff.
   - ``OperationTimeoutError``: the coordinator gave up waiting for
     replicas.  Some replicas may have applied the write, so the outcome
     is indeterminate.
"""

from __future__ import annotations


class CarlyError(Exception):
    """Base class for all carly errors."""


class SetupError(CarlyError):
    """Raised when the system under test or a client cannot be set up.

    Aborts the whole run before any operation is generated.
    """


class RunAborted(CarlyError):
    """Raised when a run is interrupted before its generators were exhausted.

    *history* holds every op recorded up to the interrupt, with the ops
    that were in flight resolved as ``info``.
    """

    def __init__(self, reason: str, history: object = None):
        self.reason = reason
        self.history = history
        super().__init__(f"run aborted: {reason}")


class HistoryError(CarlyError):
    """Raised for malformed histories (unpaired completions, bad records)."""


class UnknownOperation(CarlyError):
    """Raised by a client or conductor asked to perform an ``f`` it does not handle."""

    def __init__(self, handler: object, f: str):
        self.handler = handler
        self.f = f
        super().__init__(f"{type(handler).__name__} cannot handle f={f!r}")


class ClientError(CarlyError):
    """Base class for errors raised by a connection to the system under test."""

    #: True when the error guarantees the statement had no effect.
    definite = True


class AlreadyExistsError(ClientError):
    """A schema object already exists."""


class UnavailableError(ClientError):
    """Not enough live replicas to satisfy the requested consistency level."""


class NoHostAvailableError(ClientError):
    """No node in the contact list could be reached."""


class OperationTimeoutError(ClientError):
    """The coordinator timed out waiting for replicas."""

    definite = False


class WriteTimeoutError(OperationTimeoutError):
    """A write timed out; it may still be applied."""


class ReadTimeoutError(OperationTimeoutError):
    """A read timed out."""
