"""Shared data structures for carly."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any

Process = int | str


class OpType(str, Enum):
    """Whether an op is an invocation or one of the three outcomes.

    ``FAIL`` means the operation definitely did not take effect.  ``INFO``
    means the outcome is unknown: the operation may or may not have
    happened, and checkers must allow for both.
    """

    INVOKE = "invoke"
    OK = "ok"
    FAIL = "fail"
    INFO = "info"

    def __str__(self) -> str:
        return self.value


COMPLETIONS = frozenset({OpType.OK, OpType.FAIL, OpType.INFO})

# Marks "leave the invoked value in place" for completion helpers.
_KEEP: Any = object()


@dataclass(slots=True)
class Op:
    """A single event in a history.

    Attributes:
        process: The logical process that issued the op.  Client processes
            are integers; conductors use their name.
        type: Invocation or completion type.
        f: The operation kind, e.g. ``"add"``, ``"read"``, ``"start"``.
        value: Operation payload.  For completions, the observed result.
        time: Nanoseconds since the start of the run.
        error: Short description of why an op failed or is indeterminate.
        index: Position in the history, assigned on append (-1 before).
    """

    process: Process
    type: OpType
    f: str
    value: Any = None
    time: int = 0
    error: str | None = None
    index: int = -1

    def __repr__(self):
        err = f" error={self.error!r}" if self.error else ""
        return f"Op({self.process!r} {self.type} {self.f} {self.value!r} t={self.time}{err})"

    @property
    def is_invoke(self) -> bool:
        return self.type is OpType.INVOKE

    @property
    def is_ok(self) -> bool:
        return self.type is OpType.OK

    @property
    def is_fail(self) -> bool:
        return self.type is OpType.FAIL

    @property
    def is_info(self) -> bool:
        return self.type is OpType.INFO

    def _complete(self, op_type: OpType, value: Any, error: str | None) -> Op:
        changes: dict[str, Any] = {"type": op_type, "error": error, "index": -1}
        if value is not _KEEP:
            changes["value"] = value
        return dataclasses.replace(self, **changes)

    def ok(self, value: Any = _KEEP) -> Op:
        """Return an ``ok`` completion, optionally replacing the value."""
        return self._complete(OpType.OK, value, None)

    def fail(self, error: str | None = None, *, value: Any = _KEEP) -> Op:
        """Return a ``fail`` completion; the invoked value is kept by default."""
        return self._complete(OpType.FAIL, value, error)

    def info(self, error: str | None = None, *, value: Any = _KEEP) -> Op:
        """Return an ``info`` completion; the invoked value is kept by default."""
        return self._complete(OpType.INFO, value, error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "process": self.process,
            "type": self.type.value,
            "f": self.f,
            "value": self.value,
            "time": self.time,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Op:
        return cls(
            process=data["process"],
            type=OpType(data["type"]),
            f=data["f"],
            value=data.get("value"),
            time=data.get("time", 0),
            error=data.get("error"),
            index=data.get("index", -1),
        )

