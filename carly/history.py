"""History recording, pairing, validation and serialization.

A history is the ordered record of every invocation and completion that
happened during a run.  Workers append to it concurrently; once the run is
over it is frozen and handed to the checkers.

The pipeline:
1. **Record** an invoke Op when a worker dispatches, and a completion Op
   when the client or conductor returns.
2. **Freeze** the history when the run ends.
3. **Pair** invocations with their completions for analysis.
4. **Serialize** to JSON lines so a run can be re-checked later.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

from carly.common import COMPLETIONS, Op, OpType, Process
from carly.errors import HistoryError

# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


class History:
    """Append-only, thread-safe sequence of Ops.

    Appends from many worker threads are serialized by a lock, so each
    process's own sub-sequence keeps the order in which its worker
    appended.  Indices are assigned on append.
    """

    __slots__ = ("_ops", "_lock", "_frozen")

    def __init__(self, ops: Iterable[Op] = ()) -> None:
        self._ops: list[Op] = []
        self._lock = threading.Lock()
        self._frozen = False
        for op in ops:
            self.append(op)

    def append(self, op: Op) -> Op:
        """Record *op*, assigning its index.  Returns the recorded op."""
        with self._lock:
            if self._frozen:
                raise HistoryError("cannot append to a frozen history")
            op.index = len(self._ops)
            self._ops.append(op)
        return op

    def freeze(self) -> History:
        """Make the history immutable and return it."""
        with self._lock:
            self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[Op]:
        return iter(self.snapshot())

    def __getitem__(self, index: int) -> Op:
        return self._ops[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, History):
            return NotImplemented
        return self.snapshot() == other.snapshot()

    def __repr__(self):
        return f"History({len(self._ops)} ops{', frozen' if self._frozen else ''})"

    def snapshot(self) -> list[Op]:
        """Return a copy of the ops recorded so far."""
        with self._lock:
            return list(self._ops)

    # -- views ---------------------------------------------------------------

    def filter(self, pred: Callable[[Op], bool]) -> list[Op]:
        return [op for op in self.snapshot() if pred(op)]

    def processes(self) -> list[Process]:
        seen: dict[Process, None] = {}
        for op in self.snapshot():
            seen.setdefault(op.process, None)
        return list(seen)

    def by_process(self) -> dict[Process, list[Op]]:
        """Group ops by process, preserving order within each process."""
        result: dict[Process, list[Op]] = {}
        for op in self.snapshot():
            result.setdefault(op.process, []).append(op)
        return result

    def client_ops(self) -> list[Op]:
        """Ops issued by client processes (integers), excluding conductors."""
        return self.filter(lambda op: is_client_process(op.process))

    def pairs(self) -> list[tuple[Op, Op | None]]:
        """Pair each invocation with its completion (None if it never completed).

        Pairs are returned in invocation order.
        """
        return pair_ops(self.snapshot())

    def completions(self, f: str | None = None, op_type: OpType | None = None) -> list[Op]:
        return [
            op
            for op in self.snapshot()
            if op.type in COMPLETIONS and (f is None or op.f == f) and (op_type is None or op.type is op_type)
        ]

    # -- serialization -------------------------------------------------------

    def dumps(self) -> str:
        """Serialize to JSON lines, one record per op."""
        return "".join(json.dumps(_encode_op(op), sort_keys=True) + "\n" for op in self.snapshot())

    @classmethod
    def loads(cls, text: str) -> History:
        ops = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                ops.append(_decode_op(json.loads(line)))
            except (ValueError, KeyError) as e:
                raise HistoryError(f"line {lineno}: malformed op record: {e}") from e
        history = cls(ops)
        return history.freeze()

    def write(self, path: str | Path) -> Path:
        path = Path(path)
        path.write_text(self.dumps(), encoding="utf-8")
        return path

    @classmethod
    def read(cls, path: str | Path) -> History:
        return cls.loads(Path(path).read_text(encoding="utf-8"))

    # -- validation ----------------------------------------------------------

    def validate(self) -> list[str]:
        """Return a list of well-formedness problems (empty when well-formed).

        Within each process the ops must strictly alternate invoke and
        completion, a completion must match its invocation's ``f``, and time
        must not go backwards.
        """
        problems: list[str] = []
        for process, ops in self.by_process().items():
            pending: Op | None = None
            last_time = -1
            for op in ops:
                if op.time < last_time:
                    problems.append(f"process {process!r}: op {op.index} is earlier than its predecessor")
                last_time = op.time
                if op.is_invoke:
                    if pending is not None:
                        problems.append(
                            f"process {process!r}: invoke {op.index} while op {pending.index} is still pending"
                        )
                    pending = op
                else:
                    if pending is None:
                        problems.append(f"process {process!r}: completion {op.index} has no invocation")
                    elif pending.f != op.f:
                        problems.append(
                            f"process {process!r}: completion {op.index} f={op.f!r} "
                            f"does not match invocation f={pending.f!r}"
                        )
                    pending = None
        return problems


def is_client_process(process: Process) -> bool:
    return isinstance(process, int) and not isinstance(process, bool)


def pair_ops(ops: Iterable[Op]) -> list[tuple[Op, Op | None]]:
    """Pair invocations with completions, in invocation order."""
    result: list[tuple[Op, Op | None]] = []
    open_by_process: dict[Process, int] = {}
    for op in ops:
        if op.is_invoke:
            if op.process in open_by_process:
                raise HistoryError(f"process {op.process!r} invoked op {op.index} while another op was pending")
            open_by_process[op.process] = len(result)
            result.append((op, None))
        else:
            slot = open_by_process.pop(op.process, None)
            if slot is None:
                raise HistoryError(f"completion {op.index} for process {op.process!r} has no invocation")
            result[slot] = (result[slot][0], op)
    return result


# ---------------------------------------------------------------------------
# JSON encoding
# ---------------------------------------------------------------------------

# Sets, tuples and dicts that JSON objects cannot express are wrapped in a
# single-key object so that decoding restores the original type.
_SET_TAG = "#set"
_TUPLE_TAG = "#tuple"
_DICT_TAG = "#dict"
_TAGS = frozenset({_SET_TAG, _TUPLE_TAG, _DICT_TAG})


def _encode_value(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return {_SET_TAG: sorted((_encode_value(v) for v in value), key=_sort_key)}
    if isinstance(value, tuple):
        return {_TUPLE_TAG: [_encode_value(v) for v in value]}
    if isinstance(value, list):
        return [_encode_value(v) for v in value]
    if isinstance(value, dict):
        if all(isinstance(k, str) and k not in _TAGS for k in value):
            return {k: _encode_value(v) for k, v in value.items()}
        # Non-string keys, or a key that would read back as a tag.
        return {_DICT_TAG: [[_encode_value(k), _encode_value(v)] for k, v in value.items()]}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    if isinstance(value, dict):
        if len(value) == 1 and _SET_TAG in value:
            return {_hashable(_decode_value(v)) for v in value[_SET_TAG]}
        if len(value) == 1 and _TUPLE_TAG in value:
            return tuple(_decode_value(v) for v in value[_TUPLE_TAG])
        if len(value) == 1 and _DICT_TAG in value:
            return {_hashable(_decode_value(k)): _decode_value(v) for k, v in value[_DICT_TAG]}
        return {k: _decode_value(v) for k, v in value.items()}
    return value


def _hashable(value: Any) -> Any:
    """Restore the frozen form of a decoded set element or dict key."""
    if isinstance(value, set):
        return frozenset(value)
    if isinstance(value, tuple):
        return tuple(_hashable(v) for v in value)
    return value


def _sort_key(value: Any) -> tuple[str, str]:
    return (type(value).__name__, repr(value))


def _encode_op(op: Op) -> dict[str, Any]:
    record = op.to_dict()
    record["value"] = _encode_value(op.value)
    return record


def _decode_op(record: dict[str, Any]) -> Op:
    record = dict(record)
    record["value"] = _decode_value(record.get("value"))
    return Op.from_dict(record)


def to_jsonable(value: Any) -> Any:
    """Convert sets/tuples in analysis results into JSON-friendly lists."""
    if isinstance(value, (set, frozenset)):
        return sorted((to_jsonable(v) for v in value), key=_sort_key)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, Op):
        return to_jsonable(value.to_dict())
    if isinstance(value, OpType):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_history(ops: Iterable[Op], *, limit: int | None = None) -> str:
    """Render ops as an aligned, human-readable table."""
    ops = list(ops)
    if limit is not None:
        ops = ops[-limit:]
    if not ops:
        return "(empty history)\n"
    width = max(len(repr(op.process)) for op in ops)
    parts = []
    for op in ops:
        seconds = op.time / 1e9
        err = f"  ; {op.error}" if op.error else ""
        parts.append(f"{seconds:10.3f}  {op.process!r:>{width}}  {op.type.value:<6s} {op.f:<12s} {op.value!r}{err}")
    return "\n".join(parts) + "\n"
