"""
Checkers: decide whether a completed history is valid.

Every checker implements::

    checker.check(test, model, history, opts) -> {"valid": ..., ...}

``valid`` is ``True``, ``False`` or ``"unknown"`` (the checker could not
decide, e.g. its search budget ran out).  The rest of the dict is the
checker's own analysis.  :class:`Compose` runs several checkers over the
same frozen history and combines their verdicts.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from carly import setups
from carly.common import Op, OpType
from carly.history import History, format_history, is_client_process, pair_ops
from carly.model import Inconsistent, Model

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


def merge_valid(values: Iterable[Any]) -> bool | str:
    """Combine verdicts: any False wins, then any unknown, else True."""
    result: bool | str = True
    for value in values:
        if value is False:
            return False
        if value is not True:
            result = UNKNOWN
    return result


class Checker:
    """Base class for checkers."""

    def check(self, test: Any, model: Model | None, history: History, opts: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


def check_safe(
    checker: Checker,
    test: Any,
    model: Model | None,
    history: History,
    opts: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Run *checker*, turning a crash into an ``unknown`` verdict."""
    try:
        result = checker.check(test, model, history, opts or {})
    except Exception as e:
        logger.warning("Checker %r crashed", checker, exc_info=True)
        return {"valid": UNKNOWN, "error": f"{type(e).__name__}: {e}"}
    if "valid" not in result:
        return {"valid": UNKNOWN, "error": "checker returned no verdict", **result}
    return result


class Compose(Checker):
    """Runs named checkers and ANDs their verdicts.

    Each sub-checker's result appears under its name.
    """

    def __init__(self, checkers: Mapping[str, Checker]):
        self.checkers = dict(checkers)

    def check(self, test, model, history, opts):
        results = {name: check_safe(c, test, model, history, opts) for name, c in self.checkers.items()}
        return {"valid": merge_valid(r["valid"] for r in results.values()), **results}

    def __repr__(self):
        return f"Compose({list(self.checkers)!r})"


def compose(checkers: Mapping[str, Checker]) -> Compose:
    return Compose(checkers)


class UnbridledOptimism(Checker):
    """Everything is awesome."""

    def check(self, test, model, history, opts):
        return {"valid": True}


class WellFormed(Checker):
    """Checks that every process strictly alternates invoke and completion."""

    def check(self, test, model, history, opts):
        problems = history.validate()
        return {"valid": not problems, "problems": problems[:20], "problem_count": len(problems)}


class Stats(Checker):
    """Counts outcomes per operation kind.

    Valid when every kind of client operation succeeded at least once.
    """

    def check(self, test, model, history, opts):
        by_f: dict[str, dict[str, int]] = {}
        for op in history:
            if op.is_invoke or not is_client_process(op.process):
                continue
            counts = by_f.setdefault(op.f, {"count": 0, "ok": 0, "fail": 0, "info": 0})
            counts["count"] += 1
            counts[op.type.value] += 1
        totals = {"count": 0, "ok": 0, "fail": 0, "info": 0}
        for counts in by_f.values():
            for key in totals:
                totals[key] += counts[key]
        valid = all(counts["ok"] > 0 for counts in by_f.values())
        return {"valid": valid, **totals, "by_f": by_f}


# ---------------------------------------------------------------------------
# Linearizability
# ---------------------------------------------------------------------------


class Linearizable(Checker):
    """Searches for a linearization of the client ops that the model accepts.

    The search walks the history in order, keeping the set of reachable
    *configurations* (model state, ops invoked but not yet linearized):

    - On an invocation the op joins every configuration's pending set.
    - On an ``ok`` completion, every configuration must linearize that op
      before moving on; the search tries linearizing any pending ops first.
      If no configuration can, the history is not linearizable and this
      completion is the first divergence.
    - ``fail`` ops are dropped up front: they did not happen.
    - ``info`` ops (and ops that never completed) stay pending for the rest
      of the history, so they may take effect at any later point, or never.

    The search is exponential in the worst case; once more than
    *max_configurations* configurations have been visited for one
    completion the verdict is ``unknown``.
    """

    def __init__(self, model: Model | None = None, *, max_configurations: int | None = None):
        self.model = model
        self.max_configurations = max_configurations

    def check(self, test, model, history, opts):
        model = self.model if self.model is not None else model
        if model is None:
            raise ValueError("Linearizable needs a model")
        budget = self.max_configurations or setups.default("max_configurations")

        pairs = [(inv, comp) for inv, comp in pair_ops(history) if is_client_process(inv.process)]
        effective: dict[int, Op] = {}
        events: list[tuple[str, int]] = []
        for inv, comp in pairs:
            if comp is not None and comp.is_fail:
                continue
            if comp is not None and comp.is_ok:
                effective[inv.index] = comp
                events.append(("invoke", inv.index))
                events.append(("ok", comp.index))
            else:
                effective[inv.index] = inv
                events.append(("invoke", inv.index))
        # Completions must be processed in history order.
        completion_owner = {comp.index: inv.index for inv, comp in pairs if comp is not None and comp.is_ok}
        events.sort(key=lambda e: e[1])

        configs: set[tuple[Model, frozenset[int]]] = {(model, frozenset())}
        max_seen = 1
        for kind, index in events:
            if kind == "invoke":
                configs = {(m, pending | {index}) for m, pending in configs}
                continue
            op_id = completion_owner[index]
            configs, failures, visited = _linearize(configs, op_id, effective, budget)
            max_seen = max(max_seen, visited)
            if configs is None:
                return {
                    "valid": UNKNOWN,
                    "error": f"gave up after {visited} configurations at op {index}",
                    "configurations": visited,
                }
            if not configs:
                op = history[index]
                return {
                    "valid": False,
                    "op": op.to_dict(),
                    "reasons": sorted(set(failures))[:10],
                    "previous_ok": _previous_ok(history, index),
                    "configurations": max_seen,
                }
        return {"valid": True, "configurations": max_seen, "final_states": len(configs)}


def _linearize(
    configs: set[tuple[Model, frozenset[int]]],
    op_id: int,
    effective: Mapping[int, Op],
    budget: int,
) -> tuple[set[tuple[Model, frozenset[int]]] | None, list[str], int]:
    """Expand *configs* until *op_id* is linearized in each surviving one."""
    done: set[tuple[Model, frozenset[int]]] = set()
    failures: list[str] = []
    seen = set(configs)
    frontier = list(configs)
    while frontier:
        m, pending = frontier.pop()
        if op_id not in pending:
            done.add((m, pending))
            continue
        for candidate in pending:
            nxt = m.step(effective[candidate])
            if isinstance(nxt, Inconsistent):
                if candidate == op_id:
                    failures.append(nxt.msg)
                continue
            config = (nxt, pending - {candidate})
            if config not in seen:
                seen.add(config)
                frontier.append(config)
        if len(seen) > budget:
            return None, failures, len(seen)
    return done, failures, len(seen)


def _previous_ok(history: History, index: int, count: int = 5) -> str:
    before = [op for op in history.snapshot()[:index] if op.is_ok and is_client_process(op.process)]
    return format_history(before, limit=count)


# ---------------------------------------------------------------------------
# Sets
# ---------------------------------------------------------------------------


class SetChecker(Checker):
    """Checks adds against the final read of a set.

    - Every acknowledged (``ok``) add must appear in the final read.
    - The final read may contain only values whose add was acknowledged or
      indeterminate; a value whose add *failed* must never appear.

    Indeterminate adds that do appear are reported as *recovered*.
    """

    def __init__(self, add: str = "add", read: str = "read"):
        self.add_f = add
        self.read_f = read

    def check(self, test, model, history, opts):
        attempts: set[Any] = set()
        acknowledged: set[Any] = set()
        failed: set[Any] = set()
        maybe: set[Any] = set()
        final_read: set[Any] | None = None

        for inv, comp in pair_ops(history):
            if not is_client_process(inv.process):
                continue
            if inv.f == self.add_f:
                attempts.add(inv.value)
                outcome = comp.type if comp is not None else OpType.INFO
                if outcome is OpType.OK:
                    acknowledged.add(inv.value)
                elif outcome is OpType.FAIL:
                    failed.add(inv.value)
                else:
                    maybe.add(inv.value)
            elif inv.f == self.read_f and comp is not None and comp.is_ok:
                final_read = set(comp.value or ())

        if final_read is None:
            return {"valid": UNKNOWN, "error": "Set was never read"}

        # An add can be retried with the same value; any success counts.
        failed -= acknowledged | maybe
        maybe -= acknowledged
        lost = acknowledged - final_read
        unexpected = final_read - (acknowledged | maybe)
        return {
            "valid": not lost and not unexpected,
            "attempt_count": len(attempts),
            "acknowledged_count": len(acknowledged),
            "ok_count": len(final_read & acknowledged),
            "lost_count": len(lost),
            "lost": sorted(lost, key=repr),
            "unexpected_count": len(unexpected),
            "unexpected": sorted(unexpected, key=repr),
            "failed_but_present": sorted(unexpected & failed, key=repr),
            "recovered_count": len(final_read & maybe),
            "recovered": sorted(final_read & maybe, key=repr),
        }
