"""Abstract models of legal system behaviour.

A model is an immutable state machine.  ``model.step(op)`` returns the
successor state if *op* is legal in the current state, or an
:class:`Inconsistent` describing why it is not.  Models must be hashable
so that checkers can deduplicate states while searching.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from carly.common import Op


@dataclass(frozen=True)
class Inconsistent:
    """The result of an illegal transition."""

    msg: str

    def __bool__(self):
        return False


def is_inconsistent(model: Any) -> bool:
    return isinstance(model, Inconsistent)


class Model:
    """Base class for models."""

    def step(self, op: Op) -> Model | Inconsistent:
        raise NotImplementedError


@dataclass(frozen=True)
class NoopModel(Model):
    """Accepts every operation."""

    def step(self, op):
        return self


@dataclass(frozen=True)
class SetModel(Model):
    """A grow-only set supporting ``add`` and ``read``.

    A read is legal when it observed exactly the current elements.
    """

    items: frozenset = frozenset()

    def step(self, op):
        if op.f == "add":
            return SetModel(self.items | {op.value})
        if op.f == "read":
            observed = frozenset(op.value or ())
            if observed == self.items:
                return self
            return Inconsistent(f"can't read {sorted(observed)!r} from set {sorted(self.items)!r}")
        return Inconsistent(f"unknown op {op.f!r} for a set")


@dataclass(frozen=True)
class RegisterModel(Model):
    """A read/write register.  A read of ``None`` is legal in any state."""

    value: Any = None

    def step(self, op):
        if op.f == "write":
            return RegisterModel(op.value)
        if op.f == "read":
            if op.value is None or op.value == self.value:
                return self
            return Inconsistent(f"can't read {op.value!r} from register {self.value!r}")
        return Inconsistent(f"unknown op {op.f!r} for a register")


@dataclass(frozen=True)
class CASRegisterModel(Model):
    """A register with compare-and-set; ``cas`` values are ``[expected, new]``."""

    value: Any = None

    def step(self, op):
        if op.f == "write":
            return CASRegisterModel(op.value)
        if op.f == "cas":
            expected, new = op.value
            if expected == self.value:
                return CASRegisterModel(new)
            return Inconsistent(f"can't CAS {self.value!r} from {expected!r} to {new!r}")
        if op.f == "read":
            if op.value is None or op.value == self.value:
                return self
            return Inconsistent(f"can't read {op.value!r} from register {self.value!r}")
        return Inconsistent(f"unknown op {op.f!r} for a cas-register")


MODELS = {
    "noop": NoopModel,
    "set": SetModel,
    "register": RegisterModel,
    "cas-register": CASRegisterModel,
}
