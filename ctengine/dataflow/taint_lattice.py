"""
Taint Lattice - Formal data structures for secret-taint analysis

Provides the three-point lattice Public < Unknown < Secret with join
operations for fixed-point computation, taint values that carry their
provenance chain, and the flow-sensitive memory state.
"""

from __future__ import annotations

from enum import IntEnum
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from ..ir import Sensitivity


class TaintLabel(IntEnum):
    """Taint levels in the lattice (ordered for comparison)"""
    PUBLIC = 1    # Independent of secret data
    UNKNOWN = 2   # May depend on secret data (aliasing, unannotated inputs)
    SECRET = 3    # Derived from secret data

    @classmethod
    def from_sensitivity(cls, sensitivity: Sensitivity) -> 'TaintLabel':
        return {
            Sensitivity.PUBLIC: cls.PUBLIC,
            Sensitivity.UNKNOWN: cls.UNKNOWN,
            Sensitivity.SECRET: cls.SECRET,
        }[sensitivity]

    @property
    def is_tainted(self) -> bool:
        """Secret or Unknown"""
        return self >= TaintLabel.UNKNOWN

    def __str__(self):
        return self.name.capitalize()


@dataclass(frozen=True)
class TaintValue:
    """
    Taint of a single value or memory location.

    The provenance is the chain of value ids from a Secret source to this
    value. It is empty when the value has no demonstrable Secret origin,
    which is always the case for Public values and for Unknown values that
    only come from unannotated inputs.
    """
    label: TaintLabel
    provenance: Tuple[str, ...] = ()

    @classmethod
    def public(cls) -> 'TaintValue':
        return cls(TaintLabel.PUBLIC)

    @classmethod
    def unknown(cls) -> 'TaintValue':
        return cls(TaintLabel.UNKNOWN)

    @classmethod
    def secret_source(cls, value_id: str) -> 'TaintValue':
        """A Secret source: its chain starts (and ends) with itself"""
        return cls(TaintLabel.SECRET, (value_id,))

    @property
    def is_secret(self) -> bool:
        return self.label == TaintLabel.SECRET

    @property
    def is_tainted(self) -> bool:
        return self.label.is_tainted

    @property
    def has_secret_origin(self) -> bool:
        """There is a demonstrable chain back to a Secret source"""
        return bool(self.provenance)

    def extended(self, value_id: str) -> 'TaintValue':
        """This taint flowing into value_id"""
        if not self.provenance or self.provenance[-1] == value_id:
            return self
        return TaintValue(self.label, self.provenance + (value_id,))

    def with_label(self, label: TaintLabel) -> 'TaintValue':
        return TaintValue(label, self.provenance)

    def __str__(self):
        if not self.provenance:
            return str(self.label)
        return f"{self.label}({' -> '.join(self.provenance)})"


class TaintLattice:
    r"""
    Lattice operations for taint analysis.

    Lattice structure:
         SECRET
           |
        UNKNOWN
           |
         PUBLIC

    PUBLIC is the bottom element and the starting point of every fixpoint.
    """

    @staticmethod
    def join_all(values: Iterable[TaintValue]) -> TaintValue:
        """
        Least upper bound of several taint values.

        The label is the maximum. The provenance comes from the first input
        with the maximal label and a chain, otherwise from the first input
        with any chain, so a Secret origin is never lost by a join.
        """
        values = list(values)
        if not values:
            return TaintValue.public()
        label = TaintLabel(max(v.label for v in values))
        chain: Tuple[str, ...] = ()
        for v in values:
            if v.label == label and v.provenance:
                chain = v.provenance
                break
        else:
            for v in values:
                if v.provenance:
                    chain = v.provenance
                    break
        return TaintValue(label, chain)

    @staticmethod
    def join(a: TaintValue, b: TaintValue) -> TaintValue:
        """Least upper bound of two values (a's chain wins ties)"""
        return TaintLattice.join_all((a, b))

    @staticmethod
    def is_improvement(old: TaintValue, new: TaintValue) -> bool:
        """
        Should new replace old during fixpoint iteration?

        Only a rising label, or a first chain at the same label, counts as
        progress. Both are bounded, which guarantees termination.
        """
        if new.label > old.label:
            return True
        return new.label == old.label and not old.provenance and bool(new.provenance)

    @staticmethod
    def is_less_than_or_equal(a: TaintValue, b: TaintValue) -> bool:
        return a.label <= b.label


class MemoryState:
    """
    Abstract memory state at a program point: location id -> stored taint.

    Locations never written on any path are absent and read as Public.
    Instances are treated as immutable; updates return new states.
    """

    __slots__ = ('_contents',)

    def __init__(self, contents: Optional[Dict[str, TaintValue]] = None):
        self._contents: Dict[str, TaintValue] = dict(contents or {})

    def get(self, location_id: str) -> TaintValue:
        return self._contents.get(location_id, TaintValue.public())

    def items(self):
        return self._contents.items()

    def store(self, location_id: str, value: TaintValue) -> 'MemoryState':
        """Return new state where location_id holds value (strong update)"""
        contents = dict(self._contents)
        contents[location_id] = value
        return MemoryState(contents)

    def clear(self, location_id: str) -> 'MemoryState':
        """Return new state where location_id was scrubbed"""
        if location_id not in self._contents:
            return self
        contents = dict(self._contents)
        del contents[location_id]
        return MemoryState(contents)

    def join(self, other: 'MemoryState') -> 'MemoryState':
        """Join two states at a control-flow merge"""
        contents = dict(self._contents)
        for loc, value in other._contents.items():
            contents[loc] = TaintLattice.join(contents[loc], value) if loc in contents else value
        return MemoryState(contents)

    def improves_on(self, old: 'MemoryState') -> bool:
        """True if this state carries information old does not"""
        for loc, value in self._contents.items():
            if TaintLattice.is_improvement(old.get(loc), value):
                return True
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemoryState):
            return False
        return self._contents == other._contents

    def __hash__(self):
        return hash(frozenset(self._contents.items()))

    def __str__(self):
        tainted = {k: v for k, v in self._contents.items() if v.is_tainted}
        if not tainted:
            return "Memory(clean)"
        entries = [f"{k}={v}" for k, v in sorted(tainted.items())]
        return f"Memory({', '.join(entries)})"
