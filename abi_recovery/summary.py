"""
abi_recovery.summary
====================

Result records produced by the recovery engine.

``FunctionSummary``
    What callers need to know about an entry point: its
    :class:`FunctionType`, the registers it clobbers, its classified exit
    and call edges and its elected stack-pointer offset.  Summaries are
    frozen so the :class:`~abi_recovery.oracle.Oracle` can hand them out
    without copying.

``CallSiteResult``
    Argument and return-value register maps of one call site.

``ABIResults``
    The register maps of one analysis of an outlined body: function
    arguments, function return values and per-call-site results.

``FunctionResult``
    Final per-entry-point output of the fixpoint driver.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from .program import BlockId, EdgeKind
from .register_state import RegisterState, RegisterStateMap
from .registers import Register, RegisterCatalog


class FunctionType(enum.Enum):
    """Classification of an entry point."""

    INVALID   = "Invalid"
    REGULAR   = "Regular"
    NO_RETURN = "NoReturn"
    FAKE      = "Fake"

    @property
    def rank(self) -> int:
        """Position in the narrowing order ``Regular < NoReturn < Fake``."""
        return _TYPE_RANK[self]

    @property
    def returns(self) -> bool:
        return self is not FunctionType.NO_RETURN

    def __str__(self) -> str:
        return self.value


_TYPE_RANK = {
    FunctionType.INVALID: 0,
    FunctionType.REGULAR: 1,
    FunctionType.NO_RETURN: 2,
    FunctionType.FAKE: 3,
}

CallEdge = Tuple[str, EdgeKind]


@dataclass(frozen=True)
class FunctionSummary:
    """Per-entry-point summary, as stored in the Oracle.

    Attributes
    ----------
    entry : str
        Entry block identifier.
    type : FunctionType
        Regular, NoReturn or Fake.
    clobbered_registers : frozenset[Register]
        Registers whose value on exit cannot be assumed equal to their
        value on entry.
    call_edges : frozenset[tuple[str, EdgeKind]]
        Every call site and exit point of the body with its edge kind.
    elected_stack_offset : int or None
        Net stack-pointer displacement at return points, if consistent.
    """

    entry: str
    type: FunctionType = FunctionType.REGULAR
    clobbered_registers: FrozenSet[Register] = frozenset()
    call_edges: FrozenSet[CallEdge] = frozenset()
    elected_stack_offset: Optional[int] = None

    @classmethod
    def conservative(cls, entry: str, catalog: RegisterCatalog) -> "FunctionSummary":
        """Worst case: a regular function clobbering every ABI register."""
        return cls(
            entry=entry,
            type=FunctionType.REGULAR,
            clobbered_registers=frozenset(catalog.abi_registers),
        )

    def edges_of_kind(self, kind: EdgeKind) -> FrozenSet[str]:
        return frozenset(site for site, k in self.call_edges if k is kind)

    def __repr__(self) -> str:
        fso = "?" if self.elected_stack_offset is None else self.elected_stack_offset
        return (
            f"FunctionSummary({self.entry!r}, {self.type.value}, "
            f"clobbers={sorted(r.name for r in self.clobbered_registers)}, "
            f"fso={fso})"
        )


@dataclass
class CallSiteResult:
    arguments: RegisterStateMap = field(default_factory=dict)
    return_values: RegisterStateMap = field(default_factory=dict)


@dataclass
class ABIResults:
    """Register maps of one outlined body.

    ``exit_offsets`` maps every return or tail-call site to the stack
    offset observed there (``None`` when unknown).
    """

    arguments: RegisterStateMap = field(default_factory=dict)
    return_values: RegisterStateMap = field(default_factory=dict)
    call_sites: Dict[str, CallSiteResult] = field(default_factory=dict)
    exit_offsets: Dict[str, Optional[int]] = field(default_factory=dict)

    @classmethod
    def conservative(cls, registers: Iterable[Register]) -> "ABIResults":
        regs = list(registers)
        return cls(
            arguments={r: RegisterState.MAYBE for r in regs},
            return_values={r: RegisterState.MAYBE for r in regs},
        )


@dataclass
class FunctionResult:
    """What the driver reports for one entry point."""

    summary: FunctionSummary
    abi: ABIResults
    converged: bool = True

    @property
    def entry(self) -> BlockId:
        return self.summary.entry
