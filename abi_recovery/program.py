"""
abi_recovery.program
====================

In-memory model of a lifted program, the input of the recovery engine.

A :class:`Program` is a set of basic blocks addressed by stable string
identifiers, plus the list of candidate function entry points (CFEPs).
Each :class:`Block` holds a straight-line list of :class:`Instruction`
objects and ends in a classified :class:`Terminator`.

Instruction set
---------------
Only the register traffic relevant to calling-convention recovery is
modelled:

==============  ==========================================================
``READ r``      ``r`` is used.
``WRITE r``     ``r`` receives a fresh value.
``COPY d s``    ``d`` receives the value of ``s`` (reads ``s``).
``SPILL r k``   ``r`` is stored into stack slot ``k`` (reads ``r``).
``RELOAD r k``  ``r`` is loaded from stack slot ``k``.
``ADJUST_SP n`` the stack pointer moves by ``n`` bytes; ``None`` = unknown.
==============  ==========================================================

The outlining-only operations ``PRE_CALL``, ``CLOBBER``, ``HAVOC`` and
``POST_CALL`` are produced by :mod:`abi_recovery.outlining` and never
appear in a lifted program.

Edge kinds
----------
Terminators are a tagged variant over :class:`EdgeKind`; analyses branch
on the kind instead of dispatching on subclasses.
"""

from __future__ import annotations

import enum
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import MissingCollaboratorData
from .registers import Register, RegisterCatalog

BlockId = str


class Op(enum.Enum):
    READ      = "read"
    WRITE     = "write"
    COPY      = "copy"
    SPILL     = "spill"
    RELOAD    = "reload"
    ADJUST_SP = "adjust-sp"
    # outlining markers
    PRE_CALL  = "pre-call"
    CLOBBER   = "clobber"
    HAVOC     = "havoc"
    POST_CALL = "post-call"


@dataclass(frozen=True, slots=True)
class Instruction:
    """A single register-level operation.

    Attributes
    ----------
    op : Op
        The operation.
    register : Register or None
        Destination (``WRITE``, ``COPY``, ``RELOAD``, ``CLOBBER``) or the
        used register (``READ``, ``SPILL``).
    source : Register or None
        Source of a ``COPY``.
    slot : int or None
        Stack slot of ``SPILL``/``RELOAD``.
    delta : int or None
        Displacement of ``ADJUST_SP``; ``None`` means unknown.
    site : str or None
        Call-site identifier of call markers.
    havoc : tuple of Register
        Registers left with an unknown value by a ``HAVOC``.
    """

    op: Op
    register: Optional[Register] = None
    source: Optional[Register] = None
    slot: Optional[int] = None
    delta: Optional[int] = None
    site: Optional[str] = None
    havoc: Tuple[Register, ...] = ()

    def reads(self) -> FrozenSet[Register]:
        if self.op in (Op.READ, Op.SPILL):
            return frozenset((self.register,))
        if self.op is Op.COPY:
            return frozenset((self.source,))
        return frozenset()

    def writes(self) -> FrozenSet[Register]:
        if self.op in (Op.WRITE, Op.COPY, Op.RELOAD, Op.CLOBBER):
            return frozenset((self.register,))
        if self.op is Op.HAVOC:
            return frozenset(self.havoc)
        return frozenset()

    @property
    def is_call_marker(self) -> bool:
        return self.op in (Op.PRE_CALL, Op.CLOBBER, Op.HAVOC, Op.POST_CALL)

    def __str__(self) -> str:
        parts = [self.op.value]
        if self.register is not None:
            parts.append(self.register.name)
        if self.source is not None:
            parts.append(self.source.name)
        if self.slot is not None:
            parts.append(str(self.slot))
        if self.op is Op.ADJUST_SP:
            parts.append("?" if self.delta is None else str(self.delta))
        if self.site is not None:
            parts.append(self.site)
        if self.havoc:
            parts.append("{" + " ".join(r.name for r in self.havoc) + "}")
        return " ".join(parts)


# Convenience constructors --------------------------------------------------

def read(reg: Register) -> Instruction:
    return Instruction(Op.READ, register=reg)


def write(reg: Register) -> Instruction:
    return Instruction(Op.WRITE, register=reg)


def copy(dst: Register, src: Register) -> Instruction:
    return Instruction(Op.COPY, register=dst, source=src)


def spill(reg: Register, slot: int) -> Instruction:
    return Instruction(Op.SPILL, register=reg, slot=slot)


def reload(reg: Register, slot: int) -> Instruction:
    return Instruction(Op.RELOAD, register=reg, slot=slot)


def adjust_sp(delta: Optional[int]) -> Instruction:
    return Instruction(Op.ADJUST_SP, delta=delta)


# ---------------------------------------------------------------------------
# Edge kinds and terminators
# ---------------------------------------------------------------------------

class EdgeKind(enum.Enum):
    """Classification of the control transfer ending a block."""

    DIRECT_BRANCH = "DirectBranch"
    DIRECT_CALL   = "DirectCall"
    INDIRECT_CALL = "IndirectCall"
    TAIL_CALL     = "TailCall"
    RETURN        = "Return"
    BROKEN_RETURN = "BrokenReturn"
    LONGJMP       = "LongJmp"
    KILLER        = "Killer"
    UNREACHABLE   = "Unreachable"
    FAKE_CALL     = "FakeCall"
    FAKE_RETURN   = "FakeReturn"

    @property
    def is_call(self) -> bool:
        return self in _CALL_KINDS

    @property
    def is_exit(self) -> bool:
        """Does this kind leave the function (no intraprocedural successor)?"""
        return self in _EXIT_KINDS

    @property
    def is_dead_end(self) -> bool:
        """Control never comes back to any caller along this edge."""
        return self in (EdgeKind.LONGJMP, EdgeKind.KILLER, EdgeKind.UNREACHABLE)

    def __str__(self) -> str:
        return self.value


_CALL_KINDS = frozenset({
    EdgeKind.DIRECT_CALL, EdgeKind.INDIRECT_CALL,
    EdgeKind.TAIL_CALL, EdgeKind.FAKE_CALL,
})

_EXIT_KINDS = frozenset({
    EdgeKind.TAIL_CALL, EdgeKind.RETURN, EdgeKind.BROKEN_RETURN,
    EdgeKind.LONGJMP, EdgeKind.KILLER, EdgeKind.UNREACHABLE,
    EdgeKind.FAKE_RETURN,
})


@dataclass(frozen=True, slots=True)
class Terminator:
    """How control leaves a block.

    ``targets`` is used by ``DIRECT_BRANCH``; ``callee`` names the called
    entry point of a call (for ``INDIRECT_CALL``/``TAIL_CALL`` it is the
    resolved target, if any); ``return_to`` is the block control resumes
    at after a non-tail call.
    """

    kind: EdgeKind
    targets: Tuple[BlockId, ...] = ()
    callee: Optional[BlockId] = None
    return_to: Optional[BlockId] = None

    def successors(self) -> Tuple[BlockId, ...]:
        """Intraprocedural successors, ignoring the callee itself."""
        if self.kind is EdgeKind.DIRECT_BRANCH:
            return self.targets
        if self.return_to is not None:
            return (self.return_to,)
        return ()


@dataclass
class Block:
    id: BlockId
    instructions: List[Instruction] = field(default_factory=list)
    terminator: Terminator = field(
        default_factory=lambda: Terminator(EdgeKind.UNREACHABLE)
    )

    def __repr__(self) -> str:
        return (
            f"Block({self.id!r}, instructions={len(self.instructions)}, "
            f"terminator={self.terminator.kind.value})"
        )


class Program:
    """A lifted program: register catalog, blocks and entry points."""

    def __init__(self, catalog: RegisterCatalog) -> None:
        self.catalog = catalog
        self.blocks: "OrderedDict[BlockId, Block]" = OrderedDict()
        self.entry_points: List[BlockId] = []

    def add_block(self, block: Block) -> Block:
        if block.id in self.blocks:
            raise MissingCollaboratorData(f"block {block.id!r} defined twice")
        self.blocks[block.id] = block
        return block

    def add_entry_point(self, block_id: BlockId) -> None:
        if block_id not in self.entry_points:
            self.entry_points.append(block_id)

    def block(self, block_id: BlockId) -> Block:
        try:
            return self.blocks[block_id]
        except KeyError:
            raise MissingCollaboratorData(
                f"block {block_id!r} is referenced but not defined"
            ) from None

    def is_entry_point(self, block_id: Optional[BlockId]) -> bool:
        return block_id is not None and block_id in self.entry_points

    def validate(self) -> None:
        """Check that every referenced block exists."""
        for entry in self.entry_points:
            self.block(entry)
        for blk in self.blocks.values():
            for succ in blk.terminator.successors():
                self.block(succ)

    def reachable_blocks(self, entry: BlockId) -> List[BlockId]:
        """Blocks of the function starting at *entry*, in discovery order.

        Calls are not followed into their callees; control resumes at the
        return-to block.
        """
        seen: Dict[BlockId, None] = {}
        stack: List[BlockId] = [entry]
        while stack:
            bid = stack.pop()
            if bid in seen:
                continue
            seen[bid] = None
            for succ in reversed(self.block(bid).terminator.successors()):
                if succ not in seen:
                    stack.append(succ)
        return list(seen)

    def __repr__(self) -> str:
        return (
            f"Program(catalog={self.catalog.name!r}, blocks={len(self.blocks)}, "
            f"entry_points={len(self.entry_points)})"
        )


def make_block(
    block_id: BlockId,
    instructions: Iterable[Instruction],
    terminator: Terminator,
) -> Block:
    return Block(block_id, list(instructions), terminator)
