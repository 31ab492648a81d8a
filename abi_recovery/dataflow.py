"""
abi_recovery.dataflow
=====================

First-access dataflow engine over outlined bodies.

Every per-node analysis asks, for each register, *what happens first*
along the paths leaving (or reaching) some program point: is the register
read, written, overwritten by a callee, does the path hit a call boundary,
a return, the function entry, ...?

The engine answers that question for a whole register set at once by
chaotic iteration on a powerset lattice:

* the fact at a node boundary is the set of registers still **open**,
  i.e. for which some path from the start point reaches the boundary
  without a deciding event;
* the confluence operator is set union (a *may* problem);
* the transfer function walks the node's instructions (in reverse for
  backward analyses) and closes every open register an instruction
  decides, recording the deciding :class:`Access` in the outcome table.

Facts only grow, so outcomes recorded during early iterations are a
subset of those of the fixpoint, and the final table holds, per register,
the set of first events over all paths.

Public API
----------
    Direction               - FORWARD / BACKWARD
    Access                  - the first-event alphabet
    FirstAccessAnalysis     - abstract engine
    ForwardFirstAccess      - reads and writes after a point; stops at calls
    BackwardFirstDefinition - definitions before a point; crosses known calls
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from .outlining import OutlinedFunction, OutlinedNode
from .program import EdgeKind, Instruction, Op
from .registers import Register

logger = logging.getLogger(__name__)

RegisterSet = FrozenSet[Register]


class Direction(enum.Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


class Access(enum.Enum):
    """First event observed for a register along a path."""

    READ         = "read"
    WRITE        = "write"
    CALLEE_WRITE = "callee-write"   # clobbered by a known callee
    BOUNDARY     = "boundary"       # stopped at a call boundary
    RETURN       = "return"         # reached a normal return
    ESCAPE       = "escape"         # tail call, broken or fake return
    DEAD_END     = "dead-end"       # killer, longjmp, unreachable
    ENTRY        = "entry"          # reached the function entry (backward)
    TRUNCATED    = "truncated"      # outlined body was cut here


Outcomes = Dict[Register, FrozenSet[Access]]

_EXIT_ACCESS = {
    EdgeKind.RETURN: Access.RETURN,
    EdgeKind.TAIL_CALL: Access.ESCAPE,
    EdgeKind.BROKEN_RETURN: Access.ESCAPE,
    EdgeKind.FAKE_RETURN: Access.ESCAPE,
    EdgeKind.LONGJMP: Access.DEAD_END,
    EdgeKind.KILLER: Access.DEAD_END,
    EdgeKind.UNREACHABLE: Access.DEAD_END,
}


class FirstAccessAnalysis(ABC):
    """Abstract first-access analysis over one :class:`OutlinedFunction`.

    Subclasses implement:
      - ``direction``  - FORWARD or BACKWARD
      - ``events(instr, open_regs)`` - the registers *instr* decides

    The base class provides :meth:`run`, which takes seed facts and
    returns the per-register outcome sets.
    """

    MAX_ITERATIONS: int = 100_000

    def __init__(self, body: OutlinedFunction, max_iterations: Optional[int] = None) -> None:
        self.body = body
        self.max_iterations = max_iterations or self.MAX_ITERATIONS
        self.iterations = 0
        self.converged = False

    # ── Subclass contract ────────────────────────────────────────────

    @property
    @abstractmethod
    def direction(self) -> Direction:
        ...

    @abstractmethod
    def events(
        self, instr: Instruction, open_regs: RegisterSet
    ) -> Iterable[Tuple[Register, Access]]:
        """Yield ``(register, access)`` for every open register *instr* decides."""
        ...

    # ── Engine ───────────────────────────────────────────────────────

    def transfer(
        self,
        node: OutlinedNode,
        open_regs: RegisterSet,
        outcomes: Dict[Register, Set[Access]],
    ) -> RegisterSet:
        instrs = node.instructions
        if self.direction is Direction.BACKWARD:
            instrs = list(reversed(instrs))
        current = set(open_regs)
        for instr in instrs:
            if not current:
                break
            for reg, access in self.events(instr, frozenset(current)):
                if reg in current:
                    outcomes[reg].add(access)
                    current.discard(reg)
        return frozenset(current)

    def _boundary(
        self,
        node: OutlinedNode,
        open_regs: RegisterSet,
        outcomes: Dict[Register, Set[Access]],
    ) -> None:
        """Record what the still-open registers run into at the far side of *node*."""
        if self.direction is Direction.FORWARD:
            if node.exit_kind is not None:
                access = _EXIT_ACCESS[node.exit_kind]
                for reg in open_regs:
                    outcomes[reg].add(access)
            if node.truncated:
                for reg in open_regs:
                    outcomes[reg].add(Access.TRUNCATED)
        elif node.id == self.body.entry:
            for reg in open_regs:
                outcomes[reg].add(Access.ENTRY)

    def _next(self, node: OutlinedNode) -> List[int]:
        if self.direction is Direction.FORWARD:
            return node.successors
        return self.body.predecessors(node.id)

    def run(self, seeds: Mapping[int, RegisterSet]) -> Outcomes:
        """Propagate *seeds* to a fixpoint.

        Parameters
        ----------
        seeds:
            Node id -> open registers at the node's start (forward) or
            end (backward).

        Returns
        -------
        dict
            Register -> set of first events.  Registers never decided on
            any path are absent.
        """
        nodes = self.body.nodes
        outcomes: Dict[Register, Set[Access]] = defaultdict(set)
        facts: Dict[int, RegisterSet] = {}
        worklist: Deque[int] = deque()
        queued: Set[int] = set()

        for nid, regs in seeds.items():
            facts[nid] = facts.get(nid, frozenset()) | frozenset(regs)
            if nid not in queued:
                worklist.append(nid)
                queued.add(nid)

        self.iterations = 0
        while worklist:
            if self.iterations >= self.max_iterations:
                logger.warning(
                    "%s on %s did not converge after %d iterations",
                    type(self).__name__, self.body.name, self.iterations,
                )
                for nid in worklist:
                    for reg in facts[nid]:
                        outcomes[reg].add(Access.TRUNCATED)
                break
            self.iterations += 1
            nid = worklist.popleft()
            queued.discard(nid)
            node = nodes[nid]

            out = self.transfer(node, facts[nid], outcomes)
            if not out:
                continue
            self._boundary(node, out, outcomes)
            for nxt in self._next(node):
                old = facts.get(nxt, frozenset())
                new = old | out
                if new != old:
                    facts[nxt] = new
                    if nxt not in queued:
                        worklist.append(nxt)
                        queued.add(nxt)
        else:
            self.converged = True

        return {reg: frozenset(acc) for reg, acc in outcomes.items()}


class ForwardFirstAccess(FirstAccessAnalysis):
    """First read or write of each register after a program point.

    A call boundary (``PRE_CALL``) closes every open register: what the
    callee does with it is not looked at.
    """

    @property
    def direction(self) -> Direction:
        return Direction.FORWARD

    def events(self, instr, open_regs):
        if instr.op is Op.PRE_CALL:
            return [(reg, Access.BOUNDARY) for reg in open_regs]
        reads = instr.reads() & open_regs
        decided = [(reg, Access.READ) for reg in reads]
        decided.extend(
            (reg, Access.WRITE) for reg in (instr.writes() & open_regs) - reads
        )
        return decided


class BackwardFirstDefinition(FirstAccessAnalysis):
    """Closest definition of each register before a program point.

    Reads are ignored.  A known callee's ``CLOBBER`` counts as a callee
    definition and registers it does not clobber pass through; a
    ``HAVOC`` (pending or unresolved callee) closes every open register.
    """

    @property
    def direction(self) -> Direction:
        return Direction.BACKWARD

    def events(self, instr, open_regs):
        if instr.op is Op.HAVOC:
            return [(reg, Access.BOUNDARY) for reg in open_regs]
        if instr.op is Op.CLOBBER:
            if instr.register in open_regs:
                return [(instr.register, Access.CALLEE_WRITE)]
            return []
        return [(reg, Access.WRITE) for reg in instr.writes() & open_regs]
