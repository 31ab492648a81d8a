"""
abi_recovery.abi_analyses
=========================

The six per-node ABI analyses and the value-tracking analysis they lean on.

Each analysis takes one :class:`~abi_recovery.outlining.OutlinedFunction`
and produces a :data:`~abi_recovery.register_state.RegisterStateMap`
(per call site for the call-site analyses).  They never raise on odd
input: anything not decided by the evidence is ``Maybe``.

==================================  =========  ===============================
Analysis                            Direction  Verdicts
==================================  =========  ===============================
UsedArgumentsOfFunction             forward    ``Yes`` if some path from the
                                               entry reads the register first
DeadRegisterArgumentsOfFunction     forward    ``NoOrDead`` if every path
                                               from the entry writes it first
UsedReturnValuesOfFunctionCall      forward    ``No`` if the callee preserves
                                               it, ``Yes`` if read after the
                                               call before any write
RegisterArgumentsOfFunctionCall     backward   ``YesOrDead`` if every path to
                                               the call defines it
DeadReturnValuesOfFunctionCall      forward    ``NoOrDead`` if every path
                                               after the call overwrites it
UsedReturnValuesOfFunction          backward   ``No`` if preserved, ``Yes``
                                               if every path writes it,
                                               ``YesOrDead`` if a callee may
==================================  =========  ===============================

Call sites whose callee is pending or unresolved get ``Maybe`` for every
register.

Value tracking
--------------
:class:`ValueTracking` is a forward *must* analysis recording, for every
register and stack slot, whether it still holds the entry value of some
register, and the stack-pointer offset relative to the entry.  It gives
the clobbered-register set, the ``No`` verdicts of return values and the
stack offset of every exit point.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, FrozenSet, List, Optional, Set

from .dataflow import Access, BackwardFirstDefinition, ForwardFirstAccess, Outcomes
from .outlining import CallSite, OutlinedFunction, OutlinedNode
from .program import EdgeKind, Instruction, Op
from .register_state import RegisterState, RegisterStateMap, combine_all
from .registers import Register

logger = logging.getLogger(__name__)

_S = RegisterState

_RETURNING_EXITS = (EdgeKind.RETURN, EdgeKind.BROKEN_RETURN, EdgeKind.FAKE_RETURN)
_OFFSET_EXITS = (EdgeKind.RETURN, EdgeKind.TAIL_CALL)


# ═══════════════════════════════════════════════════════════════════════════
# §1 VALUE TRACKING
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TrackedState:
    """Abstract machine state: which entry value each location holds.

    ``None`` stands for an unknown value (or offset).
    """

    registers: Dict[Register, Optional[Register]]
    slots: Dict[int, Optional[Register]]
    sp: Optional[int]

    def join(self, other: "TrackedState") -> "TrackedState":
        regs = {
            r: v if other.registers.get(r) == v else None
            for r, v in self.registers.items()
        }
        slots = {
            k: v for k, v in self.slots.items()
            if k in other.slots and other.slots[k] == v
        }
        sp = self.sp if self.sp == other.sp else None
        return TrackedState(regs, slots, sp)

    def holds_entry_value(self, reg: Register) -> bool:
        return self.registers.get(reg) == reg


def _step(state: TrackedState, instr: Instruction, sp_reg: Register) -> TrackedState:
    regs = state.registers
    slots = state.slots
    sp = state.sp
    op = instr.op
    if op is Op.ADJUST_SP:
        sp = None if (sp is None or instr.delta is None) else sp + instr.delta
    elif op is Op.SPILL:
        slots = dict(slots)
        slots[instr.slot] = regs.get(instr.register)
    elif op is Op.RELOAD:
        regs = dict(regs)
        regs[instr.register] = slots.get(instr.slot)
    elif op is Op.COPY:
        regs = dict(regs)
        regs[instr.register] = regs.get(instr.source)
    elif op in (Op.WRITE, Op.CLOBBER, Op.HAVOC):
        regs = dict(regs)
        for reg in instr.writes():
            regs[reg] = None
    if sp_reg in instr.writes():
        sp = None
    if regs is state.registers and slots is state.slots and sp == state.sp:
        return state
    return TrackedState(regs, slots, sp)


@dataclass
class TrackingResult:
    """Output of :class:`ValueTracking`."""

    out_states: Dict[int, TrackedState] = field(default_factory=dict)
    written: FrozenSet[Register] = frozenset()
    clobbered: FrozenSet[Register] = frozenset()
    exit_offsets: Dict[int, Optional[int]] = field(default_factory=dict)
    elected_stack_offset: Optional[int] = None

    def preserved_at(self, node_id: int, reg: Register) -> bool:
        state = self.out_states.get(node_id)
        return state is not None and state.holds_entry_value(reg)


class ValueTracking:
    """Forward must-analysis of entry values and the stack offset."""

    def __init__(self, body: OutlinedFunction, stack_pointer: Register) -> None:
        self.body = body
        self.stack_pointer = stack_pointer

    def _transfer(self, node: OutlinedNode, state: TrackedState) -> TrackedState:
        for instr in node.instructions:
            state = _step(state, instr, self.stack_pointer)
        return state

    def run(self) -> TrackingResult:
        body = self.body
        nodes = body.nodes
        entry_state = TrackedState({r: r for r in body.registers}, {}, 0)
        in_states: Dict[int, TrackedState] = {body.entry: entry_state}
        out_states: Dict[int, TrackedState] = {}
        worklist: Deque[int] = deque([body.entry])
        queued: Set[int] = {body.entry}

        while worklist:
            nid = worklist.popleft()
            queued.discard(nid)
            out = self._transfer(nodes[nid], in_states[nid])
            out_states[nid] = out
            for succ in nodes[nid].successors:
                old = in_states.get(succ)
                new = out if old is None else old.join(out)
                if new != old:
                    in_states[succ] = new
                    if succ not in queued:
                        worklist.append(succ)
                        queued.add(succ)

        abi = frozenset(body.registers)
        written: Set[Register] = set()
        for node in nodes.values():
            for instr in node.instructions:
                written |= instr.writes()
        written &= abi

        returning = [
            out_states[n.id] for n in body.exit_nodes()
            if n.id in out_states and self._returns(n)
        ]
        if returning:
            preserved = {
                r for r in abi
                if all(state.holds_entry_value(r) for state in returning)
            }
        else:
            preserved = set()

        exit_offsets = {
            n.id: out_states[n.id].sp
            for n in body.exit_nodes(*_OFFSET_EXITS)
            if n.id in out_states
        }
        return TrackingResult(
            out_states=out_states,
            written=frozenset(written),
            clobbered=frozenset(written - preserved),
            exit_offsets=exit_offsets,
            elected_stack_offset=elect_stack_offset(exit_offsets.values()),
        )

    def _returns(self, node: OutlinedNode) -> bool:
        if node.exit_kind in _RETURNING_EXITS:
            return True
        if node.exit_kind is EdgeKind.TAIL_CALL:
            site = self.body.call_sites.get(node.call_site)
            return site is None or site.effect.returns
        return False


def elect_stack_offset(offsets) -> Optional[int]:
    """The single most common known offset, or ``None`` on a tie or no data."""
    counts = Counter(o for o in offsets if o is not None)
    if not counts:
        return None
    ranked = counts.most_common(2)
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return None
    return ranked[0][0]


# ═══════════════════════════════════════════════════════════════════════════
# §2 FUNCTION-LEVEL ANALYSES
# ═══════════════════════════════════════════════════════════════════════════

class UsedArgumentsOfFunction:
    """Registers read before any write on some path from the entry."""

    def __init__(self, body: OutlinedFunction, max_iterations: Optional[int] = None) -> None:
        self.body = body
        self.max_iterations = max_iterations

    def run(self) -> RegisterStateMap:
        regs = frozenset(self.body.registers)
        outcomes = ForwardFirstAccess(self.body, self.max_iterations).run({self.body.entry: regs})
        return {
            r: _S.YES if Access.READ in outcomes.get(r, ()) else _S.MAYBE
            for r in self.body.registers
        }


class DeadRegisterArgumentsOfFunction:
    """Registers every path from the entry overwrites before using."""

    def __init__(self, body: OutlinedFunction, max_iterations: Optional[int] = None) -> None:
        self.body = body
        self.max_iterations = max_iterations

    def run(self) -> RegisterStateMap:
        regs = frozenset(self.body.registers)
        outcomes = ForwardFirstAccess(self.body, self.max_iterations).run({self.body.entry: regs})
        return {r: _dead_verdict(outcomes.get(r)) for r in self.body.registers}


def _dead_verdict(outcome: Optional[FrozenSet[Access]]) -> RegisterState:
    if outcome and Access.WRITE in outcome and outcome <= {Access.WRITE, Access.DEAD_END}:
        return _S.NO_OR_DEAD
    return _S.MAYBE


class UsedReturnValuesOfFunction:
    """Return-value verdict at every normal return, merged with ``combine``."""

    def __init__(self, body: OutlinedFunction, tracking: TrackingResult,
                 return_nodes: Optional[List[int]] = None,
                 max_iterations: Optional[int] = None) -> None:
        self.body = body
        self.max_iterations = max_iterations
        self.tracking = tracking
        if return_nodes is None:
            return_nodes = [n.id for n in body.exit_nodes(EdgeKind.RETURN)]
        self.return_nodes = return_nodes

    def at_return(self, node_id: int) -> RegisterStateMap:
        regs = frozenset(self.body.registers)
        outcomes = BackwardFirstDefinition(self.body, self.max_iterations).run({node_id: regs})
        result: RegisterStateMap = {}
        for r in self.body.registers:
            outcome = outcomes.get(r, frozenset())
            if self.tracking.preserved_at(node_id, r):
                result[r] = _S.NO
            elif outcome and outcome <= {Access.WRITE}:
                result[r] = _S.YES
            elif outcome and outcome <= {Access.WRITE, Access.CALLEE_WRITE}:
                result[r] = _S.YES_OR_DEAD
            else:
                result[r] = _S.MAYBE
        return result

    def run(self) -> RegisterStateMap:
        per_return = [self.at_return(nid) for nid in self.return_nodes]
        return {
            r: combine_all(m[r] for m in per_return)
            for r in self.body.registers
        }


# ═══════════════════════════════════════════════════════════════════════════
# §3 CALL-SITE ANALYSES
# ═══════════════════════════════════════════════════════════════════════════

class _CallSiteAnalysis(ABC):
    """Runs :meth:`at_call_site` for every call site of the body."""

    def __init__(self, body: OutlinedFunction, max_iterations: Optional[int] = None) -> None:
        self.body = body
        self.max_iterations = max_iterations

    def _all_maybe(self) -> RegisterStateMap:
        return {r: _S.MAYBE for r in self.body.registers}

    @abstractmethod
    def at_call_site(self, site: CallSite) -> RegisterStateMap:
        """State of every register at a call site whose callee is known."""

    def run(self) -> Dict[str, RegisterStateMap]:
        result: Dict[str, RegisterStateMap] = {}
        for site in self.body.call_sites.values():
            if not site.effect.is_known:
                result[site.id] = self._all_maybe()
            else:
                result[site.id] = self.at_call_site(site)
        return result

    def _after(self, site: CallSite) -> Outcomes:
        clobbered = frozenset(site.effect.clobbered)
        seeds = {succ: clobbered for succ in self.body.nodes[site.node].successors}
        return ForwardFirstAccess(self.body, self.max_iterations).run(seeds)


class UsedReturnValuesOfFunctionCall(_CallSiteAnalysis):
    """Registers the callee clobbers and the caller reads after the call."""

    def at_call_site(self, site):
        clobbered = set(site.effect.clobbered)
        outcomes = self._after(site)
        result: RegisterStateMap = {}
        for r in self.body.registers:
            if r not in clobbered:
                result[r] = _S.NO
            elif Access.READ in outcomes.get(r, ()):
                result[r] = _S.YES
            else:
                result[r] = _S.MAYBE
        return result


class DeadReturnValuesOfFunctionCall(_CallSiteAnalysis):
    """Registers the callee clobbers and every path after the call overwrites."""

    def at_call_site(self, site):
        clobbered = set(site.effect.clobbered)
        outcomes = self._after(site)
        return {
            r: _dead_verdict(outcomes.get(r)) if r in clobbered else _S.MAYBE
            for r in self.body.registers
        }


class RegisterArgumentsOfFunctionCall(_CallSiteAnalysis):
    """Registers defined on every path reaching the call."""

    def at_call_site(self, site):
        regs = frozenset(self.body.registers)
        preds = self.body.predecessors(site.node)
        outcomes = BackwardFirstDefinition(self.body, self.max_iterations).run({p: regs for p in preds})
        defined = {Access.WRITE, Access.CALLEE_WRITE}
        result: RegisterStateMap = {}
        for r in self.body.registers:
            outcome = outcomes.get(r)
            if outcome and outcome <= defined:
                result[r] = _S.YES_OR_DEAD
            else:
                result[r] = _S.MAYBE
        return result


# ═══════════════════════════════════════════════════════════════════════════
# §4 DRIVER
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PartialResults:
    """Raw output of the six analyses plus value tracking for one body."""

    used_arguments: RegisterStateMap
    dead_arguments: RegisterStateMap
    used_return_values: RegisterStateMap
    register_arguments_of_call: Dict[str, RegisterStateMap]
    used_return_values_of_call: Dict[str, RegisterStateMap]
    dead_return_values_of_call: Dict[str, RegisterStateMap]
    tracking: TrackingResult
    broken_returns: FrozenSet[int] = frozenset()


def run_abi_analyses(
    body: OutlinedFunction,
    stack_pointer: Register,
    max_iterations: Optional[int] = None,
) -> PartialResults:
    """Run value tracking and the six analyses on *body*."""
    tracking = ValueTracking(body, stack_pointer).run()

    elected = tracking.elected_stack_offset
    broken: Set[int] = set()
    if elected is not None:
        broken = {
            n.id for n in body.exit_nodes(EdgeKind.RETURN)
            if tracking.exit_offsets.get(n.id) != elected
        }
        if broken:
            logger.debug("%s: %d return(s) disagree with stack offset %d",
                         body.entry_point, len(broken), elected)
    return_nodes = [
        n.id for n in body.exit_nodes(EdgeKind.RETURN) if n.id not in broken
    ]

    return PartialResults(
        used_arguments=UsedArgumentsOfFunction(body, max_iterations).run(),
        dead_arguments=DeadRegisterArgumentsOfFunction(body, max_iterations).run(),
        used_return_values=UsedReturnValuesOfFunction(
            body, tracking, return_nodes, max_iterations).run(),
        register_arguments_of_call=RegisterArgumentsOfFunctionCall(body, max_iterations).run(),
        used_return_values_of_call=UsedReturnValuesOfFunctionCall(body, max_iterations).run(),
        dead_return_values_of_call=DeadReturnValuesOfFunctionCall(body, max_iterations).run(),
        tracking=tracking,
        broken_returns=frozenset(broken),
    )
