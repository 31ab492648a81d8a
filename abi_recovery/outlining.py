"""
abi_recovery.outlining
======================

Outlined-function builder.

Given one entry point, materialise a disposable, self-contained copy of
the code reachable from it in which every call is replaced by a call
node of the form::

    PRE_CALL site
    CLOBBER r ...          (known callee: the registers it clobbers)
    | HAVOC {r ...}        (pending or unresolved callee)
    ADJUST_SP fso          (callee's elected stack offset, ``?`` if unknown)
    POST_CALL site

so that the per-node analyses can treat calls uniformly without
re-descending into callees.

Callee effects
--------------
``KNOWN``
    The Oracle has a summary: its clobbers and stack offset are applied
    and a ``NoReturn`` callee ends the path.
``PENDING``
    The callee is an entry point without a summary yet.  It clobbers
    nothing (the optimistic bottom the fixpoint grows from) but its stack
    effect is unknown and its call-site maps are forced to ``Maybe``.
``OPAQUE``
    The target is unresolved or is not an entry point: every ABI register
    is clobbered and the stack effect is unknown.

Fake functions (``FakeCall`` edges, and callees the Oracle classifies as
``Fake``) are integrated into the body instead: their ``FakeReturn``
exits branch back to the return-to block of the call.  Integration is
bounded by an inline depth and refuses recursive chains.

Termination and lifetime
------------------------
The body never grows beyond ``max_nodes`` nodes; successors that would
exceed the cap are cut and the cutting node is flagged ``truncated``.
Bodies are scoped resources: :meth:`OutlinedFunctionBuilder.outline` is a
context manager that releases the body on every exit path, and at most
one body per entry point may be live at a time so disposable names never
collide.
"""

from __future__ import annotations

import enum
import itertools
import logging
from collections import OrderedDict, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Tuple

from .errors import MissingCollaboratorData
from .oracle import Oracle
from .program import BlockId, EdgeKind, Instruction, Op, Program
from .registers import Register
from .summary import FunctionType

logger = logging.getLogger(__name__)


class EffectStatus(enum.Enum):
    KNOWN   = "known"
    PENDING = "pending"
    OPAQUE  = "opaque"


@dataclass(frozen=True)
class CalleeEffect:
    """What a call does to the caller's registers and stack."""

    status: EffectStatus
    clobbered: Tuple[Register, ...] = ()
    stack_offset: Optional[int] = None
    function_type: Optional[FunctionType] = None

    @property
    def is_known(self) -> bool:
        return self.status is EffectStatus.KNOWN

    @property
    def returns(self) -> bool:
        return self.function_type is None or self.function_type.returns


@dataclass
class OutlinedNode:
    """A node of an outlined body.

    ``exit_kind`` is set on nodes control leaves the body from;
    ``call_site`` is set on call nodes.
    """

    id: int
    origin: BlockId
    instructions: List[Instruction] = field(default_factory=list)
    successors: List[int] = field(default_factory=list)
    exit_kind: Optional[EdgeKind] = None
    call_site: Optional[str] = None
    truncated: bool = False


@dataclass
class CallSite:
    id: str
    block: BlockId
    kind: EdgeKind
    callee: Optional[BlockId]
    effect: CalleeEffect
    node: int


class OutlinedFunction:
    """A disposable, call-boundary-substituted body of one entry point."""

    def __init__(self, name: str, entry_point: BlockId, registers: Tuple[Register, ...]) -> None:
        self.name = name
        self.entry_point = entry_point
        self.registers = registers
        self.entry: int = 0
        self.nodes: Dict[int, OutlinedNode] = {}
        self.call_sites: "OrderedDict[str, CallSite]" = OrderedDict()
        self.inlined_calls: List[Tuple[str, BlockId]] = []
        self.truncated = False
        self.released = False
        self._contexts: Dict[int, tuple] = {}
        self._preds: Optional[Dict[int, List[int]]] = None

    def predecessors(self, node_id: int) -> List[int]:
        if self._preds is None:
            preds: Dict[int, List[int]] = {nid: [] for nid in self.nodes}
            for node in self.nodes.values():
                for succ in node.successors:
                    preds[succ].append(node.id)
            self._preds = preds
        return self._preds[node_id]

    def exit_nodes(self, *kinds: EdgeKind) -> List[OutlinedNode]:
        return [
            n for n in self.nodes.values()
            if n.exit_kind is not None and (not kinds or n.exit_kind in kinds)
        ]

    def site_id(self, node: OutlinedNode) -> str:
        return node.call_site or _site_name(node.origin, self._contexts.get(node.id, ()))

    def release(self) -> None:
        self.nodes.clear()
        self.call_sites.clear()
        self.inlined_calls.clear()
        self._contexts.clear()
        self._preds = None
        self.released = True

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return (
            f"OutlinedFunction({self.name!r}, nodes={len(self.nodes)}, "
            f"call_sites={len(self.call_sites)}, truncated={self.truncated})"
        )


# An inline frame: (calling block, return-to block, integrated callee).
_Frame = Tuple[BlockId, BlockId, BlockId]
_Key = Tuple[BlockId, Tuple[_Frame, ...]]


def _site_name(block: BlockId, ctx: Tuple[_Frame, ...]) -> str:
    """Unique name of a block copy: ``inner<caller<outer-caller``."""
    if not ctx:
        return block
    return block + "".join(f"<{frame[0]}" for frame in reversed(ctx))


class OutlinedFunctionBuilder:
    """Builds :class:`OutlinedFunction` bodies against the current Oracle.

    Parameters
    ----------
    program:
        The lifted program.  Never mutated.
    oracle:
        Source of callee summaries.
    max_nodes:
        Cap on the number of nodes of one body.
    max_inline_depth:
        Cap on nested fake-function integration.
    """

    MAX_NODES: int = 4096
    MAX_INLINE_DEPTH: int = 8

    def __init__(
        self,
        program: Program,
        oracle: Oracle,
        *,
        max_nodes: Optional[int] = None,
        max_inline_depth: Optional[int] = None,
    ) -> None:
        self.program = program
        self.oracle = oracle
        self.max_nodes = max_nodes if max_nodes is not None else self.MAX_NODES
        self.max_inline_depth = (
            max_inline_depth if max_inline_depth is not None
            else self.MAX_INLINE_DEPTH
        )
        self._generation = itertools.count()
        self._live: Dict[BlockId, str] = {}

    # ----- lifetime ---------------------------------------------------------

    @contextmanager
    def outline(self, entry: BlockId) -> Iterator[OutlinedFunction]:
        """Build the body of *entry* and release it when the block exits."""
        body = self.build(entry)
        try:
            yield body
        finally:
            self.release(body)

    def build(self, entry: BlockId) -> OutlinedFunction:
        if entry in self._live:
            raise MissingCollaboratorData(
                f"outlined body {self._live[entry]!r} of {entry!r} is still live"
            )
        self.program.block(entry)
        name = f"outlined.{entry}.{next(self._generation)}"
        self._live[entry] = name
        try:
            return self._construct(name, entry)
        except BaseException:
            del self._live[entry]
            raise

    def release(self, body: OutlinedFunction) -> None:
        if self._live.get(body.entry_point) == body.name:
            del self._live[body.entry_point]
        body.release()

    @property
    def live_bodies(self) -> List[str]:
        return list(self._live.values())

    # ----- callee effects ---------------------------------------------------

    def callee_effect(self, callee: Optional[BlockId]) -> CalleeEffect:
        catalog = self.program.catalog
        if callee is None or not self.program.is_entry_point(callee):
            return CalleeEffect(EffectStatus.OPAQUE,
                                clobbered=catalog.abi_registers)
        summary = self.oracle.get(callee)
        if summary is None:
            return CalleeEffect(EffectStatus.PENDING)
        return CalleeEffect(
            EffectStatus.KNOWN,
            clobbered=tuple(catalog.sort(summary.clobbered_registers)),
            stack_offset=summary.elected_stack_offset,
            function_type=summary.type,
        )

    def _should_integrate(self, kind: EdgeKind, callee: Optional[BlockId],
                          return_to: Optional[BlockId],
                          ctx: Tuple[_Frame, ...]) -> bool:
        if callee is None or return_to is None or kind is EdgeKind.TAIL_CALL:
            return False
        if callee not in self.program.blocks:
            return False
        if kind is not EdgeKind.FAKE_CALL:
            summary = self.oracle.get(callee)
            if summary is None or summary.type is not FunctionType.FAKE:
                return False
        if len(ctx) >= self.max_inline_depth:
            logger.debug("not integrating %s: inline depth %d reached",
                         callee, len(ctx))
            return False
        return all(frame[2] != callee for frame in ctx)

    # ----- construction -----------------------------------------------------

    def _construct(self, name: str, entry: BlockId) -> OutlinedFunction:
        body = OutlinedFunction(name, entry, self.program.catalog.abi_registers)
        key_to_node: Dict[_Key, int] = {}
        worklist: Deque[_Key] = deque()

        def new_node(origin: BlockId, ctx: Tuple[_Frame, ...]) -> Optional[OutlinedNode]:
            if len(body.nodes) >= self.max_nodes:
                body.truncated = True
                return None
            node = OutlinedNode(id=len(body.nodes), origin=origin)
            body.nodes[node.id] = node
            body._contexts[node.id] = ctx
            return node

        def node_for(key: _Key) -> Optional[int]:
            nid = key_to_node.get(key)
            if nid is not None:
                return nid
            node = new_node(key[0], key[1])
            if node is None:
                return None
            key_to_node[key] = node.id
            worklist.append(key)
            return node.id

        def link(node: OutlinedNode, key: _Key) -> None:
            succ = node_for(key)
            if succ is None:
                node.truncated = True
            else:
                node.successors.append(succ)

        node_for((entry, ()))
        while worklist:
            key = worklist.popleft()
            bid, ctx = key
            node = body.nodes[key_to_node[key]]
            block = self.program.block(bid)
            node.instructions = list(block.instructions)
            term = block.terminator
            kind = term.kind

            if kind is EdgeKind.DIRECT_BRANCH:
                for target in term.targets:
                    link(node, (target, ctx))
            elif kind is EdgeKind.FAKE_RETURN and ctx:
                link(node, (ctx[-1][1], ctx[:-1]))
            elif kind.is_call:
                if self._should_integrate(kind, term.callee, term.return_to, ctx):
                    frame = (bid, term.return_to, term.callee)
                    body.inlined_calls.append((_site_name(bid, ctx), term.callee))
                    link(node, (term.callee, ctx + (frame,)))
                else:
                    self._add_call_node(body, node, kind, term.callee,
                                        term.return_to, ctx, new_node, link)
            else:
                node.exit_kind = kind

        if body.truncated:
            logger.warning(
                "outlined body of %s truncated at %d nodes", entry, self.max_nodes
            )
        return body

    def _add_call_node(self, body, node, kind, callee, return_to, ctx,
                       new_node, link) -> None:
        site = _site_name(node.origin, ctx)
        call = new_node(node.origin, ctx)
        if call is None:
            node.truncated = True
            return
        node.successors.append(call.id)
        effect = self.callee_effect(callee)

        instrs = [Instruction(Op.PRE_CALL, site=site)]
        if effect.is_known:
            instrs.extend(Instruction(Op.CLOBBER, register=r)
                          for r in effect.clobbered)
        else:
            instrs.append(Instruction(Op.HAVOC, site=site,
                                      havoc=effect.clobbered))
        instrs.append(Instruction(Op.ADJUST_SP, delta=effect.stack_offset))
        instrs.append(Instruction(Op.POST_CALL, site=site))
        call.instructions = instrs
        call.call_site = site

        if kind is EdgeKind.TAIL_CALL:
            call.exit_kind = EdgeKind.TAIL_CALL
        elif not effect.returns or return_to is None:
            call.exit_kind = EdgeKind.UNREACHABLE
        else:
            link(call, (return_to, ctx))

        body.call_sites[site] = CallSite(
            id=site,
            block=node.origin,
            kind=kind,
            callee=callee,
            effect=effect,
            node=call.id,
        )
