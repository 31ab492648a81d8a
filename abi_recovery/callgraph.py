"""
abi_recovery.callgraph
======================

Builds the call graph over the candidate function entry points (CFEPs)
of a lifted :class:`~abi_recovery.program.Program`.

The call graph is a directed graph where:
- **Nodes** are entry points (plus synthetic nodes for call targets that
  are not entry points and a single sink for unresolved targets).
- **Edges** represent call sites, annotated with the calling block, the
  :class:`~abi_recovery.program.EdgeKind` of the call and the resolution
  method.

The graph is built once and never mutated by the analyses; nodes are
addressed by their entry block identifier so that summaries can be
swapped out from under an in-flight traversal.

Resolution methods
------------------
``DIRECT``
    The callee is statically known (direct call, fake call, direct tail
    call).
``INDIRECT``
    An indirect call or tail call for which the lifter supplied a
    resolved target.
``UNRESOLVED``
    The target is unknown.  An edge to the synthetic "UNKNOWN" node is
    created.

Public API
----------
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    build_callgraph     - build from a Program
    CallResolutionKind  - enum of resolution methods

Typical usage::

    from abi_recovery.callgraph import build_callgraph

    cg = build_callgraph(program)
    for node in cg.bottom_up_order():
        print(f"{node.name}: calls {[e.callee.name for e in node.out_edges]}")
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Set

from .program import BlockId, EdgeKind, Program


# ---------------------------------------------------------------------------
# Resolution kinds
# ---------------------------------------------------------------------------

class CallResolutionKind(enum.Enum):
    """How a call edge was resolved."""

    DIRECT     = "direct"
    INDIRECT   = "indirect"
    UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION  = "function"      # A candidate function entry point
    EXTERNAL  = "external"      # A call target that is not an entry point
    UNKNOWN   = "unknown"       # Synthetic sink for unresolved calls


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    id : str
        Unique identifier.  For entry points this is the entry block id;
        for synthetic nodes it is a descriptive string.
    name : str
        Human-readable name.
    kind : NodeKind
        What this node represents.
    out_edges : list[CallGraphEdge]
        Outgoing call edges (this function calls ...).
    in_edges : list[CallGraphEdge]
        Incoming call edges (... calls this function).
    """

    __slots__ = ("id", "name", "kind", "out_edges", "in_edges")

    def __init__(
        self,
        node_id: str,
        name: str,
        kind: NodeKind = NodeKind.FUNCTION,
    ) -> None:
        self.id: str = node_id
        self.name: str = name
        self.kind: NodeKind = kind
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    # ----- queries ----------------------------------------------------------

    @property
    def callees(self) -> List[CallGraphNode]:
        """All direct successor nodes (functions called by this one)."""
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List[CallGraphNode]:
        """All direct predecessor nodes (functions that call this one)."""
        return [e.caller for e in self.in_edges]

    @property
    def is_leaf(self) -> bool:
        return len(self.out_edges) == 0

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.id == other.id
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A directed edge in the call graph representing a call site.

    Attributes
    ----------
    caller : CallGraphNode
        The calling function.
    callee : CallGraphNode
        The called function.
    call_site : str
        Identifier of the block whose terminator performs the call.
    edge_kind : EdgeKind
        ``DIRECT_CALL``, ``INDIRECT_CALL``, ``TAIL_CALL`` or ``FAKE_CALL``.
    resolution : CallResolutionKind
        How this call was resolved.
    """

    __slots__ = ("caller", "callee", "call_site", "edge_kind", "resolution")

    def __init__(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        call_site: BlockId,
        edge_kind: EdgeKind,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> None:
        self.caller = caller
        self.callee = callee
        self.call_site = call_site
        self.edge_kind = edge_kind
        self.resolution = resolution

    def __repr__(self) -> str:
        return (
            f"CallGraphEdge({self.caller.name} -> {self.callee.name}, "
            f"{self.edge_kind.value} @ {self.call_site})"
        )

    def __hash__(self) -> int:
        return hash((self.caller.id, self.callee.id, self.call_site))

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphEdge):
            return (
                self.caller.id == other.caller.id
                and self.callee.id == other.callee.id
                and self.call_site == other.call_site
            )
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-program call graph over entry points.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by node id.
    edges : list[CallGraphEdge]
        All edges.
    unknown : CallGraphNode
        The synthetic UNKNOWN sink node.
    """

    def __init__(self) -> None:
        self.nodes: OrderedDict[str, CallGraphNode] = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self.unknown = CallGraphNode(
            node_id="__UNKNOWN__",
            name="<unknown>",
            kind=NodeKind.UNKNOWN,
        )
        self.nodes[self.unknown.id] = self.unknown

    # ----- node management --------------------------------------------------

    def get_or_create_node(
        self,
        node_id: str,
        kind: NodeKind = NodeKind.FUNCTION,
        name: Optional[str] = None,
    ) -> CallGraphNode:
        """Return the node with *node_id*, creating it if needed."""
        node = self.nodes.get(node_id)
        if node is None:
            node = CallGraphNode(node_id=node_id, name=name or node_id, kind=kind)
            self.nodes[node_id] = node
        return node

    # ----- edge management --------------------------------------------------

    def add_edge(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        call_site: BlockId,
        edge_kind: EdgeKind,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> CallGraphEdge:
        """Create a call edge and wire it up."""
        edge = CallGraphEdge(
            caller=caller,
            callee=callee,
            call_site=call_site,
            edge_kind=edge_kind,
            resolution=resolution,
        )
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    # ----- lookups ----------------------------------------------------------

    def node(self, node_id: str) -> Optional[CallGraphNode]:
        return self.nodes.get(node_id)

    @property
    def functions(self) -> List[CallGraphNode]:
        """Entry-point nodes, in program order."""
        return [n for n in self.nodes.values() if n.kind == NodeKind.FUNCTION]

    @property
    def roots(self) -> List[CallGraphNode]:
        """Nodes with no callers (excluding UNKNOWN)."""
        return [
            n for n in self.nodes.values()
            if n.is_root and n.kind != NodeKind.UNKNOWN
        ]

    @property
    def leaves(self) -> List[CallGraphNode]:
        """Nodes with no callees."""
        return [
            n for n in self.nodes.values()
            if n.is_leaf and n.kind != NodeKind.UNKNOWN
        ]

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all functions transitively reachable from *node*.

        *node* itself is included only when it reaches itself.
        """
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque(e.callee for e in node.out_edges)
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            for e in n.out_edges:
                worklist.append(e.callee)
        return visited

    def is_recursive(self, node: CallGraphNode) -> bool:
        """Is *node* part of a (possibly indirect) recursive cycle?"""
        return node in self.transitive_callees(node)

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  Each SCC with more than one node represents mutual
        recursion.  The depth-first walk keeps its own stack of
        ``(node, pending out-edges)`` frames, so call chains of any length
        are handled.
        """
        counter = 0
        stack: List[CallGraphNode] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        def visit(v: CallGraphNode) -> None:
            nonlocal counter
            index[v.id] = lowlink[v.id] = counter
            counter += 1
            stack.append(v)
            on_stack.add(v.id)

        for root in self.nodes.values():
            if root.id in index:
                continue
            visit(root)
            frames = [(root, iter(root.out_edges))]
            while frames:
                v, edges = frames[-1]
                descended = False
                for e in edges:
                    w = e.callee
                    if w.id not in index:
                        visit(w)
                        frames.append((w, iter(w.out_edges)))
                        descended = True
                        break
                    if w.id in on_stack:
                        lowlink[v.id] = min(lowlink[v.id], index[w.id])
                if descended:
                    continue

                frames.pop()
                if frames:
                    parent = frames[-1][0]
                    lowlink[parent.id] = min(lowlink[parent.id], lowlink[v.id])
                if lowlink[v.id] == index[v.id]:
                    scc: List[CallGraphNode] = []
                    while True:
                        w = stack.pop()
                        on_stack.discard(w.id)
                        scc.append(w)
                        if w.id == v.id:
                            break
                    result.append(scc)

        return result

    def bottom_up_order(self) -> List[CallGraphNode]:
        """Entry points with callees before callers.

        Uses the SCC decomposition; nodes within an SCC keep the order
        Tarjan pops them in.
        """
        sccs = self.strongly_connected_components()
        return [
            node for scc in sccs for node in scc
            if node.kind == NodeKind.FUNCTION
        ]

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        n_func = sum(1 for n in self.nodes.values()
                     if n.kind == NodeKind.FUNCTION)
        n_ext = sum(1 for n in self.nodes.values()
                    if n.kind == NodeKind.EXTERNAL)
        by_kind: Dict[str, int] = {}
        for e in self.edges:
            by_kind[e.edge_kind.value] = by_kind.get(e.edge_kind.value, 0) + 1
        n_unresolved = sum(1 for e in self.edges
                           if e.resolution == CallResolutionKind.UNRESOLVED)
        sccs = [
            scc for scc in self.strongly_connected_components()
            if any(n.kind == NodeKind.FUNCTION for n in scc)
        ]
        n_recursive = sum(1 for scc in sccs if len(scc) > 1)
        n_self_recursive = sum(1 for n in self.nodes.values() if n.is_recursive)
        return {
            "functions": n_func,
            "external_targets": n_ext,
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "edges_by_kind": by_kind,
            "unresolved_calls": n_unresolved,
            "sccs": len(sccs),
            "recursive_sccs": n_recursive,
            "self_recursive_functions": n_self_recursive,
            "root_functions": len(self.roots),
            "leaf_functions": len(self.leaves),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
            NodeKind.UNKNOWN:  'style=filled, fillcolor="#ffcccc", shape=diamond',
        }
        for n in self.nodes.values():
            if n.kind == NodeKind.UNKNOWN and n.is_root:
                continue
            attrs = kind_attrs.get(n.kind, "")
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{n.id}" [label="{escaped}", {attrs}];')

        kind_edge_attrs = {
            EdgeKind.DIRECT_CALL: "",
            EdgeKind.INDIRECT_CALL: ", style=dashed, color=blue",
            EdgeKind.TAIL_CALL: ", style=bold",
            EdgeKind.FAKE_CALL: ", style=dotted, color=gray",
        }
        for e in self.edges:
            attrs = kind_edge_attrs.get(e.edge_kind, "")
            if e.resolution == CallResolutionKind.UNRESOLVED:
                attrs += ", color=red"
            elabel = f"{e.edge_kind.value}@{e.call_site}"
            lines.append(
                f'  "{e.caller.id}" -> "{e.callee.id}" '
                f'[label="{elabel}"{attrs}];'
            )
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"
        )


# ===========================================================================
# BUILDER
# ===========================================================================

def _function_blocks(program: Program, entry: BlockId) -> List[BlockId]:
    """Blocks of *entry*, including bodies of fake callees that are not
    entry points themselves (those are always integrated into the caller).
    """
    result: Dict[BlockId, None] = {}
    starts: Deque[BlockId] = deque([entry])
    while starts:
        for bid in program.reachable_blocks(starts.popleft()):
            if bid in result:
                continue
            result[bid] = None
            term = program.block(bid).terminator
            if (term.kind is EdgeKind.FAKE_CALL and term.callee is not None
                    and not program.is_entry_point(term.callee)
                    and term.callee in program.blocks
                    and term.callee not in result):
                starts.append(term.callee)
    return list(result)


def build_callgraph(program: Program) -> CallGraph:
    """Construct the call graph of *program*.

    Every entry point becomes a ``FUNCTION`` node, even if nothing calls
    it.  Call targets that are not entry points become ``EXTERNAL``
    nodes; calls without a known target go to the ``UNKNOWN`` sink.
    Calls made inside a fake callee that is not an entry point are
    attributed to the caller integrating it.
    """
    cg = CallGraph()
    for entry in program.entry_points:
        cg.get_or_create_node(entry, kind=NodeKind.FUNCTION)

    for entry in program.entry_points:
        caller = cg.nodes[entry]
        for bid in _function_blocks(program, entry):
            term = program.block(bid).terminator
            if not term.kind.is_call:
                continue
            if term.callee is None:
                cg.add_edge(caller, cg.unknown, bid, term.kind,
                            CallResolutionKind.UNRESOLVED)
                continue
            if program.is_entry_point(term.callee):
                callee = cg.nodes[term.callee]
            else:
                callee = cg.get_or_create_node(
                    f"__EXT__{term.callee}", kind=NodeKind.EXTERNAL,
                    name=term.callee,
                )
            resolution = (
                CallResolutionKind.INDIRECT
                if term.kind is EdgeKind.INDIRECT_CALL
                else CallResolutionKind.DIRECT
            )
            cg.add_edge(caller, callee, bid, term.kind, resolution)
    return cg
