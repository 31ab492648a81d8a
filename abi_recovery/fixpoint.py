"""
abi_recovery.fixpoint
=====================

Interprocedural fixpoint driver.

Theory
------
The summary of an entry point depends on the summaries of its callees
(their clobbers, stack offsets and types), and call graphs of lifted code
are routinely cyclic.  The driver therefore iterates:

1. pop an entry point from the worklist and outline it against the
   Oracle's *current* summaries;
2. run the six analyses and synthesize a candidate summary;
3. offer the candidate to the Oracle, which applies the monotonicity
   rule (see :mod:`abi_recovery.oracle`);
4. on commit, re-enqueue every entry point whose body depends on this one.

The worklist is seeded callee-first (bottom-up over the strongly
connected components of the call graph) so most entry points are final
after one visit; cycles are handled by re-visitation.  Each commit grows
a per-entry-point lattice of finite height, so the number of commits is
bounded by ``entries * (abi registers + type ranks + 1)``.  A hard cap on
worklist pops guards against anything else; on hitting it, every entry
point that is not ``STABLE``, and every entry point that transitively
depends on one, is reported as non-converged and its last committed
summary is kept as provisional.

After the loop a final, read-only pass recomputes the argument and
return-value maps of every entry point against the final Oracle.  An
entry point whose body still calls an entry point without a summary is
non-converged as well.

Public API
----------
    AnalysisOptions         - tunables
    EntryState              - UNVISITED / IN_PROGRESS / STABLE
    CFEPAnalyzer            - analysis of one entry point
    InterproceduralDriver   - the fixpoint loop
    AnalysisReport          - everything the driver produces
    analyze_program         - one-call convenience wrapper
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple

from .abi_analyses import PartialResults, run_abi_analyses
from .callgraph import CallGraph, NodeKind, build_callgraph
from .oracle import Oracle
from .outlining import EffectStatus, OutlinedFunctionBuilder
from .program import BlockId, EdgeKind, Program
from .summary import ABIResults, FunctionResult, FunctionSummary, FunctionType
from .synthesizer import SummarySynthesizer

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOptions:
    """Tunables of the recovery pass.

    Attributes
    ----------
    max_iterations : int
        Cap on worklist pops of the fixpoint driver.
    max_outlined_nodes : int
        Cap on the size of one outlined body.
    max_inline_depth : int
        Cap on nested fake-function integration.
    dataflow_max_iterations : int
        Cap on node visits of one per-node analysis.
    """

    max_iterations: int = 10_000
    max_outlined_nodes: int = 4096
    max_inline_depth: int = 8
    dataflow_max_iterations: int = 100_000


class EntryState(enum.Enum):
    UNVISITED   = "unvisited"
    IN_PROGRESS = "in-progress"
    STABLE      = "stable"


# ═══════════════════════════════════════════════════════════════════════════
# §1 SINGLE ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════

class CFEPAnalyzer:
    """Analyzes one candidate function entry point against an Oracle."""

    def __init__(
        self,
        program: Program,
        oracle: Oracle,
        options: Optional[AnalysisOptions] = None,
    ) -> None:
        self.program = program
        self.oracle = oracle
        self.options = options or AnalysisOptions()
        self.builder = OutlinedFunctionBuilder(
            program, oracle,
            max_nodes=self.options.max_outlined_nodes,
            max_inline_depth=self.options.max_inline_depth,
        )
        self.synthesizer = SummarySynthesizer()
        self.last_partial: Optional[PartialResults] = None
        self.last_pending_calls: List[str] = []

    def analyze(self, entry: BlockId) -> Tuple[FunctionSummary, ABIResults]:
        """Outline *entry*, run the analyses and synthesize its summary.

        The outlined body is released before returning, whatever happens.
        Call sites whose callee had no summary yet are left in
        ``last_pending_calls``.
        """
        with self.builder.outline(entry) as body:
            self.last_pending_calls = [
                site.id for site in body.call_sites.values()
                if site.effect.status is EffectStatus.PENDING
            ]
            partial = run_abi_analyses(
                body, self.program.catalog.stack_pointer,
                max_iterations=self.options.dataflow_max_iterations,
            )
            self.last_partial = partial
            return self.synthesizer.synthesize(body, partial)


# ═══════════════════════════════════════════════════════════════════════════
# §2 ANALYSIS REPORT
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AnalysisReport:
    """Everything the driver produces.

    Attributes
    ----------
    functions : OrderedDict[str, FunctionResult]
        Per entry point, in program order.
    partials : dict[str, PartialResults]
        Raw analysis maps of the final pass, for diagnostics.
    converged : bool
        ``True`` if the worklist drained before the iteration cap.
    iterations : int
        Worklist pops performed.
    commits : int
        Summaries accepted by the Oracle.
    non_converged : set[str]
        Entry points whose summaries are provisional.
    """

    program: Program
    call_graph: CallGraph
    functions: "OrderedDict[str, FunctionResult]" = field(default_factory=OrderedDict)
    partials: Dict[str, PartialResults] = field(default_factory=dict)
    converged: bool = False
    iterations: int = 0
    commits: int = 0
    non_converged: Set[str] = field(default_factory=set)

    def summary(self, entry: str) -> FunctionSummary:
        return self.functions[entry].summary

    def __getitem__(self, entry: str) -> FunctionResult:
        return self.functions[entry]


# ═══════════════════════════════════════════════════════════════════════════
# §3 FIXPOINT DRIVER
# ═══════════════════════════════════════════════════════════════════════════

class InterproceduralDriver:
    """Worklist fixpoint over the entry points of a program."""

    def __init__(
        self,
        program: Program,
        oracle: Optional[Oracle] = None,
        options: Optional[AnalysisOptions] = None,
        call_graph: Optional[CallGraph] = None,
    ) -> None:
        self.program = program
        self.options = options or AnalysisOptions()
        self.oracle = oracle if oracle is not None else Oracle(program.catalog)
        self.call_graph = call_graph or build_callgraph(program)
        self.analyzer = CFEPAnalyzer(program, self.oracle, self.options)
        self.states: Dict[str, EntryState] = {
            e: EntryState.UNVISITED for e in program.entry_points
        }

    def dependents(self, entry: str) -> List[str]:
        """Entry points whose outlined bodies may change when *entry* does.

        These are the callers of *entry*, plus the callers of any of them
        that integrate it as a fake function.
        """
        node = self.call_graph.node(entry)
        if node is None:
            return []
        result: Dict[str, None] = {}
        seen: Set[str] = {entry}
        work: Deque[str] = deque([entry])
        while work:
            current = self.call_graph.nodes[work.popleft()]
            for edge in current.in_edges:
                caller = edge.caller
                if caller.kind != NodeKind.FUNCTION:
                    continue
                if current.id != entry and not self._integrates(edge.edge_kind, current.id):
                    continue
                result[caller.id] = None
                if caller.id not in seen:
                    seen.add(caller.id)
                    work.append(caller.id)
        return list(result)

    def _integrates(self, kind: EdgeKind, callee: str) -> bool:
        if kind is EdgeKind.FAKE_CALL:
            return True
        summary = self.oracle.get(callee)
        return summary is not None and summary.type is FunctionType.FAKE

    def run(self) -> AnalysisReport:
        report = AnalysisReport(program=self.program, call_graph=self.call_graph)
        order = [n.id for n in self.call_graph.bottom_up_order()]
        worklist: Deque[str] = deque(order)
        queued: Set[str] = set(order)
        commits_before = self.oracle.commits
        cap = self.options.max_iterations

        while worklist and report.iterations < cap:
            entry = worklist.popleft()
            queued.discard(entry)
            report.iterations += 1
            self.states[entry] = EntryState.IN_PROGRESS

            candidate, _ = self.analyzer.analyze(entry)
            if self.oracle.register_function(entry, candidate):
                for dep in self.dependents(entry):
                    self.states[dep] = EntryState.IN_PROGRESS
                    if dep not in queued:
                        worklist.append(dep)
                        queued.add(dep)
            if entry not in queued:
                self.states[entry] = EntryState.STABLE

        report.commits = self.oracle.commits - commits_before
        report.converged = not worklist
        if not report.converged:
            report.non_converged = self._with_dependents(
                e for e, s in self.states.items() if s is not EntryState.STABLE
            )
            for entry in report.non_converged:
                self.oracle.mark_provisional(entry)
            logger.warning(
                "fixpoint did not converge after %d iterations; "
                "%d entry point(s) are provisional",
                report.iterations, len(report.non_converged),
            )
        else:
            logger.info(
                "fixpoint converged after %d iterations, %d commits",
                report.iterations, report.commits,
            )

        self._final_pass(report)
        return report

    def _with_dependents(self, entries: Iterable[str]) -> Set[str]:
        """*entries* plus every entry point that transitively depends on them."""
        result: Set[str] = set(entries)
        work: Deque[str] = deque(result)
        while work:
            for dep in self.dependents(work.popleft()):
                if dep not in result:
                    result.add(dep)
                    work.append(dep)
        return result

    def _final_pass(self, report: AnalysisReport) -> None:
        for entry in self.program.entry_points:
            summary = self.oracle.get(entry)
            _, abi = self.analyzer.analyze(entry)
            report.partials[entry] = self.analyzer.last_partial
            if summary is None:
                summary = self.oracle.default_summary(entry)
                report.non_converged.add(entry)
            elif self.analyzer.last_pending_calls and entry not in report.non_converged:
                logger.debug("%s still calls unanalyzed entry points at %s",
                             entry, ", ".join(self.analyzer.last_pending_calls))
                report.non_converged.add(entry)
                self.oracle.mark_provisional(entry)
            converged = entry not in report.non_converged
            report.functions[entry] = FunctionResult(
                summary=summary, abi=abi, converged=converged,
            )


def analyze_program(
    program: Program,
    options: Optional[AnalysisOptions] = None,
) -> AnalysisReport:
    """Recover calling conventions for every entry point of *program*."""
    program.validate()
    return InterproceduralDriver(program, options=options).run()
