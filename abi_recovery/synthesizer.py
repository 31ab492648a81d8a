"""
abi_recovery.synthesizer
========================

Summary synthesizer: folds the six raw analysis maps of one outlined body
into a :class:`~abi_recovery.summary.FunctionSummary` and an
:class:`~abi_recovery.summary.ABIResults`.

    Arguments                 = combine(UsedArguments, DeadRegisterArguments)
    CallSites[s].Arguments    = RegisterArgumentsOfFunctionCall[s]
    CallSites[s].ReturnValues = combine(UsedReturnValuesOfFunctionCall[s],
                                        DeadReturnValuesOfFunctionCall[s])
    ReturnValues              = UsedReturnValuesOfFunction

Type
    ``Fake`` when the body only leaves through ``FakeReturn``; ``NoReturn``
    when no return, broken return or returning tail call is reachable;
    ``Regular`` otherwise.
"""

from __future__ import annotations

import logging
from typing import Dict, Set, Tuple

from .abi_analyses import PartialResults
from .outlining import OutlinedFunction
from .program import EdgeKind
from .register_state import RegisterStateMap, combine_maps
from .summary import ABIResults, CallEdge, CallSiteResult, FunctionSummary, FunctionType

logger = logging.getLogger(__name__)


def classify_function(body: OutlinedFunction) -> FunctionType:
    kinds = {n.exit_kind for n in body.exit_nodes()}
    returns = EdgeKind.RETURN in kinds or EdgeKind.BROKEN_RETURN in kinds
    if EdgeKind.FAKE_RETURN in kinds and not returns:
        return FunctionType.FAKE
    if returns:
        return FunctionType.REGULAR
    for node in body.exit_nodes(EdgeKind.TAIL_CALL):
        site = body.call_sites.get(node.call_site)
        if site is None or site.effect.returns:
            return FunctionType.REGULAR
    return FunctionType.NO_RETURN


def collect_call_edges(body: OutlinedFunction, partial: PartialResults) -> Set[CallEdge]:
    edges: Set[CallEdge] = set()
    for site in body.call_sites.values():
        edges.add((site.id, site.kind))
    for site_id, _callee in body.inlined_calls:
        edges.add((site_id, EdgeKind.FAKE_CALL))
    for node in body.exit_nodes():
        if node.call_site is not None:
            continue
        kind = node.exit_kind
        if node.id in partial.broken_returns:
            kind = EdgeKind.BROKEN_RETURN
        edges.add((body.site_id(node), kind))
    return edges


class SummarySynthesizer:
    """Builds summaries from :class:`~abi_recovery.abi_analyses.PartialResults`."""

    def synthesize(
        self,
        body: OutlinedFunction,
        partial: PartialResults,
    ) -> Tuple[FunctionSummary, ABIResults]:
        summary = FunctionSummary(
            entry=body.entry_point,
            type=classify_function(body),
            clobbered_registers=partial.tracking.clobbered,
            call_edges=frozenset(collect_call_edges(body, partial)),
            elected_stack_offset=partial.tracking.elected_stack_offset,
        )

        call_sites: Dict[str, CallSiteResult] = {}
        for site_id in body.call_sites:
            arguments: RegisterStateMap = dict(
                partial.register_arguments_of_call.get(site_id, {})
            )
            return_values = combine_maps(
                partial.used_return_values_of_call.get(site_id, {}),
                partial.dead_return_values_of_call.get(site_id, {}),
            )
            call_sites[site_id] = CallSiteResult(arguments, return_values)

        exit_offsets = {
            body.site_id(body.nodes[nid]): offset
            for nid, offset in partial.tracking.exit_offsets.items()
        }
        results = ABIResults(
            arguments=combine_maps(partial.used_arguments, partial.dead_arguments),
            return_values=dict(partial.used_return_values),
            call_sites=call_sites,
            exit_offsets=exit_offsets,
        )
        logger.debug("%s: synthesized %r", body.entry_point, summary)
        return summary, results
