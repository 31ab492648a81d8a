"""
abi_recovery.report
===================

Human-readable renderings of an :class:`~abi_recovery.fixpoint.AnalysisReport`.

``format_report``
    Text dump: per entry point the final summary, the six raw analysis
    maps and the synthesized function and call-site maps.  Only registers
    whose state is not ``Maybe`` are listed.
``format_branch_info_csv``
    One CSV row per return or tail-call site with its stack offset and the
    function's return-value state of every ABI register.
``format_call_graph``
    Graphviz DOT text of the entry-point call graph.
"""

from __future__ import annotations

import csv
import io
from typing import Dict, List, Mapping, Optional

from .fixpoint import AnalysisReport
from .register_state import RegisterState
from .registers import Register, RegisterCatalog


def _fso(value: Optional[int]) -> str:
    return "?" if value is None else str(value)


def _dump_map(
    lines: List[str],
    title: str,
    states: Mapping[Register, RegisterState],
    catalog: RegisterCatalog,
    indent: str,
) -> None:
    lines.append(f"{indent}{title}:")
    for reg in catalog.sort(states):
        state = states[reg]
        if state is not RegisterState.MAYBE:
            lines.append(f"{indent}  {reg.name} = {state}")


def format_report(report: AnalysisReport, *, raw: bool = True) -> str:
    """Render *report* as text.  ``raw=False`` omits the six raw maps."""
    catalog = report.program.catalog
    lines: List[str] = []
    status = "converged" if report.converged else "NOT converged"
    lines.append(
        f"# {len(report.functions)} entry point(s), {report.iterations} "
        f"iteration(s), {report.commits} commit(s), {status}"
    )
    for entry, result in report.functions.items():
        summary = result.summary
        flag = "" if result.converged else " (provisional)"
        lines.append("")
        lines.append(f"Function {entry} [{summary.type}]{flag}")
        lines.append(f"  ElectedStackOffset: {_fso(summary.elected_stack_offset)}")
        clobbers = " ".join(r.name for r in catalog.sort(summary.clobbered_registers))
        lines.append(f"  ClobberedRegisters: {clobbers}")
        lines.append("  CallEdges:")
        for site, kind in sorted(summary.call_edges, key=lambda e: (e[0], e[1].value)):
            lines.append(f"    {site} {kind}")

        partial = report.partials.get(entry)
        if raw and partial is not None:
            _dump_map(lines, "UsedArgumentsOfFunction", partial.used_arguments, catalog, "  ")
            _dump_map(lines, "DeadRegisterArgumentsOfFunction", partial.dead_arguments, catalog, "  ")
            _dump_map(lines, "UsedReturnValuesOfFunction", partial.used_return_values, catalog, "  ")

        _dump_map(lines, "Arguments", result.abi.arguments, catalog, "  ")
        _dump_map(lines, "ReturnValues", result.abi.return_values, catalog, "  ")

        for site_id, site in result.abi.call_sites.items():
            lines.append(f"  CallSite {site_id}:")
            if raw and partial is not None:
                _dump_map(lines, "RegisterArgumentsOfFunctionCall",
                          partial.register_arguments_of_call.get(site_id, {}),
                          catalog, "    ")
                _dump_map(lines, "UsedReturnValuesOfFunctionCall",
                          partial.used_return_values_of_call.get(site_id, {}),
                          catalog, "    ")
                _dump_map(lines, "DeadReturnValuesOfFunctionCall",
                          partial.dead_return_values_of_call.get(site_id, {}),
                          catalog, "    ")
            _dump_map(lines, "Arguments", site.arguments, catalog, "    ")
            _dump_map(lines, "ReturnValues", site.return_values, catalog, "    ")
    return "\n".join(lines) + "\n"


def format_branch_info_csv(report: AnalysisReport) -> str:
    catalog = report.program.catalog
    regs = catalog.abi_registers
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(["name", "site", "kind", "fso"] + [r.name for r in regs])
    for entry, result in report.functions.items():
        kinds: Dict[str, str] = {site: kind.value for site, kind in result.summary.call_edges}
        for site, offset in result.abi.exit_offsets.items():
            states = result.abi.return_values
            writer.writerow(
                [entry, site, kinds.get(site, ""), _fso(offset)]
                + [str(states.get(r, RegisterState.MAYBE)) for r in regs]
            )
    return out.getvalue()


def format_call_graph(report: AnalysisReport, title: Optional[str] = None) -> str:
    return report.call_graph.to_dot(title=title)
