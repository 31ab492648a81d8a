"""
abi_recovery - Calling-Convention Recovery for Lifted Binaries
==============================================================

Infers, for every function entry point of a lifted program, which
registers carry arguments, which carry return values, which are clobbered,
and how far the stack pointer moves across the function.

Core modules
------------
register_state
    The eight-valued register-state lattice and its ``combine`` operator.
registers
    Register descriptions, ABI register catalogs and storage resolution.
program
    Blocks, instructions and typed edges of a lifted program.
callgraph
    Entry-point call graph with Tarjan SCC detection.
summary
    Function summaries and ABI result records.
oracle
    Shared store of function summaries with monotone merging.
outlining
    Per-entry-point analyzable bodies with call-site effects materialized.
dataflow
    First-access worklist engine over outlined bodies.
abi_analyses
    Value tracking and the six register analyses.
synthesizer
    Combination of the partial results into a summary.
fixpoint
    Interprocedural fixpoint driver.
prototype
    Election of explicit argument / return-value registers.
ir_reader
    S-expression reader for lifted programs.
report
    Text, CSV and DOT renderings of analysis reports.

Quick start
-----------
>>> from abi_recovery import parse_program, analyze_program
>>> report = analyze_program(parse_program(text))       # doctest: +SKIP
>>> report.summary("main").clobbered_registers           # doctest: +SKIP
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "AbiRecoveryError",
        "InvariantViolation",
        "InvalidRegisterState",
        "MissingCollaboratorData",
        "ProgramParseError",
    ],
    "register_state": [
        "RegisterState",
        "combine",
        "combine_all",
        "combine_maps",
        "should_emit",
    ],
    "registers": [
        "Register",
        "RegisterCatalog",
        "StorageResolver",
        "CatalogResolver",
        "builtin_catalog",
    ],
    "program": [
        "Op",
        "Instruction",
        "EdgeKind",
        "Terminator",
        "Block",
        "Program",
        "make_block",
    ],
    "callgraph": [
        "CallGraph",
        "CallGraphNode",
        "CallGraphEdge",
        "build_callgraph",
    ],
    "summary": [
        "FunctionType",
        "FunctionSummary",
        "CallSiteResult",
        "ABIResults",
        "FunctionResult",
    ],
    "oracle": [
        "Oracle",
        "merge_summaries",
    ],
    "outlining": [
        "CalleeEffect",
        "OutlinedFunction",
        "OutlinedFunctionBuilder",
    ],
    "dataflow": [
        "Access",
        "ForwardFirstAccess",
        "BackwardFirstDefinition",
    ],
    "abi_analyses": [
        "ValueTracking",
        "UsedArgumentsOfFunction",
        "DeadRegisterArgumentsOfFunction",
        "UsedReturnValuesOfFunction",
        "UsedReturnValuesOfFunctionCall",
        "DeadReturnValuesOfFunctionCall",
        "RegisterArgumentsOfFunctionCall",
        "PartialResults",
        "run_abi_analyses",
    ],
    "synthesizer": [
        "SummarySynthesizer",
        "classify_function",
    ],
    "fixpoint": [
        "AnalysisOptions",
        "AnalysisReport",
        "CFEPAnalyzer",
        "InterproceduralDriver",
        "analyze_program",
    ],
    "prototype": [
        "Prototype",
        "elect_function_prototype",
        "elect_call_site_prototype",
    ],
    "ir_reader": [
        "read_program",
        "parse_program",
        "parse_program_file",
    ],
    "report": [
        "format_report",
        "format_branch_info_csv",
        "format_call_graph",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"abi_recovery: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(f"abi_recovery.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, obj)
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all submodules re-exported by the package."""
    return sorted(_CORE_MODULES)
