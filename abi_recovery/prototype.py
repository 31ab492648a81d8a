"""
abi_recovery.prototype
======================

Consumer-side view of the results: which registers a rewriter should
turn into explicit arguments and return values.

A register is kept explicit when :func:`~abi_recovery.register_state.should_emit`
holds for its state.  Results of entry points that did not converge are
treated as maximally conservative: every ABI register is kept.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .register_state import RegisterState, should_emit
from .registers import Register, RegisterCatalog
from .summary import CallSiteResult, FunctionResult


@dataclass(frozen=True)
class Prototype:
    arguments: Tuple[Register, ...] = ()
    return_values: Tuple[Register, ...] = ()
    stack_offset: Optional[int] = None

    def __str__(self) -> str:
        args = ", ".join(r.name for r in self.arguments)
        rets = ", ".join(r.name for r in self.return_values) or "void"
        return f"({rets}) ({args})"


def _emitted(states: Mapping[Register, RegisterState], catalog: RegisterCatalog) -> Tuple[Register, ...]:
    return tuple(r for r in catalog.abi_registers if should_emit(states.get(r, RegisterState.MAYBE)))


def elect_function_prototype(result: FunctionResult, catalog: RegisterCatalog) -> Prototype:
    if not result.converged:
        return Prototype(catalog.abi_registers, catalog.abi_registers)
    return Prototype(
        arguments=_emitted(result.abi.arguments, catalog),
        return_values=_emitted(result.abi.return_values, catalog),
        stack_offset=result.summary.elected_stack_offset,
    )


def elect_call_site_prototype(
    site: CallSiteResult,
    catalog: RegisterCatalog,
    converged: bool = True,
) -> Prototype:
    if not converged:
        return Prototype(catalog.abi_registers, catalog.abi_registers)
    return Prototype(
        arguments=_emitted(site.arguments, catalog),
        return_values=_emitted(site.return_values, catalog),
    )
