"""abi_recovery/ir_reader.py – S-expression → lifted :class:`Program` reader.

Converts the output of ``sexpdata.loads`` (nested Python lists,
:class:`sexpdata.Symbol`, strings, ints) into a
:class:`~abi_recovery.program.Program`.

Design principles
-----------------
* **Head-symbol dispatch** – every instruction and terminator form
  ``(tag ...)`` is dispatched on ``tag`` to a helper registered with
  :func:`_register`.
* **Fail-fast** – anything unexpected raises
  :class:`~abi_recovery.errors.ProgramParseError` carrying the offending
  form; nothing is silently ignored.
* **Registers resolved once** – register names go through a
  :class:`~abi_recovery.registers.CatalogResolver`, so an unknown name is
  reported where it is used.

Surface syntax
--------------
::

    (program
      (arch x86-64)                       ;; or the three forms below
      (registers (r0 4) (r1 4) (sp 4) (pc 4))
      (stack-pointer sp)
      (program-counter pc)

      (block <id> <instr>... <terminator>)
      (entry <id>...))

    ;; instructions
    (read r) (write r) (copy dst src) (spill r slot) (reload r slot)
    (adjust-sp n) (adjust-sp ?)

    ;; terminators
    (branch <id>...)                 (return)
    (call <callee> <return-to>)      (broken-return)
    (indirect-call <return-to> [:target <callee>])
    (tail-call [<callee>])           (fake-return)
    (fake-call <callee> <return-to>) (longjmp) (killer) (unreachable)

The symbols ``t`` and ``nil`` are reserved by ``sexpdata`` and cannot be
used as names.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import sexpdata
from sexpdata import Symbol

from .errors import AbiRecoveryError, ProgramParseError
from .program import (
    Block,
    EdgeKind,
    Instruction,
    Program,
    Terminator,
    adjust_sp,
    copy,
    read,
    reload,
    spill,
    write,
)
from .registers import CatalogResolver, Register, RegisterCatalog, builtin_catalog

logger = logging.getLogger(__name__)

# Type aliases for raw sexpdata output
Sexp = Any  # Union[list, Symbol, str, int, float]


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _sym_name(s: Sexp) -> str:
    """Extract the string name from a ``sexpdata.Symbol``, or raise."""
    if isinstance(s, Symbol):
        return str(s) if isinstance(s, str) else s.value()
    raise ProgramParseError(f"Expected symbol, got {type(s).__name__}: {s!r}")


def _expect_list(s: Sexp, *, min_len: int = 0, tag: Optional[str] = None) -> list:
    """Assert that *s* is a list, optionally with a minimum length and head tag."""
    if not isinstance(s, list):
        raise ProgramParseError(
            f"Expected list{f' ({tag} ...)' if tag else ''}, "
            f"got {type(s).__name__}: {s!r}"
        )
    if len(s) < min_len:
        raise ProgramParseError(
            f"List too short: expected at least {min_len} elements, "
            f"got {len(s)}", s,
        )
    if tag is not None and _head(s) != tag:
        raise ProgramParseError(f"Expected ({tag} ...)", s)
    return s


def _head(s: list) -> str:
    """Return the head symbol name of a list form ``(tag ...)``."""
    if not s:
        raise ProgramParseError("Unexpected empty list")
    return _sym_name(s[0])


def _as_id(s: Sexp) -> str:
    """Coerce a block identifier: symbol, string literal or bare integer."""
    if isinstance(s, Symbol):
        return _sym_name(s)
    if isinstance(s, str):
        return s
    if isinstance(s, int) and not isinstance(s, bool):
        return str(s)
    raise ProgramParseError(f"Expected identifier, got {type(s).__name__}: {s!r}")


def _as_int(s: Sexp) -> int:
    if isinstance(s, int) and not isinstance(s, bool):
        return s
    raise ProgramParseError(f"Expected integer, got {type(s).__name__}: {s!r}")


def _arity(form: list, *counts: int) -> None:
    if len(form) - 1 not in counts:
        expected = " or ".join(str(c) for c in counts)
        raise ProgramParseError(
            f"({_head(form)} ...) takes {expected} operand(s), got {len(form) - 1}",
            form,
        )


def _register(table: dict, tag: str):
    """Decorator: register a parser function under *tag* in *table*."""
    def deco(fn):
        table[tag] = fn
        return fn
    return deco


_Resolve = Callable[[Sexp], Register]

_INSTRUCTIONS: Dict[str, Callable[[list, _Resolve], Instruction]] = {}
_TERMINATORS: Dict[str, Callable[[list], Terminator]] = {}


# ═══════════════════════════════════════════════════════════════════════
#  Instructions
# ═══════════════════════════════════════════════════════════════════════

@_register(_INSTRUCTIONS, "read")
def _parse_read(form: list, reg: _Resolve) -> Instruction:
    _arity(form, 1)
    return read(reg(form[1]))


@_register(_INSTRUCTIONS, "write")
def _parse_write(form: list, reg: _Resolve) -> Instruction:
    _arity(form, 1)
    return write(reg(form[1]))


@_register(_INSTRUCTIONS, "copy")
def _parse_copy(form: list, reg: _Resolve) -> Instruction:
    _arity(form, 2)
    return copy(reg(form[1]), reg(form[2]))


@_register(_INSTRUCTIONS, "spill")
def _parse_spill(form: list, reg: _Resolve) -> Instruction:
    _arity(form, 2)
    return spill(reg(form[1]), _as_int(form[2]))


@_register(_INSTRUCTIONS, "reload")
def _parse_reload(form: list, reg: _Resolve) -> Instruction:
    _arity(form, 2)
    return reload(reg(form[1]), _as_int(form[2]))


@_register(_INSTRUCTIONS, "adjust-sp")
def _parse_adjust_sp(form: list, reg: _Resolve) -> Instruction:
    _arity(form, 1)
    if isinstance(form[1], Symbol) and _sym_name(form[1]) == "?":
        return adjust_sp(None)
    return adjust_sp(_as_int(form[1]))


# ═══════════════════════════════════════════════════════════════════════
#  Terminators
# ═══════════════════════════════════════════════════════════════════════

@_register(_TERMINATORS, "branch")
def _parse_branch(form: list) -> Terminator:
    if len(form) < 2:
        raise ProgramParseError("(branch ...) needs at least one target", form)
    return Terminator(EdgeKind.DIRECT_BRANCH,
                      targets=tuple(_as_id(t) for t in form[1:]))


@_register(_TERMINATORS, "call")
def _parse_call(form: list) -> Terminator:
    _arity(form, 2)
    return Terminator(EdgeKind.DIRECT_CALL, callee=_as_id(form[1]),
                      return_to=_as_id(form[2]))


@_register(_TERMINATORS, "fake-call")
def _parse_fake_call(form: list) -> Terminator:
    _arity(form, 2)
    return Terminator(EdgeKind.FAKE_CALL, callee=_as_id(form[1]),
                      return_to=_as_id(form[2]))


@_register(_TERMINATORS, "indirect-call")
def _parse_indirect_call(form: list) -> Terminator:
    _arity(form, 1, 3)
    callee = None
    if len(form) == 4:
        if not isinstance(form[2], Symbol) or _sym_name(form[2]) != ":target":
            raise ProgramParseError("expected :target keyword", form)
        callee = _as_id(form[3])
    return Terminator(EdgeKind.INDIRECT_CALL, callee=callee,
                      return_to=_as_id(form[1]))


@_register(_TERMINATORS, "tail-call")
def _parse_tail_call(form: list) -> Terminator:
    _arity(form, 0, 1)
    callee = _as_id(form[1]) if len(form) == 2 else None
    return Terminator(EdgeKind.TAIL_CALL, callee=callee)


def _simple_exit(kind: EdgeKind) -> Callable[[list], Terminator]:
    def parse(form: list) -> Terminator:
        _arity(form, 0)
        return Terminator(kind)
    return parse


for _tag, _kind in (
    ("return", EdgeKind.RETURN),
    ("broken-return", EdgeKind.BROKEN_RETURN),
    ("fake-return", EdgeKind.FAKE_RETURN),
    ("longjmp", EdgeKind.LONGJMP),
    ("killer", EdgeKind.KILLER),
    ("unreachable", EdgeKind.UNREACHABLE),
):
    _register(_TERMINATORS, _tag)(_simple_exit(_kind))


# ═══════════════════════════════════════════════════════════════════════
#  Program
# ═══════════════════════════════════════════════════════════════════════

_HEADER_TAGS = ("arch", "registers", "stack-pointer", "program-counter")


def _parse_catalog(forms: List[list]) -> RegisterCatalog:
    by_tag: Dict[str, list] = {}
    for form in forms:
        tag = _head(form)
        if tag in by_tag:
            raise ProgramParseError(f"duplicate ({tag} ...) form", form)
        by_tag[tag] = form

    if "arch" in by_tag:
        form = by_tag["arch"]
        _arity(form, 1)
        if len(by_tag) > 1:
            raise ProgramParseError("(arch ...) excludes explicit register forms", form)
        return builtin_catalog(_as_id(form[1]))

    missing = [t for t in _HEADER_TAGS[1:] if t not in by_tag]
    if missing:
        raise ProgramParseError(
            f"missing register description: {', '.join(missing)} "
            f"(or use (arch <name>))"
        )
    regs: List[Register] = []
    for spec in by_tag["registers"][1:]:
        spec = _expect_list(spec, min_len=2)
        _arity(spec, 1)
        regs.append(Register(_as_id(spec[0]), _as_int(spec[1])))
    sp_form = by_tag["stack-pointer"]
    pc_form = by_tag["program-counter"]
    _arity(sp_form, 1)
    _arity(pc_form, 1)
    return RegisterCatalog("custom", regs,
                           stack_pointer=_as_id(sp_form[1]),
                           program_counter=_as_id(pc_form[1]))


def _parse_block(form: list, resolve: _Resolve) -> Block:
    _expect_list(form, min_len=3, tag="block")
    block_id = _as_id(form[1])
    *body, last = form[2:]
    instructions: List[Instruction] = []
    for item in body:
        item = _expect_list(item, min_len=1)
        parser = _INSTRUCTIONS.get(_head(item))
        if parser is None:
            raise ProgramParseError(
                f"unknown instruction in block {block_id!r}", item)
        instructions.append(parser(item, resolve))
    last = _expect_list(last, min_len=1)
    term_parser = _TERMINATORS.get(_head(last))
    if term_parser is None:
        raise ProgramParseError(
            f"block {block_id!r} must end with a terminator", last)
    return Block(block_id, instructions, term_parser(last))


def read_program(sexp: Sexp) -> Program:
    """Build a :class:`Program` from an already-parsed S-expression."""
    top = _expect_list(sexp, min_len=1, tag="program")
    header: List[list] = []
    blocks: List[list] = []
    entries: List[list] = []
    for form in top[1:]:
        form = _expect_list(form, min_len=1)
        tag = _head(form)
        if tag in _HEADER_TAGS:
            header.append(form)
        elif tag == "block":
            blocks.append(form)
        elif tag == "entry":
            entries.append(form)
        else:
            raise ProgramParseError(f"unknown top-level form ({tag} ...)", form)

    try:
        catalog = _parse_catalog(header)
        resolver = CatalogResolver(catalog)

        def resolve(s: Sexp) -> Register:
            return resolver.resolve(_as_id(s))

        program = Program(catalog)
        for form in blocks:
            program.add_block(_parse_block(form, resolve))
        for form in entries:
            for item in form[1:]:
                program.add_entry_point(_as_id(item))
        program.validate()
    except ProgramParseError:
        raise
    except AbiRecoveryError as exc:
        raise ProgramParseError(str(exc)) from exc

    logger.debug("read %r", program)
    return program


def parse_program(text: str) -> Program:
    """Parse a lifted program from S-expression *text*."""
    try:
        sexp = sexpdata.loads(text)
    except Exception as exc:
        raise ProgramParseError(f"malformed S-expression: {exc}") from exc
    return read_program(sexp)


def parse_program_file(path: Union[str, Path]) -> Program:
    return parse_program(Path(path).read_text(encoding="utf-8"))
