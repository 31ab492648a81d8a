"""
abi_recovery.registers
======================

Architecture registers, register catalogs and the storage-location
resolver.

A :class:`RegisterCatalog` is the fixed list of registers of a target
architecture together with the identity of its stack-pointer and
program-counter registers.  Every analysis in this package works over
:attr:`RegisterCatalog.abi_registers`, i.e. every register except those
two.

The :class:`StorageResolver` protocol is the only way the rest of the
package turns a register *name* into a :class:`Register`; an unknown name
is a broken precondition of the lifted program and raises
:class:`~abi_recovery.errors.MissingCollaboratorData`.

Built-in catalogs
-----------------
``x86-64``, ``arm`` and ``aarch64`` are available through
:func:`builtin_catalog`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .errors import MissingCollaboratorData


@dataclass(frozen=True, slots=True)
class Register:
    """An architecture register: immutable identity plus byte size."""

    name: str
    size: int

    def __str__(self) -> str:
        return self.name


class RegisterCatalog:
    """The registers of one target architecture.

    Parameters
    ----------
    name:
        Architecture name (``"x86-64"``, ...).
    registers:
        All registers, in the order dumps and prototypes list them.
    stack_pointer / program_counter:
        Names of the two special registers; both must be in *registers*.
    """

    __slots__ = ("name", "registers", "stack_pointer", "program_counter",
                 "_by_name", "_order")

    def __init__(
        self,
        name: str,
        registers: Sequence[Register],
        stack_pointer: str,
        program_counter: str,
    ) -> None:
        self.name = name
        self.registers: Tuple[Register, ...] = tuple(registers)
        self._by_name: Dict[str, Register] = {r.name: r for r in self.registers}
        if len(self._by_name) != len(self.registers):
            raise MissingCollaboratorData(
                f"catalog {name!r} lists a register name more than once"
            )
        self._order: Dict[Register, int] = {
            r: i for i, r in enumerate(self.registers)
        }
        self.stack_pointer: Register = self.lookup(stack_pointer)
        self.program_counter: Register = self.lookup(program_counter)

    @property
    def abi_registers(self) -> Tuple[Register, ...]:
        """Registers the calling-convention analyses reason about."""
        special = (self.stack_pointer, self.program_counter)
        return tuple(r for r in self.registers if r not in special)

    def lookup(self, name: str) -> Register:
        try:
            return self._by_name[name]
        except KeyError:
            raise MissingCollaboratorData(
                f"register {name!r} is not defined by catalog {self.name!r}"
            ) from None

    def get(self, name: str) -> Optional[Register]:
        return self._by_name.get(name)

    def sort(self, registers: Iterable[Register]) -> List[Register]:
        """Return *registers* in catalog order."""
        return sorted(registers, key=lambda r: self._order.get(r, len(self._order)))

    def __contains__(self, register: object) -> bool:
        return register in self._order

    def __iter__(self):
        return iter(self.registers)

    def __len__(self) -> int:
        return len(self.registers)

    def __repr__(self) -> str:
        return (
            f"RegisterCatalog({self.name!r}, registers={len(self.registers)}, "
            f"sp={self.stack_pointer.name}, pc={self.program_counter.name})"
        )


# ---------------------------------------------------------------------------
# Storage-location resolver
# ---------------------------------------------------------------------------

@runtime_checkable
class StorageResolver(Protocol):
    """Maps register names to the register storage the IR refers to."""

    def resolve(self, name: str) -> Register:
        ...


class CatalogResolver:
    """:class:`StorageResolver` backed by a :class:`RegisterCatalog`.

    Resolved names are cached so every lookup of the same name yields the
    very same :class:`Register` object.
    """

    def __init__(self, catalog: RegisterCatalog) -> None:
        self.catalog = catalog
        self._slots: Dict[str, Register] = {}

    def resolve(self, name: str) -> Register:
        slot = self._slots.get(name)
        if slot is None:
            slot = self.catalog.lookup(name)
            self._slots[name] = slot
        return slot


# ---------------------------------------------------------------------------
# Built-in catalogs
# ---------------------------------------------------------------------------

def _regs(names: Iterable[str], size: int) -> List[Register]:
    return [Register(n, size) for n in names]


def _x86_64() -> RegisterCatalog:
    gprs = ["rax", "rbx", "rcx", "rdx", "rbp", "rsp", "rsi", "rdi",
            "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15"]
    xmm = [f"xmm{i}" for i in range(8)]
    regs = _regs(gprs, 8) + _regs(xmm, 16) + [Register("pc", 8)]
    return RegisterCatalog("x86-64", regs, stack_pointer="rsp",
                           program_counter="pc")


def _arm() -> RegisterCatalog:
    regs = _regs([f"r{i}" for i in range(13)] + ["sp", "lr", "pc"], 4)
    return RegisterCatalog("arm", regs, stack_pointer="sp",
                           program_counter="pc")


def _aarch64() -> RegisterCatalog:
    regs = _regs([f"x{i}" for i in range(31)] + ["sp", "pc"], 8)
    return RegisterCatalog("aarch64", regs, stack_pointer="sp",
                           program_counter="pc")


_BUILTIN_CATALOGS = {
    "x86-64": _x86_64,
    "x86_64": _x86_64,
    "arm": _arm,
    "aarch64": _aarch64,
}


def builtin_catalog(arch: str) -> RegisterCatalog:
    """Return a fresh catalog for a supported architecture name."""
    try:
        factory = _BUILTIN_CATALOGS[arch.lower()]
    except KeyError:
        raise MissingCollaboratorData(
            f"no built-in register catalog for architecture {arch!r}; "
            f"known: {', '.join(sorted(_BUILTIN_CATALOGS))}"
        ) from None
    return factory()
