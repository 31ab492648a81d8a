"""
abi_recovery.register_state
===========================

The register-state lattice used to merge partial knowledge about how a
function (or a call site) uses each architecture register.

Theory
------
Each analysis answers a narrow question ("is this register read before
being written on entry?", "is it dead after the call?", ...) and reports
one of the following values per register:

``MAYBE``
    No information.  The identity of :func:`combine`.
``YES`` / ``NO``
    The register definitely is / is not an argument (or return value).
``YES_OR_DEAD`` / ``NO_OR_DEAD``
    As above, or the register is dead at that point.
``DEAD``
    The register is dead: both ``YES_OR_DEAD`` and ``NO_OR_DEAD`` hold.
``CONTRADICTION``
    Two pieces of evidence disagree irreconcilably.  Absorbing: once it
    appears it never disappears.
``INVALID``
    Sentinel for "never initialised".  It must never reach
    :func:`combine`; doing so is a programming error.

``combine`` is commutative and associative, so the order in which
evidence from different analyses or call sites is merged is irrelevant.

Public API
----------
    RegisterState         - the lattice values
    combine               - the merge operator
    combine_all           - fold ``combine`` over an iterable
    combine_maps          - pointwise merge of two register maps
    is_yes_or_dead        - ``YES``, ``YES_OR_DEAD`` or ``DEAD``
    should_emit           - whether a consumer should keep the register explicit
    RegisterStateMap      - ``Dict[Register, RegisterState]`` alias
"""

from __future__ import annotations

import enum
from typing import Dict, Iterable, Mapping, TYPE_CHECKING

from .errors import InvalidRegisterState

if TYPE_CHECKING:
    from .registers import Register


class RegisterState(enum.Enum):
    """A lattice value describing the role of one register."""

    INVALID       = "Invalid"
    NO            = "No"
    NO_OR_DEAD    = "NoOrDead"
    DEAD          = "Dead"
    YES           = "Yes"
    YES_OR_DEAD   = "YesOrDead"
    MAYBE         = "Maybe"
    CONTRADICTION = "Contradiction"

    def __str__(self) -> str:
        return self.value


RegisterStateMap = Dict["Register", RegisterState]

_S = RegisterState

# Rows not listed for a left operand fall through to CONTRADICTION.
_COMBINE_TABLE: Dict[RegisterState, Dict[RegisterState, RegisterState]] = {
    _S.YES: {
        _S.YES: _S.YES,
        _S.YES_OR_DEAD: _S.YES,
    },
    _S.YES_OR_DEAD: {
        _S.YES: _S.YES,
        _S.YES_OR_DEAD: _S.YES_OR_DEAD,
        _S.DEAD: _S.DEAD,
        _S.NO_OR_DEAD: _S.DEAD,
    },
    _S.NO: {
        _S.NO: _S.NO,
        _S.NO_OR_DEAD: _S.NO,
    },
    _S.NO_OR_DEAD: {
        _S.NO: _S.NO,
        _S.NO_OR_DEAD: _S.NO_OR_DEAD,
        _S.DEAD: _S.DEAD,
        _S.YES_OR_DEAD: _S.DEAD,
    },
    _S.DEAD: {
        _S.DEAD: _S.DEAD,
        _S.NO_OR_DEAD: _S.DEAD,
        _S.YES_OR_DEAD: _S.DEAD,
    },
}


def combine(a: RegisterState, b: RegisterState) -> RegisterState:
    """Merge two pieces of evidence about the same register.

    Raises
    ------
    InvalidRegisterState
        If either operand is ``RegisterState.INVALID``.
    """
    if a is _S.INVALID or b is _S.INVALID:
        raise InvalidRegisterState(
            f"cannot combine {a} with {b}: Invalid is not a lattice operand"
        )
    if a is _S.CONTRADICTION or b is _S.CONTRADICTION:
        return _S.CONTRADICTION
    if a is _S.MAYBE:
        return b
    if b is _S.MAYBE:
        return a
    return _COMBINE_TABLE[a].get(b, _S.CONTRADICTION)


def combine_all(states: Iterable[RegisterState]) -> RegisterState:
    """Fold :func:`combine` over *states*; an empty input yields ``MAYBE``."""
    result = _S.MAYBE
    for state in states:
        result = combine(result, state)
    return result


def combine_maps(
    a: Mapping["Register", RegisterState],
    b: Mapping["Register", RegisterState],
) -> RegisterStateMap:
    """Pointwise :func:`combine`; a register missing on one side is ``MAYBE``."""
    result: RegisterStateMap = {}
    for reg in list(a) + [r for r in b if r not in a]:
        result[reg] = combine(a.get(reg, _S.MAYBE), b.get(reg, _S.MAYBE))
    return result


def is_yes_or_dead(state: RegisterState) -> bool:
    return state in (_S.YES, _S.YES_OR_DEAD, _S.DEAD)


def should_emit(state: RegisterState) -> bool:
    """Should a consumer keep this register explicit in a prototype?

    Contradictory registers are kept: something definitely touches them.
    """
    return is_yes_or_dead(state) or state is _S.CONTRADICTION
