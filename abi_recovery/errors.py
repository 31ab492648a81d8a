"""
abi_recovery.errors
===================

Error taxonomy for the calling-convention recovery engine.

Two families exist:

``InvariantViolation``
    Fatal programming errors: an ``Invalid`` register state reaching the
    lattice, a block or register the lifted program does not define, an
    outlined-body identifier used twice.  These abort the analysis of the
    whole program.

``ProgramParseError``
    The textual lifted-program input could not be read.

Data-dependent problems (contradictory evidence, unanalyzable control
flow, an iteration cap being hit) are *not* errors: they are carried as
values in the analysis results.
"""

from __future__ import annotations

from typing import Any, Optional


class AbiRecoveryError(Exception):
    """Base class for every error raised by :mod:`abi_recovery`."""


class InvariantViolation(AbiRecoveryError):
    """A programming invariant of the engine was broken.  Always fatal."""


class InvalidRegisterState(InvariantViolation):
    """``RegisterState.INVALID`` was used as a lattice operand."""


class MissingCollaboratorData(InvariantViolation):
    """The lifted program lacks data the engine was promised.

    Raised for unknown block identifiers, unknown register names and
    outlined-body identifier collisions.
    """


class ProgramParseError(AbiRecoveryError):
    """Raised when an S-expression cannot be mapped to a lifted program."""

    def __init__(self, message: str, form: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.form = form

    def __str__(self) -> str:
        if self.form is not None:
            return f"{self.message} (in {self.form!r})"
        return self.message
