"""
abi_recovery.oracle
===================

The Oracle: best-known-so-far table of per-entry-point summaries.

The Oracle is passed explicitly to everything that needs it.  Readers
get frozen :class:`~abi_recovery.summary.FunctionSummary` objects, so no
mutable alias of a committed summary ever escapes.  The only writer is
:meth:`Oracle.register_function`, which enforces the monotonicity rule:

* the first summary of an entry point is always accepted;
* a summary whose type ranks higher (``Regular < NoReturn < Fake``) is
  accepted, a lower-ranked one is rejected so the type never flips back;
* with an unchanged type, a summary is accepted when it clobbers a
  register the committed one does not, or when it elects a stack offset
  where the committed one had none;
* on acceptance the committed clobber set becomes the union of both.

Every accepted summary therefore grows a finite per-entry-point lattice
(types times subsets of the register catalog), which bounds the number
of commits the fixpoint driver can make.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterator, Optional, Set, Tuple

from .registers import RegisterCatalog
from .summary import FunctionSummary

logger = logging.getLogger(__name__)


def merge_summaries(
    old: Optional[FunctionSummary],
    new: FunctionSummary,
) -> Tuple[FunctionSummary, bool]:
    """Apply the monotonicity rule.

    Returns
    -------
    (summary, changed)
        The summary to keep and whether it differs from *old*.
    """
    if old is None:
        return new, True

    if new.type.rank < old.type.rank:
        logger.debug(
            "%s: rejected %s summary, %s already committed",
            new.entry, new.type, old.type,
        )
        return old, False

    type_narrowed = new.type.rank > old.type.rank
    clobbers_grew = not new.clobbered_registers <= old.clobbered_registers
    offset_found = (
        old.elected_stack_offset is None
        and new.elected_stack_offset is not None
    )
    if not (type_narrowed or clobbers_grew or offset_found):
        return old, False

    offset = old.elected_stack_offset
    if new.elected_stack_offset is not None and (offset is None or type_narrowed):
        offset = new.elected_stack_offset
    merged = replace(
        new,
        clobbered_registers=old.clobbered_registers | new.clobbered_registers,
        elected_stack_offset=offset,
    )
    return merged, True


class Oracle:
    """Entry point id -> committed :class:`FunctionSummary`."""

    def __init__(self, catalog: Optional[RegisterCatalog] = None) -> None:
        self.catalog = catalog
        self._summaries: Dict[str, FunctionSummary] = {}
        self._provisional: Set[str] = set()
        self.commits = 0

    def get(self, entry: str) -> Optional[FunctionSummary]:
        """The committed summary of *entry*, or ``None``."""
        return self._summaries.get(entry)

    def __getitem__(self, entry: str) -> FunctionSummary:
        return self._summaries[entry]

    def __contains__(self, entry: object) -> bool:
        return entry in self._summaries

    def __iter__(self) -> Iterator[str]:
        return iter(self._summaries)

    def __len__(self) -> int:
        return len(self._summaries)

    def items(self):
        return self._summaries.items()

    def default_summary(self, entry: str) -> FunctionSummary:
        """The view used for an entry point that has no summary at all."""
        if self.catalog is None:
            return FunctionSummary(entry=entry)
        return FunctionSummary.conservative(entry, self.catalog)

    def register_function(self, entry: str, candidate: FunctionSummary) -> bool:
        """Offer *candidate* for *entry*; return ``True`` if a commit happened."""
        kept, changed = merge_summaries(self._summaries.get(entry), candidate)
        if changed:
            self._summaries[entry] = kept
            self.commits += 1
            logger.info("committed %r", kept)
        return changed

    # ----- provisional results ----------------------------------------------

    def mark_provisional(self, entry: str) -> None:
        self._provisional.add(entry)

    def is_provisional(self, entry: str) -> bool:
        return entry in self._provisional

    def clear(self) -> None:
        self._summaries.clear()
        self._provisional.clear()
        self.commits = 0

    def __repr__(self) -> str:
        return f"Oracle(summaries={len(self._summaries)}, commits={self.commits})"
