# tests/test_oracle.py
"""
Tests for the Oracle and its monotone summary merge.
"""

import logging

import pytest

from abi_recovery.oracle import Oracle, merge_summaries
from abi_recovery.registers import Register
from abi_recovery.summary import FunctionSummary, FunctionType

R0, R1, R2 = Register("r0", 4), Register("r1", 4), Register("r2", 4)


def _summary(type_=FunctionType.REGULAR, clobbers=(), fso=None):
    return FunctionSummary("f", type=type_, clobbered_registers=frozenset(clobbers),
                           elected_stack_offset=fso)


class TestMerge:

    def test_first_summary_is_accepted(self):
        new = _summary(clobbers=[R0])
        assert merge_summaries(None, new) == (new, True)

    def test_identical_summary_is_not_a_change(self):
        old = _summary(clobbers=[R0], fso=0)
        kept, changed = merge_summaries(old, _summary(clobbers=[R0], fso=0))
        assert kept is old
        assert not changed

    def test_subsumed_clobbers_are_not_a_change(self):
        old = _summary(clobbers=[R0, R1])
        kept, changed = merge_summaries(old, _summary(clobbers=[R1]))
        assert kept is old and not changed

    def test_clobbers_grow_to_the_union(self):
        kept, changed = merge_summaries(_summary(clobbers=[R0]), _summary(clobbers=[R1]))
        assert changed
        assert kept.clobbered_registers == {R0, R1}

    def test_stack_offset_found(self):
        kept, changed = merge_summaries(_summary(clobbers=[R0]), _summary(fso=8))
        assert changed
        assert kept.elected_stack_offset == 8
        assert kept.clobbered_registers == {R0}

    def test_stack_offset_is_kept_once_known(self):
        kept, changed = merge_summaries(_summary(fso=0), _summary(clobbers=[R2], fso=4))
        assert changed
        assert kept.elected_stack_offset == 0

    def test_stack_offset_is_not_lost(self):
        kept, _ = merge_summaries(_summary(fso=0), _summary(clobbers=[R2]))
        assert kept.elected_stack_offset == 0

    def test_type_narrows(self):
        kept, changed = merge_summaries(_summary(clobbers=[R0]),
                                        _summary(FunctionType.NO_RETURN))
        assert changed
        assert kept.type is FunctionType.NO_RETURN
        assert kept.clobbered_registers == {R0}

    def test_type_never_widens(self, caplog):
        old = _summary(FunctionType.FAKE)
        with caplog.at_level(logging.DEBUG, logger="abi_recovery"):
            kept, changed = merge_summaries(old, _summary(FunctionType.REGULAR, clobbers=[R0]))
        assert kept is old and not changed
        assert "rejected" in caplog.text

    @pytest.mark.parametrize("lower,higher", [
        (FunctionType.REGULAR, FunctionType.NO_RETURN),
        (FunctionType.NO_RETURN, FunctionType.FAKE),
        (FunctionType.INVALID, FunctionType.REGULAR),
    ])
    def test_rank_order(self, lower, higher):
        assert lower.rank < higher.rank


class TestOracle:

    def test_register_and_lookup(self):
        oracle = Oracle()
        assert oracle.get("f") is None
        assert "f" not in oracle
        assert oracle.register_function("f", _summary(clobbers=[R0]))
        assert "f" in oracle
        assert oracle["f"].clobbered_registers == {R0}
        assert list(oracle) == ["f"]
        assert len(oracle) == 1

    def test_commit_counter(self):
        oracle = Oracle()
        oracle.register_function("f", _summary(clobbers=[R0]))
        oracle.register_function("f", _summary(clobbers=[R0]))
        oracle.register_function("f", _summary(clobbers=[R1]))
        assert oracle.commits == 2

    def test_sequence_is_monotone(self):
        oracle = Oracle()
        offers = [
            _summary(clobbers=[R0]),
            _summary(clobbers=[R1], fso=0),
            _summary(FunctionType.NO_RETURN),
            _summary(FunctionType.NO_RETURN, clobbers=[R2]),
            _summary(FunctionType.REGULAR, clobbers=[R0, R1, R2]),
        ]
        previous = None
        for offer in offers:
            oracle.register_function("f", offer)
            current = oracle["f"]
            if previous is not None:
                assert previous.clobbered_registers <= current.clobbered_registers
                assert previous.type.rank <= current.type.rank
            previous = current
        assert oracle["f"].type is FunctionType.NO_RETURN
        assert oracle["f"].clobbered_registers == {R0, R1, R2}

    def test_default_summary(self):
        from abi_recovery.registers import builtin_catalog

        catalog = builtin_catalog("arm")
        summary = Oracle(catalog).default_summary("f")
        assert summary.type is FunctionType.REGULAR
        assert summary.clobbered_registers == set(catalog.abi_registers)
        assert Oracle().default_summary("f").clobbered_registers == frozenset()

    def test_provisional_marks(self):
        oracle = Oracle()
        oracle.mark_provisional("f")
        assert oracle.is_provisional("f")
        oracle.clear()
        assert not oracle.is_provisional("f")
        assert oracle.commits == 0
