# tests/test_program.py
"""
Tests for the lifted-program model.
"""

import pytest

from abi_recovery.errors import MissingCollaboratorData
from abi_recovery.program import (
    EdgeKind,
    Instruction,
    Op,
    Program,
    Terminator,
    adjust_sp,
    copy,
    make_block,
    read,
    reload,
    spill,
    write,
)
from abi_recovery.registers import builtin_catalog

CAT = builtin_catalog("arm")
R0, R1 = CAT.lookup("r0"), CAT.lookup("r1")


class TestInstructions:

    @pytest.mark.parametrize("instr,reads,writes", [
        (read(R0), {R0}, set()),
        (write(R0), set(), {R0}),
        (copy(R0, R1), {R1}, {R0}),
        (spill(R0, 8), {R0}, set()),
        (reload(R0, 8), set(), {R0}),
        (adjust_sp(-4), set(), set()),
        (Instruction(Op.CLOBBER, register=R1), set(), {R1}),
        (Instruction(Op.HAVOC, havoc=(R0, R1)), set(), {R0, R1}),
        (Instruction(Op.PRE_CALL, site="s"), set(), set()),
    ])
    def test_reads_and_writes(self, instr, reads, writes):
        assert instr.reads() == reads
        assert instr.writes() == writes

    def test_call_markers(self):
        assert Instruction(Op.POST_CALL, site="s").is_call_marker
        assert not write(R0).is_call_marker

    def test_str(self):
        assert str(copy(R0, R1)) == "copy r0 r1"
        assert str(adjust_sp(None)) == "adjust-sp ?"


class TestEdgeKind:

    def test_calls(self):
        calls = {k for k in EdgeKind if k.is_call}
        assert calls == {
            EdgeKind.DIRECT_CALL, EdgeKind.INDIRECT_CALL,
            EdgeKind.TAIL_CALL, EdgeKind.FAKE_CALL,
        }

    def test_dead_ends(self):
        assert {k for k in EdgeKind if k.is_dead_end} == {
            EdgeKind.LONGJMP, EdgeKind.KILLER, EdgeKind.UNREACHABLE,
        }
        assert EdgeKind.RETURN.is_exit
        assert not EdgeKind.DIRECT_CALL.is_exit


class TestProgram:

    def _program(self):
        prog = Program(CAT)
        prog.add_block(make_block("f", [read(R0)], Terminator(EdgeKind.DIRECT_CALL,
                                                              callee="g", return_to="f1")))
        prog.add_block(make_block("f1", [], Terminator(EdgeKind.DIRECT_BRANCH,
                                                       targets=("f2", "f"))))
        prog.add_block(make_block("f2", [], Terminator(EdgeKind.RETURN)))
        prog.add_block(make_block("g", [], Terminator(EdgeKind.RETURN)))
        prog.add_entry_point("f")
        prog.add_entry_point("g")
        return prog

    def test_reachable_blocks_skip_callees(self):
        assert self._program().reachable_blocks("f") == ["f", "f1", "f2"]

    def test_validate(self):
        prog = self._program()
        prog.validate()
        prog.add_block(make_block("bad", [], Terminator(EdgeKind.DIRECT_BRANCH,
                                                        targets=("nowhere",))))
        with pytest.raises(MissingCollaboratorData):
            prog.validate()

    def test_entry_points(self):
        prog = self._program()
        assert prog.is_entry_point("g")
        assert not prog.is_entry_point("f1")
        assert not prog.is_entry_point(None)
