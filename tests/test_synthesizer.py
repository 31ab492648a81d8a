# tests/test_synthesizer.py
"""
Tests for the summary synthesizer: function type, call edges, stack
offset election and the combined ABI maps.
"""

import pytest

from abi_recovery.abi_analyses import run_abi_analyses
from abi_recovery.oracle import Oracle
from abi_recovery.program import EdgeKind
from abi_recovery.register_state import RegisterState
from abi_recovery.summary import FunctionSummary, FunctionType
from abi_recovery.synthesizer import SummarySynthesizer, classify_function
from tests.conftest import (
    LEAF_READS_R0,
    ONE_BROKEN_RETURN,
    WRITES_R1_ON_ENTRY,
    load,
    outline,
    regs,
)

S = RegisterState


def _synthesize(prog, entry, oracle=None):
    body = outline(prog, entry, oracle)
    partial = run_abi_analyses(body, prog.catalog.stack_pointer)
    return SummarySynthesizer().synthesize(body, partial)


class TestClassification:

    def test_regular(self):
        prog = load(LEAF_READS_R0)
        assert classify_function(outline(prog, "f0")) is FunctionType.REGULAR

    @pytest.mark.parametrize("exit_form", ["(killer)", "(longjmp)", "(unreachable)"])
    def test_noreturn(self, exit_form):
        prog = load(f"(block f (write r0) {exit_form}) (entry f)")
        assert classify_function(outline(prog, "f")) is FunctionType.NO_RETURN

    def test_fake(self):
        prog = load("(block f (write r0) (fake-return)) (entry f)")
        assert classify_function(outline(prog, "f")) is FunctionType.FAKE

    def test_fake_with_return_is_regular(self):
        prog = load("""
          (block f (branch a b))
          (block a (fake-return))
          (block b (return))
          (entry f)
        """)
        assert classify_function(outline(prog, "f")) is FunctionType.REGULAR

    def test_tail_call_to_returning_callee(self):
        prog = load("(block f (tail-call g)) (block g (return)) (entry f g)")
        assert classify_function(outline(prog, "f")) is FunctionType.REGULAR

    def test_tail_call_to_noreturn_callee(self):
        prog = load("(block f (tail-call g)) (block g (killer)) (entry f g)")
        oracle = Oracle(prog.catalog)
        oracle.register_function("g", FunctionSummary("g", type=FunctionType.NO_RETURN))
        assert classify_function(outline(prog, "f", oracle)) is FunctionType.NO_RETURN

    def test_call_to_noreturn_callee(self, caller_program):
        oracle = Oracle(caller_program.catalog)
        oracle.register_function("f", FunctionSummary("f", type=FunctionType.NO_RETURN))
        body = outline(caller_program, "m0", oracle)
        assert classify_function(body) is FunctionType.NO_RETURN


class TestSummary:

    def test_leaf_summary(self):
        prog = load(LEAF_READS_R0)
        summary, _ = _synthesize(prog, "f0")
        assert summary.entry == "f0"
        assert summary.type is FunctionType.REGULAR
        assert summary.clobbered_registers == regs(prog, "r0")
        assert summary.elected_stack_offset == 0
        assert summary.call_edges == {("f0", EdgeKind.RETURN)}

    def test_broken_return_edge(self):
        prog = load(ONE_BROKEN_RETURN)
        summary, abi = _synthesize(prog, "h0")
        assert summary.elected_stack_offset == 0
        assert summary.edges_of_kind(EdgeKind.BROKEN_RETURN) == {"h3"}
        assert summary.edges_of_kind(EdgeKind.RETURN) == {"h1", "h2"}
        assert abi.exit_offsets == {"h1": 0, "h2": 0, "h3": -4}

    def test_call_edges_include_call_sites(self, caller_program):
        summary, _ = _synthesize(caller_program, "m0")
        assert summary.call_edges == {
            ("m0", EdgeKind.DIRECT_CALL),
            ("m_ret", EdgeKind.RETURN),
        }

    def test_fake_integration_edges(self, fake_program):
        summary, _ = _synthesize(fake_program, "main")
        assert summary.call_edges == {
            ("main", EdgeKind.FAKE_CALL),
            ("helper<main", EdgeKind.DIRECT_CALL),
            ("m_ret", EdgeKind.RETURN),
        }


class TestABIResults:

    def test_leaf_arguments_and_return_values(self):
        prog = load(LEAF_READS_R0)
        _, abi = _synthesize(prog, "f0")
        r0, r1 = prog.catalog.lookup("r0"), prog.catalog.lookup("r1")
        assert abi.arguments[r0] is S.YES
        assert abi.arguments[r1] is S.MAYBE
        assert abi.return_values[r0] is S.YES
        assert abi.return_values[r1] is S.NO
        assert abi.call_sites == {}

    def test_dead_argument_is_not_yes(self):
        prog = load(WRITES_R1_ON_ENTRY)
        _, abi = _synthesize(prog, "g0")
        assert abi.arguments[prog.catalog.lookup("r1")] is S.NO_OR_DEAD

    def test_call_site_maps(self, caller_program):
        oracle = Oracle(caller_program.catalog)
        oracle.register_function("f", FunctionSummary(
            "f", clobbered_registers=frozenset(regs(caller_program, "r0")),
            elected_stack_offset=0,
        ))
        _, abi = _synthesize(caller_program, "m0", oracle)
        site = abi.call_sites["m0"]
        r0, r1 = caller_program.catalog.lookup("r0"), caller_program.catalog.lookup("r1")
        assert site.arguments[r0] is S.YES_OR_DEAD
        assert site.return_values[r0] is S.YES
        assert site.return_values[r1] is S.NO
