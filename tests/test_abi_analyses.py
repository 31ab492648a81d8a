# tests/test_abi_analyses.py
"""
Tests for the first-access engine, value tracking and the six
per-node ABI analyses.
"""

import pytest

from abi_recovery.abi_analyses import (
    DeadRegisterArgumentsOfFunction,
    UsedArgumentsOfFunction,
    ValueTracking,
    _CallSiteAnalysis,
    elect_stack_offset,
    run_abi_analyses,
)
from abi_recovery.dataflow import Access, BackwardFirstDefinition, ForwardFirstAccess
from abi_recovery.oracle import Oracle
from abi_recovery.register_state import RegisterState
from abi_recovery.summary import FunctionSummary
from tests.conftest import (
    CALLER_AND_CALLEE,
    LEAF_READS_R0,
    ONE_BROKEN_RETURN,
    SAVE_RESTORE,
    UNRESOLVED_INDIRECT_CALL,
    WRITES_R1_ON_ENTRY,
    load,
    outline,
    regs,
)

S = RegisterState


def _by_name(state_map):
    return {r.name: s for r, s in state_map.items()}


def _partial(text, entry, oracle=None):
    prog = load(text)
    body = outline(prog, entry, oracle)
    return run_abi_analyses(body, prog.catalog.stack_pointer)


def _known_callee_oracle(prog):
    oracle = Oracle(prog.catalog)
    oracle.register_function("f", FunctionSummary(
        "f", clobbered_registers=frozenset(regs(prog, "r0")), elected_stack_offset=0,
    ))
    return oracle


# ── First-access engine ──────────────────────────────────────────

class TestFirstAccess:

    def test_read_before_write_in_same_instruction(self):
        prog = load("(block f (copy r0 r0) (return)) (entry f)")
        body = outline(prog, "f")
        out = ForwardFirstAccess(body).run({body.entry: frozenset(regs(prog, "r0"))})
        assert out == {prog.catalog.lookup("r0"): frozenset({Access.READ})}

    def test_paths_are_unioned(self):
        prog = load("""
          (block f (branch a b))
          (block a (read r0) (return))
          (block b (write r0) (killer))
          (entry f)
        """)
        body = outline(prog, "f")
        analysis = ForwardFirstAccess(body)
        out = analysis.run({body.entry: frozenset(body.registers)})
        r0, r1 = prog.catalog.lookup("r0"), prog.catalog.lookup("r1")
        assert out[r0] == {Access.READ, Access.WRITE}
        assert out[r1] == {Access.RETURN, Access.DEAD_END}
        assert analysis.converged

    def test_call_boundary_stops_forward_search(self, caller_program):
        body = outline(caller_program, "m0")
        out = ForwardFirstAccess(body).run({body.entry: frozenset(regs(caller_program, "r1"))})
        assert out[caller_program.catalog.lookup("r1")] == {Access.BOUNDARY}

    def test_backward_crosses_known_call(self):
        prog = load(CALLER_AND_CALLEE)
        body = outline(prog, "m0", _known_callee_oracle(prog))
        ret = body.exit_nodes()[0]
        out = BackwardFirstDefinition(body).run({ret.id: frozenset(body.registers)})
        r0, r1 = prog.catalog.lookup("r0"), prog.catalog.lookup("r1")
        assert out[r0] == {Access.CALLEE_WRITE}
        assert out[r1] == {Access.ENTRY}

    def test_iteration_cap_marks_truncated(self):
        prog = load("""
          (block l0 (branch l1))
          (block l1 (branch l0 l2))
          (block l2 (return))
          (entry l0)
        """)
        body = outline(prog, "l0")
        analysis = ForwardFirstAccess(body, max_iterations=1)
        out = analysis.run({body.entry: frozenset(body.registers)})
        assert not analysis.converged
        assert all(Access.TRUNCATED in acc for acc in out.values())


# ── Value tracking ───────────────────────────────────────────────

class TestValueTracking:

    def test_spill_and_reload_preserve(self):
        prog = load(SAVE_RESTORE)
        body = outline(prog, "s0")
        result = ValueTracking(body, prog.catalog.stack_pointer).run()
        assert result.written == regs(prog, "r1")
        assert result.clobbered == frozenset()
        assert result.elected_stack_offset == 0

    def test_copy_clobbers_destination(self):
        prog = load("(block f (copy r2 r1) (return)) (entry f)")
        body = outline(prog, "f")
        result = ValueTracking(body, prog.catalog.stack_pointer).run()
        assert result.clobbered == regs(prog, "r2")

    def test_unresolved_call_clobbers_everything(self):
        prog = load(UNRESOLVED_INDIRECT_CALL)
        body = outline(prog, "m0")
        result = ValueTracking(body, prog.catalog.stack_pointer).run()
        assert result.clobbered == frozenset(prog.catalog.abi_registers)
        assert result.elected_stack_offset is None

    def test_no_returning_exit_preserves_nothing(self):
        prog = load("(block f (write r3) (killer)) (entry f)")
        body = outline(prog, "f")
        result = ValueTracking(body, prog.catalog.stack_pointer).run()
        assert result.clobbered == regs(prog, "r3")

    @pytest.mark.parametrize("offsets,expected", [
        ([0, 0, 4], 0),
        ([8], 8),
        ([0, 4], None),
        ([None, None], None),
        ([None, 4, None], 4),
        ([], None),
    ])
    def test_elect_stack_offset(self, offsets, expected):
        assert elect_stack_offset(offsets) == expected


# ── Function-level analyses ──────────────────────────────────────

class TestFunctionAnalyses:

    def test_argument_read_before_write(self):
        partial = _partial(LEAF_READS_R0, "f0")
        assert _by_name(partial.used_arguments)["r0"] is S.YES
        assert _by_name(partial.dead_arguments)["r0"] is S.MAYBE
        assert _by_name(partial.used_arguments)["r1"] is S.MAYBE

    def test_return_value_written_on_every_path(self):
        partial = _partial(LEAF_READS_R0, "f0")
        returns = _by_name(partial.used_return_values)
        assert returns["r0"] is S.YES
        assert returns["r1"] is S.NO
        assert returns["r3"] is S.NO

    def test_register_written_on_entry_is_dead(self):
        partial = _partial(WRITES_R1_ON_ENTRY, "g0")
        assert _by_name(partial.dead_arguments)["r1"] is S.NO_OR_DEAD
        assert _by_name(partial.used_arguments)["r1"] is S.MAYBE
        assert _by_name(partial.used_arguments)["r0"] is S.YES

    def test_dead_on_every_path_including_dead_ends(self):
        prog = load("""
          (block f (branch a b))
          (block a (write r2) (return))
          (block b (write r2) (longjmp))
          (entry f)
        """)
        body = outline(prog, "f")
        dead = DeadRegisterArgumentsOfFunction(body).run()
        assert dead[prog.catalog.lookup("r2")] is S.NO_OR_DEAD

    def test_read_on_one_path_is_enough(self):
        prog = load("""
          (block f (branch a b))
          (block a (read r2) (return))
          (block b (write r2) (return))
          (entry f)
        """)
        body = outline(prog, "f")
        used = UsedArgumentsOfFunction(body).run()
        dead = DeadRegisterArgumentsOfFunction(body).run()
        r2 = prog.catalog.lookup("r2")
        assert used[r2] is S.YES
        assert dead[r2] is S.MAYBE

    def test_preserved_register_is_not_a_return_value(self):
        partial = _partial(SAVE_RESTORE, "s0")
        assert _by_name(partial.used_return_values)["r1"] is S.NO

    def test_return_values_combine_across_returns(self):
        partial = _partial("""
          (block f (branch a b))
          (block a (write r0) (write r1) (return))
          (block b (write r0) (return))
          (entry f)
        """, "f")
        returns = _by_name(partial.used_return_values)
        assert returns["r0"] is S.YES
        # written on one return, preserved on the other
        assert returns["r1"] is S.CONTRADICTION

    def test_callee_write_gives_yes_or_dead(self):
        prog = load(CALLER_AND_CALLEE)
        body = outline(prog, "m0", _known_callee_oracle(prog))
        partial = run_abi_analyses(body, prog.catalog.stack_pointer)
        # the last definition of r0 before returning is the callee's
        assert _by_name(partial.used_return_values)["r0"] is S.YES_OR_DEAD

    def test_broken_returns_are_excluded(self):
        partial = _partial(ONE_BROKEN_RETURN, "h0")
        assert partial.tracking.elected_stack_offset == 0
        assert len(partial.broken_returns) == 1
        assert sorted(partial.tracking.exit_offsets.values()) == [-4, 0, 0]


# ── Call-site analyses ───────────────────────────────────────────

class TestCallSiteAnalyses:

    def test_call_site_analysis_needs_at_call_site(self):
        class Incomplete(_CallSiteAnalysis):
            pass

        body = outline(load(CALLER_AND_CALLEE), "m0")
        with pytest.raises(TypeError):
            Incomplete(body)

    def test_known_callee(self):
        prog = load(CALLER_AND_CALLEE)
        body = outline(prog, "m0", _known_callee_oracle(prog))
        partial = run_abi_analyses(body, prog.catalog.stack_pointer)
        args = _by_name(partial.register_arguments_of_call["m0"])
        used = _by_name(partial.used_return_values_of_call["m0"])
        dead = _by_name(partial.dead_return_values_of_call["m0"])
        assert args["r0"] is S.YES_OR_DEAD
        assert args["r1"] is S.MAYBE
        assert used["r0"] is S.YES
        assert used["r1"] is S.NO
        assert dead["r0"] is S.MAYBE

    def test_overwritten_after_call_is_dead(self):
        prog = load("""
          (block m0 (call f m1))
          (block m1 (write r0) (read r0) (return))
          (block f (write r0) (return))
          (entry m0 f)
        """)
        body = outline(prog, "m0", _known_callee_oracle(prog))
        partial = run_abi_analyses(body, prog.catalog.stack_pointer)
        assert _by_name(partial.dead_return_values_of_call["m0"])["r0"] is S.NO_OR_DEAD
        assert _by_name(partial.used_return_values_of_call["m0"])["r0"] is S.MAYBE

    @pytest.mark.parametrize("text", [CALLER_AND_CALLEE, UNRESOLVED_INDIRECT_CALL])
    def test_pending_or_unresolved_callee_is_all_maybe(self, text):
        partial = _partial(text, "m0")
        for table in (
            partial.register_arguments_of_call,
            partial.used_return_values_of_call,
            partial.dead_return_values_of_call,
        ):
            assert set(table["m0"].values()) == {S.MAYBE}
