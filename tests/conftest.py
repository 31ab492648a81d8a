# tests/conftest.py
"""
Shared fixtures and lifted-program snippets for the abi_recovery tests.

Programs are written in the S-expression surface syntax read by
:mod:`abi_recovery.ir_reader` over a tiny four-register catalog
(``r0``..``r3`` plus ``sp`` and ``pc``).
"""

import pytest

from abi_recovery.ir_reader import parse_program
from abi_recovery.oracle import Oracle
from abi_recovery.outlining import OutlinedFunctionBuilder


HEADER = """
  (registers (r0 4) (r1 4) (r2 4) (r3 4) (sp 4) (pc 4))
  (stack-pointer sp)
  (program-counter pc)
"""


def load(body: str):
    """Parse *body* (blocks and entry forms) under the test catalog."""
    return parse_program(f"(program {HEADER} {body})")


def regs(program, *names):
    return {program.catalog.lookup(n) for n in names}


def outline(program, entry, oracle=None, **kwargs):
    """Build (and leave live) the outlined body of *entry*."""
    builder = OutlinedFunctionBuilder(program, oracle or Oracle(program.catalog), **kwargs)
    return builder.build(entry)


def call_chain(length):
    """Program text of ``f0 -> f1 -> ... -> f<length-1>``; the last one writes r2."""
    blocks = [
        f"(block f{i} (call f{i + 1} k{i})) (block k{i} (return))"
        for i in range(length - 1)
    ]
    blocks.append(f"(block f{length - 1} (write r2) (return))")
    entries = " ".join(f"f{i}" for i in range(length))
    return "\n".join(blocks) + f"\n(entry {entries})"


# ── Lifted programs ──────────────────────────────────────────────

# Reads r0 before writing it, returns through r0.
LEAF_READS_R0 = """
  (block f0 (read r0) (write r0) (return))
  (entry f0)
"""

# Writes r1 first thing and never touches it again.
WRITES_R1_ON_ENTRY = """
  (block g0 (write r1) (read r0) (return))
  (entry g0)
"""

# A <-> B, each writing a different register on its base case.
MUTUAL_RECURSION = """
  (block A (branch a_base a_rec))
  (block a_base (write r0) (return))
  (block a_rec (call B a_ret))
  (block a_ret (return))
  (block B (branch b_base b_rec))
  (block b_base (write r1) (return))
  (block b_rec (call A b_ret))
  (block b_ret (return))
  (entry A B)
"""

# main defines r0, calls f, then reads r0.
CALLER_AND_CALLEE = """
  (block m0 (write r0) (call f m_ret))
  (block m_ret (read r0) (return))
  (block f (read r0) (write r0) (return))
  (entry m0 f)
"""

# Same as above, but the call goes through a register the lifter resolved.
INDIRECT_CALLER_AND_CALLEE = """
  (block m0 (write r0) (indirect-call m_ret :target f))
  (block m_ret (read r0) (return))
  (block f (read r0) (write r0) (return))
  (entry m0 f)
"""

UNRESOLVED_INDIRECT_CALL = """
  (block m0 (write r0) (indirect-call m_ret))
  (block m_ret (read r0) (return))
  (entry m0)
"""

# main integrates helper (a fake function) which calls g.
FAKE_CHAIN = """
  (block main (fake-call helper m_ret))
  (block m_ret (return))
  (block helper (call g h_ret))
  (block h_ret (fake-return))
  (block g (write r2) (return))
  (entry main helper g)
"""

# r1 is saved to the stack and restored before returning.
SAVE_RESTORE = """
  (block s0 (adjust-sp -8) (spill r1 0) (write r1) (read r1)
            (reload r1 0) (adjust-sp 8) (return))
  (entry s0)
"""

# Three returns; the last one leaves 4 extra bytes on the stack.
ONE_BROKEN_RETURN = """
  (block h0 (adjust-sp -8) (branch h1 h2 h3))
  (block h1 (adjust-sp 8) (return))
  (block h2 (adjust-sp 8) (return))
  (block h3 (adjust-sp 4) (return))
  (entry h0)
"""


@pytest.fixture
def leaf_program():
    return load(LEAF_READS_R0)


@pytest.fixture
def mutual_program():
    return load(MUTUAL_RECURSION)


@pytest.fixture
def caller_program():
    return load(CALLER_AND_CALLEE)


@pytest.fixture
def fake_program():
    return load(FAKE_CHAIN)
