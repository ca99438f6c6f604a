# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the per-block FLOP, load and store counters.
"""

import pytest

from analysis.instr_counters import FlopCounter, LoadCounter, StoreCounter
from analysis.ir_common import IRBasicBlock, IRInstruction


def make_block(*instructions):
    """Build a block from (opcode, access_type) pairs."""
    return IRBasicBlock(
        index=0,
        label="bb",
        instructions=[
            IRInstruction(opcode=opcode, text=opcode, access_type=access_type)
            for opcode, access_type in instructions
        ]
    )


class TestFlopCounter:
    """Test FLOP counting."""

    @pytest.mark.parametrize("opcode", [
        "fadd", "fsub", "fmul", "fdiv", "frem",
        "fptoui", "fptosi", "uitofp", "sitofp",
        "fptrunc", "fpext", "fcmp",
    ])
    def test_counted_opcodes(self, opcode):
        assert FlopCounter()(make_block((opcode, ""))) == 1

    @pytest.mark.parametrize("opcode", [
        "add", "mul", "icmp", "fneg", "load", "store", "call", "br", "select", "sext",
    ])
    def test_ignored_opcodes(self, opcode):
        assert FlopCounter()(make_block((opcode, ""))) == 0

    def test_mixed_block(self):
        block = make_block(("fadd", ""), ("add", ""), ("fmul", ""), ("fcmp", ""), ("br", ""))
        assert FlopCounter()(block) == 3

    def test_count_is_not_reset(self):
        """A counter keeps accumulating across blocks."""
        counter = FlopCounter()
        block = make_block(("fadd", ""), ("fmul", ""))
        assert counter(block) == 2
        assert counter(block) == 4
        assert counter.get_count() == 4

    def test_fresh_counter_per_block(self):
        block = make_block(("fadd", ""), ("fmul", ""))
        assert [FlopCounter()(block) for _ in range(3)] == [2, 2, 2]


class TestStoreCounter:
    """Test store byte counting."""

    @pytest.mark.parametrize("access_type,nbytes", [
        ("float", 4),
        ("double", 8),
        ("half", 2),
        ("i64", 8),
        ("i8", 1),
        ("<4 x float>", 16),
    ])
    def test_scalar_and_vector(self, access_type, nbytes):
        assert StoreCounter()(make_block(("store", access_type))) == nbytes

    def test_aggregates_count_zero(self):
        """Aggregate stores are not special-cased."""
        block = make_block(("store", "{ float, i32 }"), ("store", "[4 x float]"))
        assert StoreCounter()(block) == 0

    def test_pointer_store(self):
        assert StoreCounter()(make_block(("store", "ptr"))) == 0

    def test_loads_ignored(self):
        assert StoreCounter()(make_block(("load", "float"), ("getelementptr", "float"))) == 0

    def test_accumulates(self):
        counter = StoreCounter()
        block = make_block(("store", "float"))
        counter(block)
        assert counter(block) == 8


class TestLoadCounter:
    """Test load byte counting."""

    def test_load(self):
        assert LoadCounter()(make_block(("load", "double"))) == 8

    def test_address_computation_counts_as_load(self):
        """getelementptr is counted even though it does not read memory."""
        block = make_block(("getelementptr", "float"), ("load", "float"))
        assert LoadCounter()(block) == 8

    def test_sub_byte_type(self):
        assert LoadCounter()(make_block(("load", "i1"))) == 0

    def test_stores_ignored(self):
        assert LoadCounter()(make_block(("store", "float"), ("fadd", ""))) == 0

    def test_accumulates(self):
        counter = LoadCounter()
        block = make_block(("load", "i32"))
        assert counter(block) == 4
        assert counter(block) == 8
