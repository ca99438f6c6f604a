# SPDX-License-Identifier: Apache-2.0
"""
Instruction counters for basic block static analysis.

Each counter is a visitor over one IR basic block. The running ``count`` is
never reset by a call: build a fresh counter for every block that needs its
own value.
"""

from .ir_common import IRBasicBlock
from .llvm_ir_parser import type_bit_width


BITS_PER_BYTE = 8


class InstrCounter:
    """Base class for per-block instruction counters."""

    def __init__(self):
        self.count = 0

    def __call__(self, block: IRBasicBlock) -> int:
        raise NotImplementedError

    def get_count(self) -> int:
        return self.count


class FlopCounter(InstrCounter):
    """Floating point arithmetic, conversions and comparisons."""

    FLOP_OPCODES = frozenset([
        'fadd', 'fsub', 'fmul', 'fdiv', 'frem',
        'fptoui', 'fptosi', 'uitofp', 'sitofp',
        'fptrunc', 'fpext',
        'fcmp',
    ])

    def __call__(self, block: IRBasicBlock) -> int:
        for instr in block:
            if instr.opcode in self.FLOP_OPCODES:
                self.count += 1

        return self.get_count()


class StoreCounter(InstrCounter):
    """Bytes written by store instructions."""

    def __call__(self, block: IRBasicBlock) -> int:
        for instr in block:
            if instr.opcode == 'store':
                # Aggregates are not special-cased
                self.count += type_bit_width(instr.access_type) // BITS_PER_BYTE

        return self.get_count()


class LoadCounter(InstrCounter):
    """
    Bytes read by load instructions.

    Element address computations (getelementptr) are counted as loads of
    their source element type as well, even though they do not touch memory.
    """

    def __call__(self, block: IRBasicBlock) -> int:
        for instr in block:
            if instr.opcode in ('getelementptr', 'load'):
                self.count += type_bit_width(instr.access_type) // BITS_PER_BYTE

        return self.get_count()
