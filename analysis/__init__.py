# SPDX-License-Identifier: Apache-2.0
"""Static analysis package: LLVM IR parsing, block costs and the block database."""

from .basic_block import BasicBlock, BlockDatabase, ParseFailure, DatabaseNotFound
from .static_analyzer import StaticAnalyzer, BlockCosts

__all__ = [
    'BasicBlock',
    'BlockDatabase',
    'ParseFailure',
    'DatabaseNotFound',
    'StaticAnalyzer',
    'BlockCosts',
]
