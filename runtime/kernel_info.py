# SPDX-License-Identifier: Apache-2.0
"""Shape descriptor of one instrumented kernel launch."""

from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np


Dim = Union[int, Sequence[int]]


def dim_size(dim: Dim) -> int:
    """Number of elements of an int or a (x[, y[, z]]) launch dimension."""
    if isinstance(dim, (int, np.integer)):
        return int(dim)
    return int(np.prod(list(dim), dtype=np.int64))


@dataclass(frozen=True)
class KernelInfo:
    name: str
    total_blocks: int
    total_threads_per_blocks: int
    basic_blocks: int
    instr_size: int

    def __post_init__(self):
        for field_name in ('total_blocks', 'total_threads_per_blocks', 'basic_blocks'):
            if getattr(self, field_name) <= 0:
                raise ValueError(f"KernelInfo.{field_name} must be positive")

        expected = self.total_blocks * self.total_threads_per_blocks * self.basic_blocks
        if self.instr_size != expected:
            raise ValueError(
                f"KernelInfo.instr_size is {self.instr_size}, expected "
                f"{self.total_blocks} * {self.total_threads_per_blocks} * {self.basic_blocks} = {expected}"
            )

    @classmethod
    def create(cls, name: str, basic_blocks: int, blocks: Dim, threads: Dim) -> 'KernelInfo':
        """Build from a launch's grid and block dimensions."""
        total_blocks = dim_size(blocks)
        total_threads = dim_size(threads)
        return cls(
            name=name,
            total_blocks=total_blocks,
            total_threads_per_blocks=total_threads,
            basic_blocks=basic_blocks,
            instr_size=total_blocks * total_threads * basic_blocks
        )

    def index(self, block: int, thread: int, bblock: int) -> int:
        """Flattened counter cell of a (block, thread, basic block) triple."""
        return (block * self.total_threads_per_blocks + thread) * self.basic_blocks + bblock

    def dump(self):
        print(f"{self.name} : {self.total_blocks} blocks, "
              f"{self.total_threads_per_blocks} threads per block, "
              f"{self.basic_blocks} basic blocks, {self.instr_size} counters")
