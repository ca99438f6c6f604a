# SPDX-License-Identifier: Apache-2.0
"""
Two-phase reduction of raw counters against static block costs.

Phase 1 runs on the device: a fixed reduction grid, independent of the
instrumented kernel's launch, splits the counter cells among its threads.
Worker ``w`` of ``W = blocks * threads`` visits cells ``w, w + W, ...``,
multiplies each count by the flops of the cell's basic block and
accumulates into its bucket (its reduction block) for that basic block.

Phase 2 runs on the host and sums the flops of every bucket.
"""

from dataclasses import dataclass
from typing import Any, Optional

import numpy as np


BLOCK_USAGE_DTYPE = np.dtype([('count', '<u8'), ('flops', '<u8')])

DEFAULT_REDUCTION_BLOCKS = 128
DEFAULT_REDUCTION_THREADS = 128


class EmptyBlockDatabase(RuntimeError):
    """The block database holds no records to reduce against."""


@dataclass(frozen=True)
class LaunchGeometry:
    """Shape of the counter buffer seen by the reduction kernel."""
    threads_per_block: int
    total_blocks: int
    basic_blocks: int

    @property
    def instr_size(self) -> int:
        return self.total_blocks * self.threads_per_block * self.basic_blocks

    @classmethod
    def from_kernel_info(cls, kernel_info) -> 'LaunchGeometry':
        return cls(
            threads_per_block=kernel_info.total_threads_per_blocks,
            total_blocks=kernel_info.total_blocks,
            basic_blocks=kernel_info.basic_blocks
        )


def fold_block_usage(output: np.ndarray) -> int:
    """Host phase: sum the flops of every bucket."""
    return int(output['flops'].sum(dtype=np.uint64))


def reduce_usage(
    device_counters: Any,
    kernel_info,
    database,
    backend,
    stream: Optional[Any] = None,
    reduction_blocks: int = DEFAULT_REDUCTION_BLOCKS,
    threads_per_block: int = DEFAULT_REDUCTION_THREADS
) -> np.ndarray:
    """
    Per basic block usage over the whole launch.

    Args:
        device_counters: Device handle of the raw counter buffer
        kernel_info: KernelInfo of the instrumented launch
        database: BlockDatabase holding the static costs
        backend: Device backend owning ``device_counters``
        stream: Execution stream; synchronizes the whole device when None

    Returns:
        BLOCK_USAGE_DTYPE array indexed by basic block id
    """
    output = _device_phase(
        device_counters, kernel_info, database, backend,
        stream, reduction_blocks, threads_per_block
    )
    buckets = output.reshape(reduction_blocks, kernel_info.basic_blocks)

    usage = np.zeros(kernel_info.basic_blocks, dtype=BLOCK_USAGE_DTYPE)
    usage['count'] = buckets['count'].sum(axis=0, dtype=np.uint64)
    usage['flops'] = buckets['flops'].sum(axis=0, dtype=np.uint64)
    return usage


def reduce_flops(
    device_counters: Any,
    kernel_info,
    database,
    backend,
    stream: Optional[Any] = None,
    reduction_blocks: int = DEFAULT_REDUCTION_BLOCKS,
    threads_per_block: int = DEFAULT_REDUCTION_THREADS
) -> int:
    """
    Total dynamic flops of an instrumented launch.

    Raises:
        EmptyBlockDatabase: If the database has no records
        DeviceOperationFailure: If any device call fails
    """
    output = _device_phase(
        device_counters, kernel_info, database, backend,
        stream, reduction_blocks, threads_per_block
    )
    return fold_block_usage(output)


def _device_phase(device_counters, kernel_info, database, backend, stream,
                  reduction_blocks, threads_per_block) -> np.ndarray:
    if database.empty():
        raise EmptyBlockDatabase("Block database is empty, nothing to reduce against")

    block_flops = database.flops_by_id(kernel_info.basic_blocks)
    geometry = LaunchGeometry.from_kernel_info(kernel_info)

    # Make the instrumented kernel's writes visible before reading them
    backend.synchronize(stream)

    return backend.reduce_block_usage(
        device_counters, geometry, block_flops,
        reduction_blocks, threads_per_block, stream
    )
