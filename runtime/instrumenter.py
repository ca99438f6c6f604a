# SPDX-License-Identifier: Apache-2.0
"""
Run-time counting session of one instrumented kernel launch.

The counter buffer is flattened as [block][thread][basic block]: every
(block, thread, basic block) triple owns exactly one cell, so device threads
increment their cells without atomics.
"""

import csv
import os
import time
from typing import Any, Dict, Optional

import numpy as np

from analysis.basic_block import DEFAULT_DATABASE, BlockDatabase, load_database
from instrumentation.instr_generator import COUNTER_TYPES, DEFAULT_COUNTER_TYPE

from .backend import DeviceBackend
from .kernel_info import KernelInfo
from .reduction import (
    DEFAULT_REDUCTION_BLOCKS,
    DEFAULT_REDUCTION_THREADS,
    reduce_flops,
    reduce_usage,
)


CSV_HEADER = ['block', 'thread', 'bblock', 'count']
DEFAULT_MAX_THREADS_PER_BLOCK = 256


def counter_dtype(counter_type: str = DEFAULT_COUNTER_TYPE) -> np.dtype:
    """NumPy dtype of the counter cells written by the generated code."""
    if counter_type not in COUNTER_TYPES:
        raise ValueError(
            f"Unsupported counter type {counter_type!r}. Available: {list(COUNTER_TYPES)}"
        )
    return np.dtype(COUNTER_TYPES[counter_type])


class Instrumenter:
    """Host counter buffer of one launch and its device counterpart."""

    def __init__(
        self,
        kernel_info: KernelInfo,
        backend: Optional[DeviceBackend] = None,
        config: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            kernel_info: Shape of the instrumented launch
            backend: Device runtime; chosen from hardware.hardware_mode when None
            config: Loaded config.yaml
        """
        self.config = config or {}
        self.kernel_info = kernel_info

        instrumentation = self.config.get('instrumentation', {})
        capacity = instrumentation.get('max_threads_per_block', DEFAULT_MAX_THREADS_PER_BLOCK)
        if kernel_info.total_threads_per_blocks > capacity:
            raise ValueError(
                f"Kernel {kernel_info.name} runs {kernel_info.total_threads_per_blocks} threads "
                f"per block, counter table capacity is {capacity}"
            )

        self._backend = backend
        self.counter_dtype = counter_dtype(instrumentation.get('counter_type', DEFAULT_COUNTER_TYPE))
        self.host_counters = np.zeros(kernel_info.instr_size, dtype=self.counter_dtype)
        self.stamp = time.time_ns() // 1000

        self.output_dir = self.config.get('output_dir', '')
        reduction = self.config.get('reduction', {})
        self.reduction_blocks = reduction.get('blocks', DEFAULT_REDUCTION_BLOCKS)
        self.reduction_threads = reduction.get('threads_per_block', DEFAULT_REDUCTION_THREADS)

    @property
    def backend(self) -> DeviceBackend:
        if self._backend is None:
            from . import create_backend
            self._backend = create_backend(self.config)
        return self._backend

    # ----- Device transfers ----- #

    def to_device(self) -> Any:
        """
        Allocate the device counter buffer and upload the host buffer.

        Raises:
            DeviceOperationFailure: On any allocation or copy error
        """
        return self.backend.to_device(self.host_counters)

    def from_device(self, device_ptr: Any):
        """Download the device counters into the host buffer."""
        self.backend.from_device(device_ptr, self.host_counters)

    def free_device(self, device_ptr: Any):
        self.backend.free(device_ptr)

    # ----- Persistence ----- #

    def auto_filename_prefix(self) -> str:
        prefix = f"{self.kernel_info.name}_{self.stamp}"
        return os.path.join(self.output_dir, prefix) if self.output_dir else prefix

    def _prepare(self, path: str):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def dump_csv(self, path: Optional[str] = None) -> str:
        """
        Write one row per counter cell.

        Returns:
            Path of the written file
        """
        path = path or self.auto_filename_prefix() + '.csv'
        self._prepare(path)

        info = self.kernel_info
        with open(path, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(CSV_HEADER)
            for block in range(info.total_blocks):
                for thread in range(info.total_threads_per_blocks):
                    for bblock in range(info.basic_blocks):
                        count = self.host_counters[info.index(block, thread, bblock)]
                        writer.writerow([block, thread, bblock, int(count)])
        return path

    def dump_bin(self, path: Optional[str] = None) -> str:
        """Write the raw counter buffer, no header."""
        path = path or self.auto_filename_prefix() + '.hiptrace'
        self._prepare(path)
        self.host_counters.tofile(path)
        return path

    def load_bin(self, path: str):
        """Read a binary trace of this launch into the host buffer."""
        counters = np.fromfile(path, dtype=self.counter_dtype)
        if counters.size != self.kernel_info.instr_size:
            raise ValueError(
                f"Trace {path} holds {counters.size} counters, "
                f"{self.kernel_info.name} expects {self.kernel_info.instr_size}"
            )
        self.host_counters[:] = counters

    @classmethod
    def from_csv(
        cls,
        path: str,
        name: str,
        backend: Optional[DeviceBackend] = None,
        config: Optional[Dict[str, Any]] = None
    ) -> 'Instrumenter':
        """Rebuild a session from a CSV trace; the launch shape is read from the rows."""
        with open(path, newline='') as f:
            reader = csv.reader(f)
            header = next(reader, None)
            if header != CSV_HEADER:
                raise ValueError(f"Unexpected CSV header in {path}: {header}")
            rows = np.array([[int(v) for v in row] for row in reader if row], dtype=np.int64)

        if rows.size == 0:
            raise ValueError(f"CSV trace {path} has no rows")

        blocks, threads, bblocks = (int(rows[:, i].max()) + 1 for i in range(3))
        info = KernelInfo.create(name, bblocks, blocks, threads)
        instrumenter = cls(info, backend=backend, config=config)

        cells = (rows[:, 0] * threads + rows[:, 1]) * bblocks + rows[:, 2]
        instrumenter.host_counters[cells] = rows[:, 3].astype(instrumenter.counter_dtype)
        return instrumenter

    # ----- Reduction ----- #

    def load_database(self, path: Optional[str] = None) -> BlockDatabase:
        """
        Load the block database of this kernel.

        Raises:
            DatabaseNotFound: If the file does not exist
            ParseFailure: If the file is malformed
        """
        return load_database(path or self.config.get('database', DEFAULT_DATABASE))

    def reduce_flops(self, device_ptr: Any, database: BlockDatabase, stream: Optional[Any] = None) -> int:
        """Total dynamic flops from the device counters."""
        return reduce_flops(
            device_ptr, self.kernel_info, database, self.backend, stream,
            self.reduction_blocks, self.reduction_threads
        )

    def reduce_usage(self, device_ptr: Any, database: BlockDatabase, stream: Optional[Any] = None) -> np.ndarray:
        """Per basic block execution counts and flops."""
        return reduce_usage(
            device_ptr, self.kernel_info, database, self.backend, stream,
            self.reduction_blocks, self.reduction_threads
        )
