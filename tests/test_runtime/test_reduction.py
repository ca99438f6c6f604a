# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the two-phase flop reduction on the host-emulated backend.
"""

import numpy as np
import pytest

from analysis.basic_block import BasicBlock, BlockDatabase
from runtime.backend import DeviceOperationFailure
from runtime.host_backend import HostBackend
from runtime.kernel_info import KernelInfo
from runtime.reduction import (
    BLOCK_USAGE_DTYPE,
    EmptyBlockDatabase,
    LaunchGeometry,
    fold_block_usage,
    reduce_flops,
    reduce_usage,
)


def reference_flops(counters, info, flops):
    """Direct sum over every (block, thread, basic block) cell."""
    total = 0
    for b in range(info.total_blocks):
        for t in range(info.total_threads_per_blocks):
            for bb in range(info.basic_blocks):
                total += int(counters[info.index(b, t, bb)]) * flops[bb]
    return total


@pytest.fixture
def backend():
    return HostBackend()


@pytest.fixture
def database():
    return BlockDatabase([BasicBlock(0, 3, "k.hip:2:5", "k.hip:3:1"), BasicBlock(1, 5, "k.hip:4:5", "k.hip:6:1")])


class TestReduceFlops:
    """Test the total dynamic flop count."""

    def test_single_thread_per_block(self, backend, database):
        info = KernelInfo.create("k", 2, 2, 1)
        ptr = backend.to_device(np.array([4, 2, 1, 0], dtype=np.uint32))
        assert reduce_flops(ptr, info, database, backend) == (4 + 1) * 3 + 2 * 5

    def test_zero_counters(self, backend, database):
        info = KernelInfo.create("k", 2, 8, 32)
        ptr = backend.to_device(np.zeros(info.instr_size, dtype=np.uint32))
        assert reduce_flops(ptr, info, database, backend) == 0

    def test_linear_in_counts(self, backend, database):
        info = KernelInfo.create("k", 2, 3, 16)
        counters = np.random.default_rng(0).integers(0, 100, info.instr_size, dtype=np.uint32)
        base = reduce_flops(backend.to_device(counters), info, database, backend)
        scaled = reduce_flops(backend.to_device(counters * 7), info, database, backend)
        assert scaled == 7 * base

    def test_matches_reference(self, backend):
        info = KernelInfo.create("k", 4, 3, 5)
        flops = [0, 12, 7, 1]
        database = BlockDatabase(BasicBlock(i, f) for i, f in enumerate(flops))
        counters = np.random.default_rng(1).integers(0, 50, info.instr_size, dtype=np.uint32)
        ptr = backend.to_device(counters)
        assert reduce_flops(ptr, info, database, backend) == reference_flops(counters, info, flops)

    @pytest.mark.parametrize("reduction_blocks, threads_per_block", [
        (1, 1), (1, 7), (3, 5), (128, 128),
    ])
    def test_independent_of_reduction_grid(self, backend, reduction_blocks, threads_per_block):
        info = KernelInfo.create("k", 3, 5, 9)
        database = BlockDatabase([BasicBlock(0, 2), BasicBlock(1, 11), BasicBlock(2, 4)])
        counters = np.random.default_rng(2).integers(0, 1000, info.instr_size, dtype=np.uint32)
        ptr = backend.to_device(counters)
        total = reduce_flops(
            ptr, info, database, backend,
            reduction_blocks=reduction_blocks, threads_per_block=threads_per_block
        )
        assert total == reference_flops(counters, info, [2, 11, 4])

    def test_ids_without_record_cost_nothing(self, backend):
        info = KernelInfo.create("k", 3, 1, 1)
        database = BlockDatabase([BasicBlock(2, 10)])
        ptr = backend.to_device(np.array([5, 5, 2], dtype=np.uint32))
        assert reduce_flops(ptr, info, database, backend) == 20

    def test_empty_database(self, backend):
        info = KernelInfo.create("k", 2, 1, 1)
        ptr = backend.to_device(np.ones(2, dtype=np.uint32))
        with pytest.raises(EmptyBlockDatabase):
            reduce_flops(ptr, info, BlockDatabase(), backend)

    def test_block_id_out_of_range(self, backend):
        info = KernelInfo.create("k", 2, 1, 1)
        database = BlockDatabase([BasicBlock(5, 1)])
        ptr = backend.to_device(np.ones(2, dtype=np.uint32))
        with pytest.raises(ValueError, match="counter slots"):
            reduce_flops(ptr, info, database, backend)

    def test_buffer_shape_mismatch(self, backend, database):
        info = KernelInfo.create("k", 2, 2, 2)
        ptr = backend.to_device(np.ones(4, dtype=np.uint32))
        with pytest.raises(DeviceOperationFailure, match="reduce failed"):
            reduce_flops(ptr, info, database, backend)

    def test_freed_buffer(self, backend, database):
        info = KernelInfo.create("k", 2, 1, 1)
        ptr = backend.to_device(np.ones(2, dtype=np.uint32))
        backend.free(ptr)
        with pytest.raises(DeviceOperationFailure):
            reduce_flops(ptr, info, database, backend)


class TestReduceUsage:
    """Test per basic block usage."""

    def test_usage(self, backend, database):
        info = KernelInfo.create("k", 2, 2, 1)
        ptr = backend.to_device(np.array([4, 2, 1, 0], dtype=np.uint32))
        usage = reduce_usage(ptr, info, database, backend)
        assert usage.dtype == BLOCK_USAGE_DTYPE
        assert usage['count'].tolist() == [5, 2]
        assert usage['flops'].tolist() == [15, 10]

    def test_usage_sums_to_total(self, backend, database):
        info = KernelInfo.create("k", 2, 4, 8)
        counters = np.random.default_rng(3).integers(0, 10, info.instr_size, dtype=np.uint32)
        ptr = backend.to_device(counters)
        usage = reduce_usage(ptr, info, database, backend, reduction_blocks=2, threads_per_block=4)
        assert int(usage['flops'].sum()) == reduce_flops(ptr, info, database, backend)


class TestDevicePhase:
    """Test the bucket layout produced by the device phase."""

    def test_bucket_layout(self, backend):
        geometry = LaunchGeometry(threads_per_block=1, total_blocks=4, basic_blocks=1)
        ptr = backend.to_device(np.array([1, 2, 3, 4], dtype=np.uint32))
        output = backend.reduce_block_usage(
            ptr, geometry, np.array([10], dtype=np.uint64), reduction_blocks=2, threads_per_block=1
        )
        # Worker w takes cells w, w + 2; one worker per bucket
        assert output['count'].tolist() == [1 + 3, 2 + 4]
        assert output['flops'].tolist() == [40, 60]
        assert fold_block_usage(output) == 100

    def test_geometry_from_kernel_info(self):
        info = KernelInfo.create("k", 3, 4, 32)
        geometry = LaunchGeometry.from_kernel_info(info)
        assert geometry.instr_size == info.instr_size
