# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the CuPy device runtime.

Skipped without CuPy, without a CUDA device, or when the configuration
selects the emulated hardware mode.
"""

import os

import numpy as np
import pytest
import yaml

cp = pytest.importorskip("cupy")

from analysis.basic_block import BasicBlock, BlockDatabase
from runtime.backend import DeviceOperationFailure
from runtime.host_backend import HostBackend
from runtime.kernel_info import KernelInfo
from runtime.reduction import reduce_flops, reduce_usage


def load_config():
    """Load configuration."""
    config_path = os.path.join(os.path.dirname(__file__), '..', '..', 'config.yaml')
    if os.path.exists(config_path):
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


def _device_available():
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except Exception:
        return False


_MODE = os.environ.get(
    'HIP_ANALYZER_HARDWARE_MODE',
    load_config().get('hardware', {}).get('hardware_mode', 'native')
)

pytestmark = pytest.mark.skipif(
    _MODE == 'emulated' or not _device_available(),
    reason="needs a CUDA device and the native hardware mode"
)


@pytest.fixture
def backend():
    from runtime.cupy_backend import CupyBackend
    return CupyBackend()


class TestCupyBackend:
    """Test transfers and the reduction kernel on the GPU."""

    def test_round_trip(self, backend):
        host = np.arange(1000, dtype=np.uint32)
        buffer = backend.to_device(host)
        try:
            out = np.zeros_like(host)
            backend.from_device(buffer, out)
        finally:
            backend.free(buffer)
        np.testing.assert_array_equal(out, host)

    def test_size_mismatch(self, backend):
        buffer = backend.to_device(np.ones(8, dtype=np.uint32))
        try:
            with pytest.raises(DeviceOperationFailure):
                backend.from_device(buffer, np.zeros(4, dtype=np.uint32))
        finally:
            backend.free(buffer)

    def test_reduce_flops(self, backend):
        info = KernelInfo.create("k", 2, 2, 1)
        database = BlockDatabase([BasicBlock(0, 3), BasicBlock(1, 5)])
        buffer = backend.to_device(np.array([4, 2, 1, 0], dtype=np.uint32))
        try:
            assert reduce_flops(buffer, info, database, backend) == 25
        finally:
            backend.free(buffer)

    @pytest.mark.parametrize("reduction_blocks, threads_per_block", [(1, 32), (4, 64), (128, 128)])
    def test_matches_host_backend(self, backend, reduction_blocks, threads_per_block):
        info = KernelInfo.create("k", 6, 40, 256)
        database = BlockDatabase(BasicBlock(i, 2 * i + 1) for i in range(6))
        counters = np.random.default_rng(0).integers(0, 1000, info.instr_size, dtype=np.uint32)

        host = HostBackend()
        expected = reduce_usage(host.to_device(counters), info, database, host)

        buffer = backend.to_device(counters)
        try:
            usage = reduce_usage(
                buffer, info, database, backend,
                reduction_blocks=reduction_blocks, threads_per_block=threads_per_block
            )
        finally:
            backend.free(buffer)

        np.testing.assert_array_equal(usage['count'], expected['count'])
        np.testing.assert_array_equal(usage['flops'], expected['flops'])

    def test_reduce_on_stream(self, backend):
        info = KernelInfo.create("k", 2, 2, 1)
        database = BlockDatabase([BasicBlock(0, 3), BasicBlock(1, 5)])
        stream = cp.cuda.Stream(non_blocking=True)
        buffer = backend.to_device(np.array([4, 2, 1, 0], dtype=np.uint32))
        try:
            assert reduce_flops(buffer, info, database, backend, stream=stream) == 25
        finally:
            backend.free(buffer)

    def test_reduce_wide_counters(self, backend):
        info = KernelInfo.create("k", 2, 2, 1)
        database = BlockDatabase([BasicBlock(0, 3), BasicBlock(1, 5)])
        buffer = backend.to_device(np.array([2**33, 2, 1, 0], dtype=np.uint64))
        try:
            assert reduce_flops(buffer, info, database, backend) == 3 * (2**33 + 1) + 5 * 2
        finally:
            backend.free(buffer)
