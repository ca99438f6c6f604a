# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the counting session: transfers, traces and reduction.

Everything runs on the host-emulated backend.
"""

import csv
import os

import numpy as np
import pytest

from analysis.basic_block import BasicBlock, BlockDatabase, DatabaseNotFound, save_database
from runtime import create_backend, get_backend
from runtime.backend import DeviceOperationFailure
from runtime.host_backend import HostBackend
from runtime.instrumenter import CSV_HEADER, Instrumenter
from runtime.kernel_info import KernelInfo


EMULATED = {'hardware': {'hardware_mode': 'emulated'}}


@pytest.fixture
def instrumenter():
    inst = Instrumenter(KernelInfo.create("k", 2, 2, 2), backend=HostBackend())
    inst.host_counters[:] = [1, 0, 1, 1, 0, 0, 1, 1]
    return inst


def read_rows(path):
    with open(path, newline='') as f:
        return list(csv.reader(f))


class TestBackendSelection:
    """Test the lazy backend registry."""

    def test_emulated_mode(self):
        assert isinstance(create_backend(EMULATED), HostBackend)

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="hardware_mode"):
            create_backend({'hardware': {'hardware_mode': 'fpga'}})

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            get_backend('opencl')

    def test_backend_from_config(self):
        inst = Instrumenter(KernelInfo.create("k", 1, 1, 1), config=EMULATED)
        assert isinstance(inst.backend, HostBackend)


class TestCapacity:
    """Test the counter table capacity check."""

    def test_too_many_threads(self):
        with pytest.raises(ValueError, match="capacity is 256"):
            Instrumenter(KernelInfo.create("k", 1, 1, 512), backend=HostBackend())

    def test_configured_capacity(self):
        config = {'instrumentation': {'max_threads_per_block': 1024}}
        inst = Instrumenter(KernelInfo.create("k", 1, 1, 512), backend=HostBackend(), config=config)
        assert inst.host_counters.size == 512


class TestCounterType:
    """Test the counter width follows the generated counter table."""

    def test_default_width(self, instrumenter):
        assert instrumenter.host_counters.dtype == np.uint32

    def test_wide_counters(self, tmp_path):
        config = {'instrumentation': {'counter_type': 'unsigned long long'}}
        inst = Instrumenter(KernelInfo.create("k", 2, 1, 2), backend=HostBackend(), config=config)
        assert inst.host_counters.dtype == np.uint64

        inst.host_counters[:] = [2**40, 1, 0, 3]
        path = inst.dump_bin(str(tmp_path / "wide.hiptrace"))
        assert os.path.getsize(path) == 4 * 8

        loaded = Instrumenter(inst.kernel_info, backend=HostBackend(), config=config)
        loaded.load_bin(path)
        assert loaded.host_counters.tolist() == [2**40, 1, 0, 3]

    def test_wide_counters_reduce(self):
        config = {'instrumentation': {'counter_type': 'unsigned long long'}}
        inst = Instrumenter(KernelInfo.create("k", 1, 1, 2), backend=HostBackend(), config=config)
        inst.host_counters[:] = [2**33, 1]
        ptr = inst.to_device()
        assert inst.reduce_flops(ptr, BlockDatabase([BasicBlock(0, 2)])) == 2**34 + 2

    def test_unsupported_type(self):
        config = {'instrumentation': {'counter_type': 'float'}}
        with pytest.raises(ValueError, match="counter type"):
            Instrumenter(KernelInfo.create("k", 1, 1, 1), backend=HostBackend(), config=config)


class TestTransfers:
    """Test device round trips."""

    def test_counters_start_at_zero(self):
        inst = Instrumenter(KernelInfo.create("k", 3, 4, 8), backend=HostBackend())
        assert inst.host_counters.size == 3 * 4 * 8
        assert not inst.host_counters.any()

    def test_round_trip(self, instrumenter):
        expected = instrumenter.host_counters.copy()
        ptr = instrumenter.to_device()
        instrumenter.host_counters[:] = 0
        instrumenter.from_device(ptr)
        instrumenter.free_device(ptr)
        np.testing.assert_array_equal(instrumenter.host_counters, expected)

    def test_device_writes_are_downloaded(self, instrumenter):
        backend = instrumenter.backend
        ptr = instrumenter.to_device()
        backend.device_array(ptr)[instrumenter.kernel_info.index(1, 0, 1)] = 9
        instrumenter.from_device(ptr)
        assert instrumenter.host_counters[5] == 9

    def test_double_free(self, instrumenter):
        ptr = instrumenter.to_device()
        instrumenter.free_device(ptr)
        with pytest.raises(DeviceOperationFailure, match="free failed"):
            instrumenter.free_device(ptr)


class TestTraces:
    """Test CSV and binary traces."""

    def test_csv_rows(self, instrumenter, tmp_path):
        path = instrumenter.dump_csv(str(tmp_path / "trace.csv"))
        rows = read_rows(path)
        assert rows[0] == CSV_HEADER
        assert len(rows) == 1 + 8
        assert rows[1] == ['0', '0', '0', '1']
        assert ['1', '0', '1', '0'] in rows
        assert rows[-1] == ['1', '1', '1', '1']

    def test_csv_auto_name(self, tmp_path):
        inst = Instrumenter(
            KernelInfo.create("vecAdd", 1, 1, 1), backend=HostBackend(),
            config={'output_dir': str(tmp_path / "traces")}
        )
        path = inst.dump_csv()
        assert path == str(tmp_path / "traces" / f"vecAdd_{inst.stamp}.csv")

    def test_csv_reload(self, instrumenter, tmp_path):
        path = instrumenter.dump_csv(str(tmp_path / "trace.csv"))
        loaded = Instrumenter.from_csv(path, "k", backend=HostBackend())
        assert loaded.kernel_info == instrumenter.kernel_info
        np.testing.assert_array_equal(loaded.host_counters, instrumenter.host_counters)

    def test_csv_bad_header(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("a,b,c,d\n0,0,0,1\n")
        with pytest.raises(ValueError, match="header"):
            Instrumenter.from_csv(str(path), "k", backend=HostBackend())

    def test_bin_reload(self, instrumenter, tmp_path):
        path = instrumenter.dump_bin(str(tmp_path / "trace.hiptrace"))
        loaded = Instrumenter(instrumenter.kernel_info, backend=HostBackend())
        loaded.load_bin(path)
        np.testing.assert_array_equal(loaded.host_counters, instrumenter.host_counters)

    def test_bin_size_mismatch(self, instrumenter, tmp_path):
        path = instrumenter.dump_bin(str(tmp_path / "trace.hiptrace"))
        other = Instrumenter(KernelInfo.create("k", 3, 2, 2), backend=HostBackend())
        with pytest.raises(ValueError, match="expects 12"):
            other.load_bin(path)


class TestReduction:
    """Test reduction through the session."""

    def test_reduce_flops(self, instrumenter, tmp_path):
        db_path = save_database(
            [BasicBlock(0, 3, "k.hip:2:5", "k.hip:3:1"), BasicBlock(1, 5, "k.hip:4:5", "k.hip:6:1")],
            str(tmp_path / "db.json")
        )
        database = instrumenter.load_database(db_path)

        ptr = instrumenter.to_device()
        try:
            # bb0 runs 3 times, bb1 runs 2 times
            assert instrumenter.reduce_flops(ptr, database) == 3 * 3 + 2 * 5
            usage = instrumenter.reduce_usage(ptr, database)
        finally:
            instrumenter.free_device(ptr)

        assert usage['count'].tolist() == [3, 2]
        assert usage['flops'].tolist() == [9, 10]

    def test_database_from_config(self, tmp_path):
        db_path = str(tmp_path / "missing.json")
        inst = Instrumenter(
            KernelInfo.create("k", 1, 1, 1), backend=HostBackend(), config={'database': db_path}
        )
        with pytest.raises(DatabaseNotFound):
            inst.load_database()

    def test_small_reduction_grid(self, instrumenter):
        database = BlockDatabase([BasicBlock(0, 3), BasicBlock(1, 5)])
        instrumenter.reduction_blocks = 1
        instrumenter.reduction_threads = 3
        ptr = instrumenter.to_device()
        assert instrumenter.reduce_flops(ptr, database) == 19
