# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for the launch shape descriptor.
"""

import pytest

from runtime.kernel_info import KernelInfo, dim_size


class TestKernelInfo:
    """Test construction and counter indexing."""

    def test_create_from_dims(self):
        info = KernelInfo.create("vecAdd", 5, (4, 2, 1), (32, 8))
        assert info.total_blocks == 8
        assert info.total_threads_per_blocks == 256
        assert info.instr_size == 8 * 256 * 5

    def test_create_from_ints(self):
        info = KernelInfo.create("vecAdd", 3, 64, 256)
        assert info.instr_size == 64 * 256 * 3

    def test_dim_size(self):
        assert dim_size(7) == 7
        assert dim_size((2, 3, 4)) == 24

    def test_index_layout(self):
        """Cells are laid out block-major, then thread, then basic block."""
        info = KernelInfo.create("k", 3, 2, 4)
        assert info.index(0, 0, 0) == 0
        assert info.index(0, 0, 2) == 2
        assert info.index(0, 1, 0) == 3
        assert info.index(1, 0, 0) == 12
        assert info.index(1, 3, 2) == info.instr_size - 1

    def test_index_covers_every_cell_once(self):
        info = KernelInfo.create("k", 3, 2, 4)
        cells = {
            info.index(b, t, bb)
            for b in range(2) for t in range(4) for bb in range(3)
        }
        assert cells == set(range(info.instr_size))

    @pytest.mark.parametrize("field, value", [
        ('total_blocks', 0),
        ('total_threads_per_blocks', 0),
        ('basic_blocks', -1),
    ])
    def test_rejects_non_positive(self, field, value):
        kwargs = dict(name="k", total_blocks=2, total_threads_per_blocks=2, basic_blocks=2)
        kwargs[field] = value
        kwargs['instr_size'] = kwargs['total_blocks'] * kwargs['total_threads_per_blocks'] * kwargs['basic_blocks']
        with pytest.raises(ValueError, match=field):
            KernelInfo(**kwargs)

    def test_rejects_wrong_size(self):
        with pytest.raises(ValueError, match="instr_size"):
            KernelInfo("k", 2, 2, 2, instr_size=7)

    def test_dump(self, capsys):
        KernelInfo.create("vecAdd", 5, 4, 256).dump()
        out = capsys.readouterr().out
        assert "vecAdd" in out
        assert "5120 counters" in out
