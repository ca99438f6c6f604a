# SPDX-License-Identifier: Apache-2.0
"""
Host-emulated device runtime.

"Device" buffers live in host memory as NumPy arrays, so the counter model
and the reduction can run without a GPU. The reduction follows the same
worker partition as the CuPy kernel.
"""

from typing import Any, Dict, Optional

import numpy as np

from .backend import DeviceBackend, DeviceOperationFailure
from .reduction import BLOCK_USAGE_DTYPE, LaunchGeometry


class HostBackend(DeviceBackend):
    """Device runtime emulated in host memory."""

    name = "host"

    def __init__(self):
        self._buffers: Dict[int, np.ndarray] = {}
        self._next_handle = 1

    def _lookup(self, operation: str, handle: int) -> np.ndarray:
        if handle not in self._buffers:
            raise DeviceOperationFailure(operation, f"invalid device handle {handle}")
        return self._buffers[handle]

    def to_device(self, host: np.ndarray) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._buffers[handle] = np.array(host, copy=True)
        return handle

    def from_device(self, handle: int, host: np.ndarray) -> None:
        device = self._lookup("memcpy DtoH", handle)
        if device.nbytes != host.nbytes:
            raise DeviceOperationFailure(
                "memcpy DtoH", f"size mismatch ({device.nbytes} != {host.nbytes} bytes)"
            )
        host[...] = device.view(host.dtype).reshape(host.shape)

    def free(self, handle: int) -> None:
        self._lookup("free", handle)
        del self._buffers[handle]

    def synchronize(self, stream: Optional[Any] = None) -> None:
        return None

    def device_array(self, handle: int) -> np.ndarray:
        """The emulated device memory behind a handle."""
        return self._lookup("access", handle)

    def reduce_block_usage(
        self,
        counters: int,
        geometry: LaunchGeometry,
        block_flops: np.ndarray,
        reduction_blocks: int,
        threads_per_block: int,
        stream: Optional[Any] = None
    ) -> np.ndarray:
        cells = self._lookup("reduce", counters).astype(np.uint64)
        if cells.size != geometry.instr_size:
            raise DeviceOperationFailure(
                "reduce", f"counter buffer holds {cells.size} cells, expected {geometry.instr_size}"
            )

        bb_count = geometry.basic_blocks
        workers = reduction_blocks * threads_per_block

        index = np.arange(cells.size, dtype=np.uint64)
        bucket = (index % np.uint64(workers)) // np.uint64(threads_per_block)
        block = index % np.uint64(bb_count)
        slot = (bucket * np.uint64(bb_count) + block).astype(np.intp)

        output = np.zeros(reduction_blocks * bb_count, dtype=BLOCK_USAGE_DTYPE)
        counts = np.zeros(output.size, dtype=np.uint64)
        flops = np.zeros(output.size, dtype=np.uint64)
        np.add.at(counts, slot, cells)
        np.add.at(flops, slot, cells * block_flops.astype(np.uint64)[block.astype(np.intp)])
        output['count'] = counts
        output['flops'] = flops
        return output
