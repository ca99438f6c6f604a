# SPDX-License-Identifier: Apache-2.0
"""
CUDA device runtime through CuPy.

Counter buffers are raw runtime allocations (cudaMalloc / cudaMemcpy /
cudaFree) so their lifetime is explicit and independent of the CuPy memory
pool. The device phase of the reduction is a RawKernel.
"""

from dataclasses import dataclass
from typing import Any, Optional

import cupy as cp
import numpy as np

from instrumentation.instr_generator import COUNTER_TYPES

from .backend import DeviceBackend, DeviceOperationFailure
from .reduction import BLOCK_USAGE_DTYPE, LaunchGeometry


REDUCTION_KERNEL_SOURCE = r'''
extern "C" __global__
void reduce_flops(const counter_t* counters,
                  unsigned int threads_per_block,
                  unsigned int total_blocks,
                  unsigned int basic_blocks,
                  const unsigned long long* block_flops,
                  unsigned long long* partial,
                  unsigned long long* output)
{
    const unsigned long long instr_size =
        (unsigned long long)total_blocks * threads_per_block * basic_blocks;
    const unsigned int workers = gridDim.x * blockDim.x;
    const unsigned int worker = blockIdx.x * blockDim.x + threadIdx.x;

    // Per worker {count, flops} pairs for every basic block
    unsigned long long* mine = partial + (unsigned long long)worker * basic_blocks * 2;
    for (unsigned int bb = 0; bb < basic_blocks; ++bb) {
        mine[2 * bb] = 0;
        mine[2 * bb + 1] = 0;
    }

    for (unsigned long long i = worker; i < instr_size; i += workers) {
        const unsigned int bb = i % basic_blocks;
        const unsigned long long count = counters[i];
        mine[2 * bb] += count;
        mine[2 * bb + 1] += count * block_flops[bb];
    }

    __syncthreads();

    // One bucket per reduction block
    for (unsigned int bb = threadIdx.x; bb < basic_blocks; bb += blockDim.x) {
        unsigned long long count = 0;
        unsigned long long flops = 0;
        for (unsigned int t = 0; t < blockDim.x; ++t) {
            const unsigned long long* p =
                partial + ((unsigned long long)(blockIdx.x * blockDim.x + t) * basic_blocks + bb) * 2;
            count += p[0];
            flops += p[1];
        }
        output[2 * ((unsigned long long)blockIdx.x * basic_blocks + bb)] = count;
        output[2 * ((unsigned long long)blockIdx.x * basic_blocks + bb) + 1] = flops;
    }
}
'''


# counter dtype name -> C type of the counter cells
COUNTER_CTYPES = {dtype: ctype for ctype, dtype in COUNTER_TYPES.items()}


def reduction_source(counter_ctype: str) -> str:
    return f"typedef {counter_ctype} counter_t;\n" + REDUCTION_KERNEL_SOURCE

@dataclass
class DeviceBuffer:
    """A raw device allocation."""
    ptr: int
    nbytes: int
    dtype: np.dtype
    size: int

    def as_array(self) -> cp.ndarray:
        """CuPy view of the allocation; does not take ownership."""
        memory = cp.cuda.UnownedMemory(self.ptr, self.nbytes, self)
        return cp.ndarray((self.size,), dtype=self.dtype, memptr=cp.cuda.MemoryPointer(memory, 0))


class CupyBackend(DeviceBackend):
    """Device runtime on a CUDA GPU."""

    name = "cupy"

    def __init__(self):
        self._reduction_kernels = {}

    def reduction_kernel(self, dtype: np.dtype) -> cp.RawKernel:
        """Reduction kernel compiled for one counter width."""
        name = np.dtype(dtype).name
        if name not in COUNTER_CTYPES:
            raise DeviceOperationFailure("reduce", f"unsupported counter dtype {name}")
        if name not in self._reduction_kernels:
            self._reduction_kernels[name] = cp.RawKernel(
                reduction_source(COUNTER_CTYPES[name]), 'reduce_flops'
            )
        return self._reduction_kernels[name]

    def to_device(self, host: np.ndarray) -> DeviceBuffer:
        host = np.ascontiguousarray(host)
        try:
            ptr = cp.cuda.runtime.malloc(host.nbytes)
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise DeviceOperationFailure("malloc", str(e)) from e

        buffer = DeviceBuffer(ptr=ptr, nbytes=host.nbytes, dtype=host.dtype, size=host.size)
        try:
            cp.cuda.runtime.memcpy(
                ptr, host.ctypes.data, host.nbytes, cp.cuda.runtime.memcpyHostToDevice
            )
        except cp.cuda.runtime.CUDARuntimeError as e:
            cp.cuda.runtime.free(ptr)
            raise DeviceOperationFailure("memcpy HtoD", str(e)) from e
        return buffer

    def from_device(self, handle: DeviceBuffer, host: np.ndarray) -> None:
        if handle.nbytes != host.nbytes:
            raise DeviceOperationFailure(
                "memcpy DtoH", f"size mismatch ({handle.nbytes} != {host.nbytes} bytes)"
            )
        if not host.flags['C_CONTIGUOUS']:
            raise DeviceOperationFailure("memcpy DtoH", "host buffer is not contiguous")
        try:
            cp.cuda.runtime.memcpy(
                host.ctypes.data, handle.ptr, handle.nbytes, cp.cuda.runtime.memcpyDeviceToHost
            )
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise DeviceOperationFailure("memcpy DtoH", str(e)) from e

    def free(self, handle: DeviceBuffer) -> None:
        try:
            cp.cuda.runtime.free(handle.ptr)
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise DeviceOperationFailure("free", str(e)) from e

    def synchronize(self, stream: Optional[Any] = None) -> None:
        try:
            if stream is None:
                cp.cuda.runtime.deviceSynchronize()
            else:
                stream.synchronize()
        except cp.cuda.runtime.CUDARuntimeError as e:
            raise DeviceOperationFailure("synchronize", str(e)) from e

    def reduce_block_usage(
        self,
        counters: DeviceBuffer,
        geometry: LaunchGeometry,
        block_flops: np.ndarray,
        reduction_blocks: int,
        threads_per_block: int,
        stream: Optional[Any] = None
    ) -> np.ndarray:
        if counters.size != geometry.instr_size:
            raise DeviceOperationFailure(
                "reduce", f"counter buffer holds {counters.size} cells, expected {geometry.instr_size}"
            )

        bb_count = geometry.basic_blocks
        workers = reduction_blocks * threads_per_block
        try:
            device_flops = cp.asarray(block_flops.astype(np.uint64))
            partial = cp.empty(workers * bb_count * 2, dtype=cp.uint64)
            output = cp.empty(reduction_blocks * bb_count * 2, dtype=cp.uint64)

            self.reduction_kernel(counters.dtype)(
                (reduction_blocks,), (threads_per_block,),
                (
                    counters.as_array(),
                    np.uint32(geometry.threads_per_block),
                    np.uint32(geometry.total_blocks),
                    np.uint32(bb_count),
                    device_flops,
                    partial,
                    output,
                ),
                stream=stream
            )
            self.synchronize(stream)
            host = output.get(stream=stream)
        except (cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError) as e:
            raise DeviceOperationFailure("reduce", str(e)) from e

        return host.view(BLOCK_USAGE_DTYPE)
