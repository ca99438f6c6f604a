# SPDX-License-Identifier: Apache-2.0
"""
Device runtime interface shared by the CuPy and host-emulated backends.

A backend provides allocate / copy / synchronize / free primitives over
opaque device handles, plus the device phase of the flop reduction. Every
failure is reported as DeviceOperationFailure and is never retried.
"""

from typing import Any, Optional

import numpy as np


class DeviceOperationFailure(RuntimeError):
    """A device runtime call failed."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message


class DeviceBackend:
    """Base class for device runtimes."""

    name = "base"

    def to_device(self, host: np.ndarray) -> Any:
        """Allocate a device buffer and copy ``host`` into it."""
        raise NotImplementedError

    def from_device(self, handle: Any, host: np.ndarray) -> None:
        """Copy a device buffer back into ``host`` in place."""
        raise NotImplementedError

    def free(self, handle: Any) -> None:
        raise NotImplementedError

    def synchronize(self, stream: Optional[Any] = None) -> None:
        """Wait for the whole device, or only for ``stream`` when given."""
        raise NotImplementedError

    def reduce_block_usage(
        self,
        counters: Any,
        geometry,
        block_flops: np.ndarray,
        reduction_blocks: int,
        threads_per_block: int,
        stream: Optional[Any] = None
    ) -> np.ndarray:
        """
        Device phase of the flop reduction.

        Returns:
            Host array of BLOCK_USAGE_DTYPE, reduction_blocks * basic_blocks
            entries, bucket-major
        """
        raise NotImplementedError
