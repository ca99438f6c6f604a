# SPDX-License-Identifier: Apache-2.0
"""
Runtime counter model and reduction.
Device backends use lazy imports so the host-emulated path does not need CuPy.
"""

from typing import Any, Dict, Optional

from .backend import DeviceBackend, DeviceOperationFailure
from .kernel_info import KernelInfo
from .reduction import BLOCK_USAGE_DTYPE, EmptyBlockDatabase, LaunchGeometry

__all__ = [
    'DeviceBackend',
    'DeviceOperationFailure',
    'KernelInfo',
    'BLOCK_USAGE_DTYPE',
    'EmptyBlockDatabase',
    'LaunchGeometry',
    'get_backend',
    'create_backend',
    'Instrumenter',
]


def _get_cupy():
    from .cupy_backend import CupyBackend
    return CupyBackend


def _get_host():
    from .host_backend import HostBackend
    return HostBackend


# Lazy registry - functions that return classes
_BACKEND_LOADERS = {
    'cupy': _get_cupy,
    'host': _get_host,
}

_HARDWARE_MODES = {
    'native': 'cupy',
    'emulated': 'host',
}

# Cache for loaded backends
_LOADED_BACKENDS = {}


def get_backend(name: str):
    """Get a device backend class by name (lazy loading)."""
    if name not in _BACKEND_LOADERS:
        raise ValueError(f"Unknown backend: {name}. Available: {list(_BACKEND_LOADERS.keys())}")

    if name not in _LOADED_BACKENDS:
        _LOADED_BACKENDS[name] = _BACKEND_LOADERS[name]()

    return _LOADED_BACKENDS[name]


def create_backend(config: Optional[Dict[str, Any]] = None) -> DeviceBackend:
    """Instantiate the backend selected by hardware.hardware_mode."""
    mode = (config or {}).get('hardware', {}).get('hardware_mode', 'native')
    if mode not in _HARDWARE_MODES:
        raise ValueError(f"Unknown hardware_mode: {mode}. Available: {list(_HARDWARE_MODES.keys())}")
    return get_backend(_HARDWARE_MODES[mode])()


def __getattr__(name):
    """Lazy import for module-level class access."""
    if name == 'Instrumenter':
        from .instrumenter import Instrumenter
        return Instrumenter
    if name == 'CupyBackend':
        return _get_cupy()
    if name == 'HostBackend':
        return _get_host()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
