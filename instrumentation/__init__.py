# SPDX-License-Identifier: Apache-2.0
"""Source-to-source basic-block counter instrumentation."""

from .block_map import BlockMapper, BlockMapping, map_block_costs
from .cfg import CFG, CFGBuilder, build_cfg
from .cfg_instrumenter import KernelCfgInstrumenter, InstrumentationResult, BlockOutcome
from .edits import EditSet, IncompatibleEdit
from .instr_generator import InstrGenerator

__all__ = [
    'BlockMapper',
    'BlockMapping',
    'map_block_costs',
    'CFG',
    'CFGBuilder',
    'build_cfg',
    'KernelCfgInstrumenter',
    'InstrumentationResult',
    'BlockOutcome',
    'EditSet',
    'IncompatibleEdit',
    'InstrGenerator',
]
