# SPDX-License-Identifier: Apache-2.0
"""
Static per-basic-block cost analysis of a kernel.

Compiles the kernel source for the device to LLVM IR, locates the kernel
function and runs the instruction counters over each of its basic blocks.
"""

import os
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .instr_counters import FlopCounter, LoadCounter, StoreCounter
from .ir_common import IRFunction, IRModule
from .llvm_ir_parser import LLVMIRParser


class CompilationFailure(RuntimeError):
    """Raised when the device compiler fails to emit IR."""


@dataclass
class BlockCosts:
    """
    Static cost estimates for one IR basic block.

    ``index`` is the position of the block in its IR function. It is not a
    counter slot: see instrumentation.block_map for the CFG numbering.
    """
    index: int
    label: str
    flops: int
    loads: int   # Bytes
    stores: int  # Bytes
    begin_loc: str = ""
    end_loc: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'label': self.label,
            'flops': self.flops,
            'loads': self.loads,
            'stores': self.stores,
            'begin': self.begin_loc,
            'end': self.end_loc,
        }


def analyze_function(function: IRFunction) -> List[BlockCosts]:
    """
    Compute static costs for every basic block of a function.

    Counters accumulate across calls, so a fresh set is built per block.
    """
    costs = []
    for block in function.blocks:
        costs.append(BlockCosts(
            index=block.index,
            label=block.label,
            flops=FlopCounter()(block),
            loads=LoadCounter()(block),
            stores=StoreCounter()(block),
            begin_loc=str(block.begin) if block.begin else "",
            end_loc=str(block.end) if block.end else ""
        ))
    return costs


class StaticAnalyzer:
    """Compile device code to LLVM IR and analyze a kernel's basic blocks."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}

        hardware = self.config.get('hardware', {})
        self.clang_path = hardware.get('clang_path', 'clang++')
        self.language = hardware.get('language', 'hip')
        self.offload_arch = hardware.get('offload_arch', 'gfx90a')

        analysis = self.config.get('analysis', {})
        self.opt_level = analysis.get('opt_level', 'O1')
        self.extra_args = list(analysis.get('extra_args', []))

        self.output_dir = self.config.get('output_dir', 'outputs')
        self.parser = LLVMIRParser()

    def compile_command(self, source_path: str, output_path: str) -> List[str]:
        """Build the device-only compilation command line."""
        if self.language == 'cuda':
            target = [f'--cuda-gpu-arch={self.offload_arch}', '-nocudalib']
        else:
            target = [f'--offload-arch={self.offload_arch}']

        return [
            self.clang_path,
            '-x', self.language,
            '--cuda-device-only',
            *target,
            f'-{self.opt_level}',
            '-g',
            '-S', '-emit-llvm',
            *self.extra_args,
            source_path,
            '-o', output_path,
        ]

    def compile_device_ir(self, source_path: str) -> str:
        """
        Emit device LLVM IR for a source file.

        Args:
            source_path: HIP/CUDA source file

        Returns:
            Path to the emitted .ll file
        """
        os.makedirs(self.output_dir, exist_ok=True)
        stem = os.path.splitext(os.path.basename(source_path))[0]
        ir_path = os.path.join(self.output_dir, f'{stem}_{self.offload_arch}.ll')

        command = self.compile_command(source_path, ir_path)
        try:
            subprocess.run(command, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise CompilationFailure(
                f"Device compilation failed ({' '.join(command)}):\n{e.stderr}"
            ) from e
        except FileNotFoundError as e:
            raise CompilationFailure(f"Compiler not found at {self.clang_path}") from e

        print(f"    Device IR saved: {ir_path}")
        return ir_path

    def analyze_ir(self, ir_content: str, kernel_name: str) -> Optional[List[BlockCosts]]:
        """
        Analyze a kernel in already emitted IR.

        Returns:
            Per-block costs, or None when the kernel is not in the module
        """
        module: IRModule = self.parser.parse(ir_content)
        function = self.parser.find_kernel(module, kernel_name)
        if function is None:
            return None
        return analyze_function(function)

    def analyze_source(self, source_path: str, kernel_name: str) -> Optional[List[BlockCosts]]:
        """Compile a source file and analyze one of its kernels."""
        ir_path = self.compile_device_ir(source_path)
        with open(ir_path) as f:
            return self.analyze_ir(f.read(), kernel_name)
