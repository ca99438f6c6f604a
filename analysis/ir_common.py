# SPDX-License-Identifier: Apache-2.0
"""
Common data structures for LLVM IR analysis.

Provides a normalized representation of the device IR emitted for a kernel:
functions made of basic blocks made of instructions, plus the debug
locations needed to map a block back to the kernel source.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict


@dataclass
class DebugLocation:
    """Source position attached to an instruction (!DILocation)."""
    filename: str
    line: int
    column: int = 0

    def __str__(self):
        return f"{self.filename}:{self.line}:{self.column}"


@dataclass
class IRInstruction:
    """A single IR instruction."""
    opcode: str                  # "fadd", "load", "getelementptr", ...
    text: str                    # Raw instruction text (without result)
    result: str = ""             # "%3" or "" for void instructions
    access_type: str = ""        # Loaded/stored/indexed type, if any
    dbg: Optional[str] = None    # Metadata id of the !dbg attachment ("!42")

    def __str__(self):
        return f"{self.result} = {self.text}" if self.result else self.text


@dataclass
class IRBasicBlock:
    """A basic block: a label and its straight-line instructions."""
    index: int
    label: str
    instructions: List[IRInstruction] = field(default_factory=list)
    begin: Optional[DebugLocation] = None
    end: Optional[DebugLocation] = None

    def __iter__(self):
        return iter(self.instructions)

    def __len__(self):
        return len(self.instructions)

    def __str__(self):
        return f"{self.label}: {len(self.instructions)} instructions"


@dataclass
class IRFunction:
    """A function definition in the module."""
    name: str
    blocks: List[IRBasicBlock] = field(default_factory=list)
    calling_conv: str = ""       # "amdgpu_kernel", "ptx_kernel", ...

    @property
    def is_kernel(self) -> bool:
        return 'kernel' in self.calling_conv

    def instruction_count(self) -> int:
        return sum(len(bb) for bb in self.blocks)


@dataclass
class IRModule:
    """Parsed IR module."""
    source_filename: str = ""
    target_triple: str = ""
    functions: List[IRFunction] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)

    def function_names(self) -> List[str]:
        return [f.name for f in self.functions]
