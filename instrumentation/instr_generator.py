# SPDX-License-Identifier: Apache-2.0
"""
Kernel CFG instrumentation code generation.

Every method returns the source fragment for one injection point and has no
side effects: the same generator parameters always produce the same text.

Kernel side:  extra parameter, counter locals, per-block increment, commit.
Host side:    include, initialization, extra launch argument, finalize.
"""

import re
from dataclasses import dataclass
from typing import Optional


DEFAULT_RUNTIME_HEADER = 'hip_instrumentation.hpp'
DEFAULT_TABLE_CAPACITY = 256
DEFAULT_COUNTER_TYPE = 'unsigned int'
DEFAULT_SHARED_MEMORY_LIMIT = 48 * 1024   # Static __shared__ bytes per block

# Counter cell C types and their NumPy dtype names
COUNTER_TYPES = {
    'unsigned int': 'uint32',
    'unsigned long long': 'uint64',
}
COUNTER_BYTES = {
    'unsigned int': 4,
    'unsigned long long': 8,
}

INTEGER_LITERAL_PATTERN = re.compile(r'^\s*(\d+)[uUlL]*\s*$')
DIM3_PATTERN = re.compile(r'^\s*dim3\s*\((.*)\)\s*$')


def literal_thread_count(expr: str) -> Optional[int]:
    """
    Thread count of a launch block expression when it is a literal.

    Handles "256", "256u" and "dim3(16, 16)"; returns None otherwise.
    """
    match = DIM3_PATTERN.match(expr)
    parts = match.group(1).split(',') if match else [expr]

    total = 1
    for part in parts:
        literal = INTEGER_LITERAL_PATTERN.match(part)
        if not literal:
            return None
        total *= int(literal.group(1))
    return total


@dataclass(frozen=True)
class InstrGenerator:
    """Source fragments for one instrumented kernel."""
    kernel_name: str
    bb_count: int
    blocks: str = ""     # Grid expression at the launch site
    threads: str = ""    # Block expression at the launch site
    table_capacity: int = DEFAULT_TABLE_CAPACITY
    counter_type: str = DEFAULT_COUNTER_TYPE
    runtime_header: str = DEFAULT_RUNTIME_HEADER
    language: str = "hip"
    shared_memory_limit: int = DEFAULT_SHARED_MEMORY_LIMIT

    def __post_init__(self):
        if self.counter_type not in COUNTER_TYPES:
            raise ValueError(
                f"Unsupported counter type {self.counter_type!r}. Available: {list(COUNTER_TYPES)}"
            )

    @property
    def table_bytes(self) -> int:
        """Size of the shared counter table."""
        return self.bb_count * self.table_capacity * COUNTER_BYTES[self.counter_type]

    def with_geometry(self, blocks: str, threads: str) -> 'InstrGenerator':
        """Copy of this generator bound to a launch site's geometry."""
        return InstrGenerator(
            kernel_name=self.kernel_name,
            bb_count=self.bb_count,
            blocks=blocks,
            threads=threads,
            table_capacity=self.table_capacity,
            counter_type=self.counter_type,
            runtime_header=self.runtime_header,
            language=self.language,
            shared_memory_limit=self.shared_memory_limit
        )

    def check_capacity(self):
        """
        Reject counter tables that do not fit in shared memory and launch
        geometries that overflow the table.

        Only literal block expressions can be checked here; the runtime
        checks the actual thread count.
        """
        if self.table_bytes > self.shared_memory_limit:
            raise ValueError(
                f"Counter table of {self.kernel_name} needs {self.table_bytes} bytes of shared memory "
                f"({self.bb_count} blocks x {self.table_capacity} threads), "
                f"limit is {self.shared_memory_limit}"
            )

        threads = literal_thread_count(self.threads) if self.threads else None
        if threads is not None and threads > self.table_capacity:
            raise ValueError(
                f"Kernel {self.kernel_name} is launched with {threads} threads per block, "
                f"counter table capacity is {self.table_capacity}"
            )

    # ----- Kernel side ----- #

    def generate_block_code(self, block_id: int) -> str:
        return (
            f"/* BB {block_id} ({self.bb_count}) */\n"
            f"_bb_counters[{block_id}][_instr_thread] += 1;\n"
        )

    def generate_instrumentation_parms(self, first: bool = False) -> str:
        separator = "" if first else ","
        return f"{separator}/* Extra params */ {self.counter_type}* _instr_ptr"

    def generate_instrumentation_locals(self) -> str:
        return (
            "\n/* Instrumentation locals */\n"
            f"__shared__ {self.counter_type} _bb_counters[{self.bb_count}][{self.table_capacity}];\n"
            f"unsigned int _bb_count = {self.bb_count};\n"
            "unsigned int _instr_thread = threadIdx.x + blockDim.x * "
            "(threadIdx.y + blockDim.y * threadIdx.z);\n"
            "for (unsigned int _bb = 0u; _bb < _bb_count; ++_bb) {\n"
            "    _bb_counters[_bb][_instr_thread] = 0u;\n"
            "}\n"
        )

    def generate_instrumentation_commit(self) -> str:
        return (
            "/* Finalize instrumentation */\n"
            "{\n"
            "    unsigned long long _instr_block = blockIdx.x + gridDim.x * "
            "(blockIdx.y + gridDim.y * blockIdx.z);\n"
            "    unsigned long long _instr_threads = blockDim.x * blockDim.y * blockDim.z;\n"
            f"    {self.counter_type}* _instr_cells = _instr_ptr + "
            "(_instr_block * _instr_threads + _instr_thread) * _bb_count;\n"
            "    for (unsigned int _bb = 0u; _bb < _bb_count; ++_bb) {\n"
            "        _instr_cells[_bb] = _bb_counters[_bb][_instr_thread];\n"
            "    }\n"
            "}\n"
        )

    # ----- Host side ----- #

    def generate_includes(self) -> str:
        return f"#include \"{self.runtime_header}\"\n"

    def generate_instrumentation_init(self) -> str:
        name = self.kernel_name
        return (
            "{\n"
            "/* Instrumentation variables, hipMalloc, etc. */\n\n"
            f"hip::KernelInfo _{name}_info(\"{name}\", {self.bb_count}, "
            f"dim3({self.blocks}), dim3({self.threads}));\n"
            f"hip::Instrumenter _{name}_instr(_{name}_info);\n"
            f"auto _{name}_ptr = _{name}_instr.toDevice();\n\n"
        )

    def generate_instrumentation_launch_parms(self, first: bool = False) -> str:
        separator = "" if first else ","
        return (
            f"{separator}/* Extra parameters for kernel launch ( {self.bb_count} )*/ "
            f"({self.counter_type}*) _{self.kernel_name}_ptr"
        )

    def generate_instrumentation_finalize(self) -> str:
        name = self.kernel_name
        return (
            "\n\n/* Finalize instrumentation : copy back data */\n"
            f"_{name}_instr.fromDevice(_{name}_ptr);\n"
            f"_{name}_instr.dumpBin();\n"
            f"{self.language}Free(_{name}_ptr);\n"
            "}\n"
        )
