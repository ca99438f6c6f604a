# SPDX-License-Identifier: Apache-2.0
"""
Basic-block counter instrumentation of a kernel source file.

Locates a kernel by exact name, builds the CFG of its body and inserts a
counter increment before the first statement of every basic block. The
kernel also receives the counter buffer parameter, the shared counter table
and the commits that publish it; launches of the kernel in the same file are
wrapped with the host runtime calls.

The input file is never modified. The instrumented copy is written only when
every edit could be placed.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .cfg import CFG, CFGBuilder
from .edits import Edit, EditSet, write_output
from .instr_generator import (
    DEFAULT_COUNTER_TYPE,
    DEFAULT_RUNTIME_HEADER,
    DEFAULT_SHARED_MEMORY_LIMIT,
    DEFAULT_TABLE_CAPACITY,
    InstrGenerator,
)
from .source import KernelFunction, LaunchSite, SourceNode, find_launch_sites


INSTRUMENTED = 'instrumented'
KERNEL_NOT_FOUND = 'kernel_not_found'
NO_EDITS = 'no_edits'

COUNTED = 'counted'
SKIPPED = 'skipped'


@dataclass
class BlockOutcome:
    """What happened to one CFG block."""
    block_id: int
    status: str                    # counted | skipped
    offset: Optional[int] = None   # Insertion offset when counted
    reason: str = ""               # Why the block was skipped


@dataclass
class InstrumentationResult:
    status: str
    kernel: str
    output_path: Optional[str] = None
    blocks: List[BlockOutcome] = field(default_factory=list)
    launches: List[LaunchSite] = field(default_factory=list)
    cfg: Optional[CFG] = None
    function: Optional[KernelFunction] = None

    @property
    def counted(self) -> List[BlockOutcome]:
        return [b for b in self.blocks if b.status == COUNTED]

    @property
    def skipped(self) -> List[BlockOutcome]:
        return [b for b in self.blocks if b.status == SKIPPED]

    def summary(self) -> str:
        if self.status == KERNEL_NOT_FOUND:
            return f"Kernel {self.kernel} not found"
        return (
            f"{self.kernel}: {len(self.counted)}/{len(self.blocks)} blocks counted, "
            f"{len(self.launches)} launch site(s), status {self.status}"
        )


def iter_returns(node: SourceNode, plain: bool = True) -> Iterator[Tuple[SourceNode, bool]]:
    """
    Yield every return statement below ``node``.

    The flag tells whether the return sits directly inside braces, i.e.
    whether a statement can be placed in front of it as is.
    """
    if node.kind == 'return':
        yield node, plain
        return
    for child in node.children:
        yield from iter_returns(child, plain=True)
    for name, part in node.parts.items():
        if name == 'sub':
            yield from iter_returns(part, plain)
        elif name in ('then', 'else', 'body'):
            yield from iter_returns(part, plain=False)


class KernelCfgInstrumenter:
    """Instrument one kernel of a source file with basic-block counters."""

    def __init__(
        self,
        kernel_name: str,
        output_file: str,
        config: Optional[Dict[str, Any]] = None,
        frontend=None,
        cfg_builder: Optional[CFGBuilder] = None
    ):
        self.kernel_name = kernel_name
        self.output_file = output_file
        self.config = config or {}

        instrumentation = self.config.get('instrumentation', {})
        self.instrument_host = instrumentation.get('instrument_host', True)
        self.runtime_header = instrumentation.get('runtime_header', DEFAULT_RUNTIME_HEADER)
        self.table_capacity = instrumentation.get('max_threads_per_block', DEFAULT_TABLE_CAPACITY)
        self.counter_type = instrumentation.get('counter_type', DEFAULT_COUNTER_TYPE)
        self.shared_memory_limit = instrumentation.get('shared_memory_limit', DEFAULT_SHARED_MEMORY_LIMIT)
        self.language = self.config.get('hardware', {}).get('language', 'hip')

        if frontend is None:
            from .frontend import ClangFrontend
            frontend = ClangFrontend(self.config.get('analysis', {}).get('extra_args'))
        self.frontend = frontend
        self.cfg_builder = cfg_builder or CFGBuilder()

    def generator(self, bb_count: int) -> InstrGenerator:
        return InstrGenerator(
            kernel_name=self.kernel_name,
            bb_count=bb_count,
            table_capacity=self.table_capacity,
            counter_type=self.counter_type,
            runtime_header=self.runtime_header,
            language=self.language,
            shared_memory_limit=self.shared_memory_limit
        )

    def run(self, source_path: str) -> InstrumentationResult:
        """
        Instrument ``source_path`` into the configured output file.

        Returns:
            InstrumentationResult; status is kernel_not_found when the file
            holds no definition of the kernel, no_edits when no block could
            be counted. No file is written in either case.

        Raises:
            IncompatibleEdit: If two edits claim the same position
            ValueError: If the output path is the input path
        """
        if os.path.abspath(source_path) == os.path.abspath(self.output_file):
            raise ValueError(f"Refusing to overwrite the input file {source_path}")

        kernel = self.frontend.load_kernel(source_path, self.kernel_name)
        if kernel is None:
            return InstrumentationResult(status=KERNEL_NOT_FOUND, kernel=self.kernel_name)

        cfg = self.cfg_builder.build(kernel.body)
        edits, outcomes, launches = self.instrument(kernel, cfg)
        if edits.empty():
            return InstrumentationResult(
                status=NO_EDITS,
                kernel=self.kernel_name,
                blocks=outcomes,
                launches=launches,
                cfg=cfg,
                function=kernel
            )

        write_output(edits.apply(kernel.buffer), self.output_file)
        print(f"    Instrumented source saved: {self.output_file}")

        return InstrumentationResult(
            status=INSTRUMENTED,
            kernel=self.kernel_name,
            output_path=self.output_file,
            blocks=outcomes,
            launches=launches,
            cfg=cfg,
            function=kernel
        )

    def instrument(
        self,
        kernel: KernelFunction,
        cfg: Optional[CFG] = None
    ) -> Tuple[EditSet, List[BlockOutcome], List[LaunchSite]]:
        """Compute every edit for a located kernel without touching the disk."""
        if cfg is None:
            cfg = self.cfg_builder.build(kernel.body)
        gen = self.generator(len(cfg))
        gen.check_capacity()
        edits = EditSet()

        outcomes = self.count_blocks(cfg, gen, edits)
        if not any(o.status == COUNTED for o in outcomes):
            return edits, outcomes, []

        self.instrument_kernel(kernel, gen, edits)

        launches = []
        if self.instrument_host:
            launches = find_launch_sites(kernel.buffer, self.kernel_name)
            self.instrument_launches(launches, gen, edits)

        return edits, outcomes, launches

    def count_blocks(self, cfg: CFG, gen: InstrGenerator, edits: EditSet) -> List[BlockOutcome]:
        outcomes = []
        for block in cfg:
            front = block.front()
            if front is None:
                outcomes.append(BlockOutcome(block.id, SKIPPED, reason="empty block"))
            elif not front.is_statement():
                outcomes.append(BlockOutcome(
                    block.id, SKIPPED, reason=f"first element is a {front.kind}"
                ))
            else:
                edits.insert(front.offset, gen.generate_block_code(block.id))
                outcomes.append(BlockOutcome(block.id, COUNTED, offset=front.offset))
        return outcomes

    def instrument_kernel(self, kernel: KernelFunction, gen: InstrGenerator, edits: EditSet):
        """Kernel parameter, counter table and the commits at every exit."""
        if kernel.void_param is not None:
            offset, length = kernel.void_param
            edits.add(Edit(offset, length, gen.generate_instrumentation_parms(first=True)))
        else:
            edits.insert(
                kernel.params_close,
                gen.generate_instrumentation_parms(first=kernel.params_empty)
            )

        body = kernel.body
        edits.compose(body.begin + 1, gen.generate_instrumentation_locals(), before=True)

        commit = gen.generate_instrumentation_commit()
        for node, braced in iter_returns(body):
            if braced:
                edits.compose(node.begin, commit)
            else:
                edits.compose(node.begin, "{\n" + commit)
                edits.compose(node.end, "}\n", before=True)

        edits.compose(body.end - 1, commit)

    def instrument_launches(self, launches: List[LaunchSite], gen: InstrGenerator, edits: EditSet):
        if not launches:
            return

        edits.compose(0, gen.generate_includes(), before=True)
        for site in launches:
            site_gen = gen.with_geometry(site.grid, site.block)
            site_gen.check_capacity()
            edits.compose(site.begin, site_gen.generate_instrumentation_init())
            edits.insert(
                site.args_close,
                site_gen.generate_instrumentation_launch_parms(first=site.args_empty)
            )
            edits.compose(site.end, site_gen.generate_instrumentation_finalize(), before=True)


def instrument_file(
    source_path: str,
    kernel_name: str,
    output_file: str,
    config: Optional[Dict[str, Any]] = None
) -> InstrumentationResult:
    """Convenience wrapper around KernelCfgInstrumenter."""
    return KernelCfgInstrumenter(kernel_name, output_file, config).run(source_path)
