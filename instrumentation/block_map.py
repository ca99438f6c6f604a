# SPDX-License-Identifier: Apache-2.0
"""
Static block costs keyed by CFG block id.

The analyzer measures costs on the device IR, whose basic blocks do not line
up with the source CFG that numbers the counter slots. Each IR block is
attributed to the CFG block holding the innermost element that covers its
debug location; costs of IR blocks landing in the same CFG block are summed.
"""

import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from analysis.basic_block import BasicBlock, BlockDatabase
from analysis.static_analyzer import BlockCosts

from .cfg import CFG
from .source import KernelFunction, skip_space


LOCATION_PATTERN = re.compile(r'^(.*):(\d+):(\d+)$')


def parse_location(text: str) -> Optional[Tuple[str, int, int]]:
    """Split "file:line:column" into its parts, None when malformed."""
    match = LOCATION_PATTERN.match(text)
    if not match:
        return None
    return match.group(1), int(match.group(2)), int(match.group(3))


class LineTable:
    """Line/column to byte offset conversion for a source buffer."""

    def __init__(self, buffer: bytes):
        self.buffer = buffer
        self.starts = [0] + [m.end() for m in re.finditer(rb'\n', buffer)]

    def offset(self, line: int, column: int) -> Optional[int]:
        """
        Byte offset of a 1-based line and column.

        Column 0 (unknown) resolves to the first non-blank character of the line.
        """
        if line < 1 or line > len(self.starts):
            return None
        start = self.starts[line - 1]
        if column == 0:
            return skip_space(self.buffer, start)
        return start + column - 1


def block_at(cfg: CFG, offset: int) -> Optional[int]:
    """Id of the block whose innermost element covers ``offset``."""
    best = None
    for block in cfg:
        for element in block.elements:
            node = element.node
            if node.begin <= offset < node.end:
                span = node.end - node.begin
                if best is None or span < best[0]:
                    best = (span, block.id)
    return best[1] if best else None


@dataclass
class BlockMapping:
    blocks: List[BasicBlock]                                  # One per CFG block, in id order
    unmapped: List[BlockCosts] = field(default_factory=list)  # IR blocks outside the kernel body

    @property
    def unmapped_flops(self) -> int:
        return sum(c.flops for c in self.unmapped)

    def database(self) -> BlockDatabase:
        return BlockDatabase(self.blocks)


class BlockMapper:
    """Attribute IR block costs to the CFG blocks of a located kernel."""

    def __init__(self, cfg: CFG, kernel: KernelFunction):
        self.cfg = cfg
        self.kernel = kernel
        self.lines = LineTable(kernel.buffer)
        self.source_name = os.path.basename(kernel.path)

    def locate(self, location: str) -> Optional[int]:
        """CFG block id of a "file:line:column" location in the kernel body."""
        parsed = parse_location(location)
        if parsed is None:
            return None

        filename, line, column = parsed
        if os.path.basename(filename) != self.source_name:
            return None

        offset = self.lines.offset(line, column)
        body = self.kernel.body
        if offset is None or not body.begin <= offset < body.end:
            return None
        return block_at(self.cfg, offset)

    def map(self, costs: List[BlockCosts]) -> BlockMapping:
        flops = [0] * len(self.cfg)
        begins = [""] * len(self.cfg)
        ends = [""] * len(self.cfg)
        unmapped = []

        for cost in costs:
            block_id = self.locate(cost.begin_loc)
            if block_id is None:
                block_id = self.locate(cost.end_loc)
            if block_id is None:
                unmapped.append(cost)
                continue

            flops[block_id] += cost.flops
            if not begins[block_id]:
                begins[block_id] = cost.begin_loc
            if cost.end_loc:
                ends[block_id] = cost.end_loc

        blocks = [
            BasicBlock(id=block.id, flops=flops[block.id], begin_loc=begins[block.id], end_loc=ends[block.id])
            for block in self.cfg
        ]
        return BlockMapping(blocks=blocks, unmapped=unmapped)


def map_block_costs(costs: List[BlockCosts], cfg: CFG, kernel: KernelFunction) -> BlockMapping:
    return BlockMapper(cfg, kernel).map(costs)
