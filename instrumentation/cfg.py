# SPDX-License-Identifier: Apache-2.0
"""
Control-flow graph of a kernel body.

Builds basic blocks over the SourceNode statement tree produced by the
front-end. Block numbering follows creation order: the entry block is 0, the
exit block is 1 and body blocks follow as they are encountered. Branching
inside expressions (&&, ||, ?:) is not split into separate blocks.

Every block element records how it sits in the source:

    STATEMENT   statement directly inside braces (or under a case/label that is)
    NESTED      unbraced body of if/for/while/do
    CONDITION   loop condition
    INCREMENT   for-loop increment

Only STATEMENT elements are positions where a statement can be inserted
without changing the meaning of the code around it.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .source import SourceNode


STATEMENT = 'statement'
NESTED = 'nested'
CONDITION = 'condition'
INCREMENT = 'increment'


@dataclass
class CFGElement:
    kind: str
    node: SourceNode

    @property
    def offset(self) -> int:
        return self.node.begin

    def is_statement(self) -> bool:
        return self.kind == STATEMENT

    def __str__(self):
        return f"{self.kind} {self.node}"


@dataclass
class CFGBlock:
    id: int
    elements: List[CFGElement] = field(default_factory=list)
    successors: List[int] = field(default_factory=list)
    predecessors: List[int] = field(default_factory=list)

    def front(self) -> Optional[CFGElement]:
        """First element of the block, None for an empty block."""
        return self.elements[0] if self.elements else None


@dataclass
class CFG:
    blocks: List[CFGBlock]
    entry: int = 0
    exit: int = 1

    def __len__(self) -> int:
        return len(self.blocks)

    def __iter__(self) -> Iterator[CFGBlock]:
        return iter(self.blocks)

    def __getitem__(self, block_id: int) -> CFGBlock:
        return self.blocks[block_id]

    def dump(self) -> str:
        """Human readable listing of blocks, elements and edges."""
        lines = []
        for block in self.blocks:
            name = {self.entry: ' (ENTRY)', self.exit: ' (EXIT)'}.get(block.id, '')
            lines.append(f"[B{block.id}{name}]")
            for i, element in enumerate(block.elements):
                lines.append(f"  {i}: {element}")
            if block.predecessors:
                lines.append(f"  Preds: {' '.join(f'B{p}' for p in block.predecessors)}")
            if block.successors:
                lines.append(f"  Succs: {' '.join(f'B{s}' for s in block.successors)}")
        return '\n'.join(lines)


class CFGBuilder:
    """Structural CFG construction over a function body."""

    def build(self, body: SourceNode) -> CFG:
        self.blocks: List[CFGBlock] = []
        self.break_targets: List[int] = []
        self.continue_targets: List[int] = []
        self.switches: List[Tuple[int, List[bool]]] = []
        self.labels: Dict[str, int] = {}
        self.gotos: List[Tuple[int, str]] = []

        entry = self._new_block()
        exit_block = self._new_block()
        first = self._new_block()
        self._link(entry, first)

        last = self._build(body, first, plain=True)
        self._link(last, exit_block.id)

        for source, label in self.gotos:
            if label in self.labels:
                self._link_ids(source, self.labels[label])

        return CFG(self.blocks, entry=entry.id, exit=exit_block.id)

    # ----- Helpers ----- #

    def _new_block(self) -> CFGBlock:
        block = CFGBlock(id=len(self.blocks))
        self.blocks.append(block)
        return block

    def _link(self, source: CFGBlock, target):
        target_id = target if isinstance(target, int) else target.id
        self._link_ids(source.id, target_id)

    def _link_ids(self, source: int, target: int):
        if target not in self.blocks[source].successors:
            self.blocks[source].successors.append(target)
            self.blocks[target].predecessors.append(source)

    def _append(self, block: CFGBlock, node: SourceNode, plain: bool):
        block.elements.append(CFGElement(STATEMENT if plain else NESTED, node))

    # ----- Statements ----- #

    def _build(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        """
        Add a statement to the graph starting in block ``cur``.

        Returns:
            The block control flows out of after the statement
        """
        handler = getattr(self, f'_build_{node.kind}', None)
        if handler is not None:
            return handler(node, cur, plain)
        self._append(cur, node, plain)
        return cur

    def _build_compound(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        for child in node.children:
            cur = self._build(child, cur, plain=True)
        return cur

    def _build_if(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        self._append(cur, node, plain)

        then_block = self._new_block()
        self._link(cur, then_block)
        then_end = self._build(node.parts['then'], then_block, plain=False)

        if 'else' in node.parts:
            else_block = self._new_block()
            self._link(cur, else_block)
            else_end = self._build(node.parts['else'], else_block, plain=False)
            join = self._new_block()
            self._link(else_end, join)
        else:
            join = self._new_block()
            self._link(cur, join)

        self._link(then_end, join)
        return join

    def _loop_body(self, body: SourceNode, after: CFGBlock,
                   continue_target: CFGBlock) -> Tuple[CFGBlock, CFGBlock]:
        body_block = self._new_block()
        self.break_targets.append(after.id)
        self.continue_targets.append(continue_target.id)
        body_end = self._build(body, body_block, plain=False)
        self.break_targets.pop()
        self.continue_targets.pop()
        return body_block, body_end

    def _build_while(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        cond = self._new_block()
        cond.elements.append(CFGElement(CONDITION, node.parts['cond']))
        self._link(cur, cond)

        after = self._new_block()
        body_block, body_end = self._loop_body(node.parts['body'], after, cond)
        self._link(cond, body_block)
        self._link(cond, after)
        self._link(body_end, cond)
        return after

    _build_for_range = _build_while

    def _build_do(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        cond = self._new_block()
        cond.elements.append(CFGElement(CONDITION, node.parts['cond']))
        after = self._new_block()

        body_block, body_end = self._loop_body(node.parts['body'], after, cond)
        self._link(cur, body_block)
        self._link(body_end, cond)
        self._link(cond, body_block)
        self._link(cond, after)
        return after

    def _build_for(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        if 'init' in node.parts:
            self._append(cur, node, plain)

        cond = self._new_block()
        if 'cond' in node.parts:
            cond.elements.append(CFGElement(CONDITION, node.parts['cond']))
        self._link(cur, cond)

        after = self._new_block()
        inc = None
        if 'inc' in node.parts:
            inc = self._new_block()
            inc.elements.append(CFGElement(INCREMENT, node.parts['inc']))
            self._link(inc, cond)

        body_block, body_end = self._loop_body(node.parts['body'], after, inc or cond)
        self._link(cond, body_block)
        if 'cond' in node.parts:
            self._link(cond, after)
        self._link(body_end, inc or cond)
        return after

    def _build_switch(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        self._append(cur, node, plain)
        after = self._new_block()

        has_default = [False]
        self.switches.append((cur.id, has_default))
        self.break_targets.append(after.id)
        body_end = self._build(node.parts['body'], self._new_block(), plain=False)
        self.break_targets.pop()
        self.switches.pop()

        self._link(body_end, after)
        if not has_default[0]:
            self._link(cur, after)
        return after

    def _build_case(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        block = self._new_block()
        self._link(cur, block)
        if self.switches:
            switch_block, has_default = self.switches[-1]
            self._link_ids(switch_block, block.id)
            if node.kind == 'default':
                has_default[0] = True
        return self._build(node.parts['sub'], block, plain)

    _build_default = _build_case

    def _build_label(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        block = self._new_block()
        self._link(cur, block)
        self.labels[node.name] = block.id
        return self._build(node.parts['sub'], block, plain)

    def _jump(self, node: SourceNode, cur: CFGBlock, plain: bool, target: Optional[int]) -> CFGBlock:
        self._append(cur, node, plain)
        if target is not None:
            self._link_ids(cur.id, target)
        # Code after a jump starts an unreachable block
        return self._new_block()

    def _build_return(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        return self._jump(node, cur, plain, 1)

    def _build_break(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        target = self.break_targets[-1] if self.break_targets else None
        return self._jump(node, cur, plain, target)

    def _build_continue(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        target = self.continue_targets[-1] if self.continue_targets else None
        return self._jump(node, cur, plain, target)

    def _build_goto(self, node: SourceNode, cur: CFGBlock, plain: bool) -> CFGBlock:
        self.gotos.append((cur.id, node.name))
        return self._jump(node, cur, plain, None)


def build_cfg(body: SourceNode) -> CFG:
    return CFGBuilder().build(body)
