# SPDX-License-Identifier: Apache-2.0
"""
Parser for textual LLVM IR (.ll) as emitted by clang for HIP/CUDA device code.

Extracts functions, basic blocks, instruction opcodes, accessed types and
debug locations. Only the subset needed for per-block static cost analysis
is understood; everything else is kept as raw text.
"""

import re
from typing import Dict, List, Optional, Tuple
from .ir_common import (
    DebugLocation, IRInstruction, IRBasicBlock, IRFunction, IRModule
)


# LLVM primitive sizes (Type::getPrimitiveSizeInBits)
FLOAT_TYPE_WIDTHS = {
    'half': 16,
    'bfloat': 16,
    'float': 32,
    'double': 64,
    'x86_fp80': 80,
    'fp128': 128,
    'ppc_fp128': 128,
    'x86_mmx': 64,
}

INTEGER_TYPE_PATTERN = re.compile(r'i(\d+)')
VECTOR_TYPE_PATTERN = re.compile(r'<\s*(?:vscale\s+x\s+)?(\d+)\s+x\s+(.+)>')
BASE_TYPE_PATTERN = re.compile(r'%"[^"]*"|[%\w.$-]+')
POINTER_SUFFIX_PATTERN = re.compile(r'(?:\s*addrspace\(\d+\))?(?:\s*\*)+')
ADDRSPACE_PATTERN = re.compile(r'\s*addrspace\(\d+\)')


def split_type(text: str) -> Tuple[str, str]:
    """
    Split a leading LLVM type off a string.

    Args:
        text: Text starting with a type, e.g. "float, ptr %a, align 4"

    Returns:
        Tuple of (type, remaining text)
    """
    text = text.lstrip()
    if not text:
        return '', ''

    if text[0] in '<[{':
        depth = 0
        end = len(text)
        for i, ch in enumerate(text):
            if ch in '<[{(':
                depth += 1
            elif ch in '>]})':
                depth -= 1
                if depth == 0:
                    end = i + 1
                    break
        type_str, rest = text[:end], text[end:]
    else:
        match = BASE_TYPE_PATTERN.match(text)
        if not match:
            return '', text
        type_str, rest = match.group(0), text[match.end():]
        if type_str == 'ptr':
            addrspace = ADDRSPACE_PATTERN.match(rest)
            if addrspace:
                type_str += addrspace.group(0)
                rest = rest[addrspace.end():]

    # Typed pointers (LLVM < 15): "float addrspace(1)*"
    pointer = POINTER_SUFFIX_PATTERN.match(rest)
    if pointer:
        type_str += pointer.group(0)
        rest = rest[pointer.end():]

    return type_str.strip(), rest


def type_bit_width(type_str: str) -> int:
    """
    Primitive size of a type in bits.

    Follows LLVM's notion of primitive size: pointers, arrays and structs
    are not primitive and report 0.
    """
    type_str = type_str.strip()
    if not type_str or type_str.endswith('*') or type_str.startswith('ptr'):
        return 0

    if type_str in FLOAT_TYPE_WIDTHS:
        return FLOAT_TYPE_WIDTHS[type_str]

    match = INTEGER_TYPE_PATTERN.fullmatch(type_str)
    if match:
        return int(match.group(1))

    match = VECTOR_TYPE_PATTERN.fullmatch(type_str)
    if match:
        return int(match.group(1)) * type_bit_width(match.group(2))

    return 0


def strip_comment(line: str) -> str:
    """Remove a trailing '; ...' comment, ignoring ';' inside quotes."""
    in_quotes = False
    for i, ch in enumerate(line):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == ';' and not in_quotes:
            return line[:i]
    return line


def demangled_name(symbol: str) -> Optional[str]:
    """
    Unqualified function name from an Itanium-mangled symbol.

    "_Z6vecAddPfS_S_i" -> "vecAdd", "_ZN2ns6kernelEPf" -> "kernel".
    Returns None when the symbol is not mangled.
    """
    if not symbol.startswith('_Z'):
        return None

    pos = 2
    nested = symbol[pos:pos + 1] == 'N'
    if nested:
        pos += 1
        while pos < len(symbol) and symbol[pos] in 'rVK':
            pos += 1

    name = None
    while pos < len(symbol) and symbol[pos].isdigit():
        digits = re.match(r'\d+', symbol[pos:]).group(0)
        length = int(digits)
        pos += len(digits)
        name = symbol[pos:pos + length]
        pos += length
        if not nested:
            break
        if pos < len(symbol) and symbol[pos] in 'EI':
            break

    return name


class LLVMIRParser:
    """Parse textual LLVM IR into an IRModule."""

    # Regex patterns for LLVM IR constructs
    DEFINE_PATTERN = re.compile(r'^define\s+(.*?)@("(?:[^"\\]|\\.)*"|[\w.$-]+)\s*\(')
    LABEL_PATTERN = re.compile(r'^("(?:[^"\\]|\\.)*"|[\w.$-]+):')
    INSTRUCTION_PATTERN = re.compile(r'^(?:(%"[^"]*"|%[\w.$-]+)\s*=\s*)?(.*)$')
    CALL_PREFIXES = ('tail', 'musttail', 'notail')
    DBG_PATTERN = re.compile(r'!dbg\s+(!\d+)')
    METADATA_PATTERN = re.compile(r'^(!\d+)\s*=\s*(?:distinct\s+)?!(\w+)\((.*)\)\s*$')
    FIELD_PATTERN = re.compile(r'(\w+):\s*("(?:[^"\\]|\\.)*"|![\d]+|[^,]+)')
    SOURCE_FILENAME_PATTERN = re.compile(r'^source_filename\s*=\s*"([^"]*)"')
    TRIPLE_PATTERN = re.compile(r'^target triple\s*=\s*"([^"]*)"')

    # Keywords that may sit between the opcode and the accessed type
    ACCESS_MODIFIERS = {
        'load': ('atomic', 'volatile'),
        'store': ('atomic', 'volatile'),
        'getelementptr': ('inbounds', 'nuw', 'nusw'),
    }

    def __init__(self):
        self.metadata_nodes: Dict[str, Tuple[str, Dict[str, str]]] = {}
        self._location_cache: Dict[str, Optional[DebugLocation]] = {}

    def parse(self, ir_content: str) -> IRModule:
        """
        Parse LLVM IR content.

        Args:
            ir_content: Raw .ll text

        Returns:
            IRModule with every defined function
        """
        module = IRModule()
        self.metadata_nodes = {}
        self._location_cache = {}

        lines = ir_content.split('\n')

        # Metadata first, so debug locations can be resolved per block
        for line in lines:
            line = line.strip()
            match = self.METADATA_PATTERN.match(line)
            if match:
                module.metadata[match.group(1)] = line
                self.metadata_nodes[match.group(1)] = (
                    match.group(2), self._parse_fields(match.group(3))
                )
                continue
            match = self.SOURCE_FILENAME_PATTERN.match(line)
            if match:
                module.source_filename = match.group(1)
                continue
            match = self.TRIPLE_PATTERN.match(line)
            if match:
                module.target_triple = match.group(1)

        current: Optional[IRFunction] = None
        block: Optional[IRBasicBlock] = None

        for raw_line in lines:
            line = strip_comment(raw_line).rstrip()
            stripped = line.strip()

            if current is None:
                match = self.DEFINE_PATTERN.match(stripped)
                if match:
                    current = IRFunction(
                        name=match.group(2).strip('"'),
                        calling_conv=self._calling_conv(match.group(1))
                    )
                    block = None
                continue

            if stripped == '}':
                self._finish_block(block, module)
                module.functions.append(current)
                current = None
                block = None
                continue

            if not stripped:
                continue

            label = self.LABEL_PATTERN.match(stripped)
            if label and not raw_line[:1].isspace():
                self._finish_block(block, module)
                block = IRBasicBlock(
                    index=len(current.blocks),
                    label=label.group(1).strip('"')
                )
                current.blocks.append(block)
                continue

            if block is None:
                # Entry block without an explicit label
                block = IRBasicBlock(index=0, label='')
                current.blocks.append(block)

            block.instructions.append(self._parse_instruction(stripped))

        return module

    def find_kernel(self, module: IRModule, kernel_name: str) -> Optional[IRFunction]:
        """
        Find a function by source name.

        Matches the symbol exactly first, then the unqualified name of
        mangled symbols.
        """
        for function in module.functions:
            if function.name == kernel_name:
                return function
        for function in module.functions:
            if demangled_name(function.name) == kernel_name:
                return function
        return None

    def _parse_instruction(self, line: str) -> IRInstruction:
        """Parse one instruction line."""
        match = self.INSTRUCTION_PATTERN.match(line)
        result, text = match.group(1) or '', match.group(2)

        words = text.split()
        while words and words[0] in self.CALL_PREFIXES:
            words = words[1:]
        opcode = words[0].rstrip(',') if words else ''

        access_type = ''
        if opcode in self.ACCESS_MODIFIERS:
            rest = text[text.index(opcode) + len(opcode):]
            modifiers = self.ACCESS_MODIFIERS[opcode]
            rest_words = rest.split(None, 1)
            while rest_words and rest_words[0] in modifiers:
                rest = rest_words[1] if len(rest_words) > 1 else ''
                rest_words = rest.split(None, 1)
            access_type, _ = split_type(rest)

        dbg = self.DBG_PATTERN.search(text)

        return IRInstruction(
            opcode=opcode,
            text=text,
            result=result,
            access_type=access_type,
            dbg=dbg.group(1) if dbg else None
        )

    def _finish_block(self, block: Optional[IRBasicBlock], module: IRModule):
        """Attach first/last debug locations to a completed block."""
        if block is None:
            return
        locations = [
            loc for loc in (self.resolve_location(i.dbg, module) for i in block)
            if loc is not None
        ]
        if locations:
            block.begin = locations[0]
            block.end = locations[-1]

    def resolve_location(self, dbg: Optional[str], module: IRModule) -> Optional[DebugLocation]:
        """Resolve a !DILocation id to file:line:column."""
        if dbg is None:
            return None
        if dbg in self._location_cache:
            return self._location_cache[dbg]

        location = None
        node = self.metadata_nodes.get(dbg)
        if node and node[0] == 'DILocation':
            fields = node[1]
            line = int(fields.get('line', '0'))
            if line > 0:
                location = DebugLocation(
                    filename=self._scope_file(fields.get('scope')) or module.source_filename,
                    line=line,
                    column=int(fields.get('column', '0'))
                )

        self._location_cache[dbg] = location
        return location

    def _scope_file(self, scope: Optional[str]) -> str:
        """Walk the scope chain up to the first DIFile."""
        seen = set()
        while scope and scope not in seen:
            seen.add(scope)
            node = self.metadata_nodes.get(scope)
            if node is None:
                return ''
            kind, fields = node
            if kind == 'DIFile':
                return fields.get('filename', '')
            if 'file' in fields:
                scope = fields['file']
            else:
                scope = fields.get('scope')
        return ''

    def _parse_fields(self, body: str) -> Dict[str, str]:
        fields = {}
        for match in self.FIELD_PATTERN.finditer(body):
            value = match.group(2).strip()
            if value.startswith('"'):
                value = value[1:-1]
            fields[match.group(1)] = value
        return fields

    @staticmethod
    def _calling_conv(prefix: str) -> str:
        for word in prefix.split():
            if word.endswith('_kernel') or word.endswith('cc'):
                return word
        return ''


def parse_llvm_ir(file_path: str) -> IRModule:
    """
    Parse LLVM IR from a file.

    Args:
        file_path: Path to a .ll file

    Returns:
        IRModule with extracted information
    """
    with open(file_path, 'r') as f:
        content = f.read()

    parser = LLVMIRParser()
    return parser.parse(content)
