# SPDX-License-Identifier: Apache-2.0
"""
Source-level structures shared by the front-end, the CFG builder and the
instrumentation pass, plus textual discovery of kernel launch sites.

All offsets are byte offsets into the original source buffer.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


INCLUDE_PATTERN = re.compile(rb'^[ \t]*#[ \t]*include[^\n]*', re.MULTILINE)
CHEVRON_PATTERN = re.compile(rb'<<<.*?>>>', re.DOTALL)
QUALIFIER_PATTERN = re.compile(rb'(?:[A-Za-z_]\w*\s*::\s*)+$')


@dataclass
class SourceNode:
    """
    A statement in a function body.

    ``parts`` holds the named sub-statements of structured statements
    ("cond", "then", "else", "init", "inc", "body", "sub"); ``children`` holds
    the statements of a compound statement.
    """
    kind: str
    begin: int
    end: int
    children: List['SourceNode'] = field(default_factory=list)
    parts: Dict[str, 'SourceNode'] = field(default_factory=dict)
    name: str = ""

    def walk(self):
        """Yield this node and every statement below it."""
        yield self
        for child in self.children:
            yield from child.walk()
        for part in self.parts.values():
            yield from part.walk()

    def __str__(self):
        return f"{self.kind}[{self.begin}:{self.end}]"


@dataclass
class KernelFunction:
    """A located function definition and the buffer it was found in."""
    name: str
    path: str
    buffer: bytes
    body: SourceNode
    params_close: int                             # Offset of the ')' closing the parameters
    params_empty: bool = False
    void_param: Optional[Tuple[int, int]] = None  # (offset, length) of a lone "void"


@dataclass
class LaunchSite:
    """A host-side launch of the kernel."""
    style: str          # "chevron" or "hipLaunchKernelGGL"
    begin: int          # Start of the launch statement
    end: int            # Just past the terminating ';'
    args_close: int     # Offset of the ')' closing the argument list
    args_empty: bool
    grid: str
    block: str


def split_arguments(text: str) -> List[str]:
    """Split a comma separated argument list at top level."""
    args = []
    depth = 0
    current = []
    quote = None
    escaped = False
    for ch in text:
        if quote:
            current.append(ch)
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in '"\'':
            quote = ch
        elif ch in '([{':
            depth += 1
        elif ch in ')]}':
            depth -= 1
        elif ch == ',' and depth == 0:
            args.append(''.join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = ''.join(current).strip()
    if tail or args:
        args.append(tail)
    return args


def match_paren(buffer: bytes, open_offset: int) -> Optional[int]:
    """Offset of the ')' matching the '(' at open_offset."""
    depth = 0
    quote = None
    i = open_offset
    while i < len(buffer):
        ch = buffer[i:i + 1]
        if quote:
            if ch == b'\\':
                i += 1
            elif ch == quote:
                quote = None
        elif ch in (b'"', b"'"):
            quote = ch
        elif ch == b'(':
            depth += 1
        elif ch == b')':
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


def skip_space(buffer: bytes, offset: int) -> int:
    while offset < len(buffer) and buffer[offset:offset + 1].isspace():
        offset += 1
    return offset


def statement_end(buffer: bytes, offset: int) -> int:
    """Extend a statement end over its terminating ';'."""
    next_offset = skip_space(buffer, offset)
    if buffer[next_offset:next_offset + 1] == b';':
        return next_offset + 1
    return offset


def find_launch_sites(buffer: bytes, kernel_name: str) -> List[LaunchSite]:
    """
    Find launches of a kernel in a source buffer.

    Recognizes ``kernel<<<grid, block[, shmem[, stream]]>>>(args);`` and
    ``hipLaunchKernelGGL(kernel, grid, block, shmem, stream, args...);``.
    Launches that are not complete statements are ignored, and so is
    anything inside comments or string literals.
    """
    buffer = blank_comments(buffer)
    name = re.escape(kernel_name.encode())
    chevron = re.compile(rb'\b' + name + rb'\s*(?:<[^<>;()]*>\s*)?<<<')
    ggl = re.compile(rb'\bhipLaunchKernelGGL\s*\(')
    sites = []

    for match in chevron.finditer(buffer):
        config_close = buffer.find(b'>>>', match.end())
        if config_close < 0:
            continue
        config = split_arguments(buffer[match.end():config_close].decode('utf-8'))
        if len(config) < 2:
            continue

        args_open = skip_space(buffer, config_close + 3)
        if buffer[args_open:args_open + 1] != b'(':
            continue
        args_close = match_paren(buffer, args_open)
        if args_close is None:
            continue
        semicolon = skip_space(buffer, args_close + 1)
        if buffer[semicolon:semicolon + 1] != b';':
            continue

        begin = match.start()
        qualifier = QUALIFIER_PATTERN.search(buffer[max(0, begin - 256):begin])
        if qualifier:
            begin -= len(qualifier.group(0))

        sites.append(LaunchSite(
            style='chevron',
            begin=begin,
            end=semicolon + 1,
            args_close=args_close,
            args_empty=not buffer[args_open + 1:args_close].strip(),
            grid=config[0],
            block=config[1]
        ))

    for match in ggl.finditer(buffer):
        args_open = match.end() - 1
        args_close = match_paren(buffer, args_open)
        if args_close is None:
            continue
        args = split_arguments(buffer[args_open + 1:args_close].decode('utf-8'))
        if len(args) < 5:
            continue

        launched = re.sub(r'^HIP_KERNEL_NAME\s*\((.*)\)$', r'\1', args[0]).strip()
        launched = re.sub(r'<.*>$', '', launched).split('::')[-1].strip()
        if launched != kernel_name:
            continue

        semicolon = skip_space(buffer, args_close + 1)
        if buffer[semicolon:semicolon + 1] != b';':
            continue

        sites.append(LaunchSite(
            style='hipLaunchKernelGGL',
            begin=match.start(),
            end=semicolon + 1,
            args_close=args_close,
            args_empty=False,
            grid=args[1],
            block=args[2]
        ))

    return sorted(sites, key=lambda s: s.begin)


def _blank(out: bytearray, begin: int, end: int):
    for i in range(begin, end):
        if out[i] != 0x0A:
            out[i] = 0x20


def blank_comments(buffer: bytes) -> bytes:
    """
    Blank comments and the contents of string and character literals.

    Every offset and newline is kept, as are the quotes themselves.
    """
    out = bytearray(buffer)
    i = 0
    n = len(buffer)
    while i < n:
        two = buffer[i:i + 2]
        ch = buffer[i:i + 1]
        if two == b'//':
            end = buffer.find(b'\n', i)
            end = n if end < 0 else end
            _blank(out, i, end)
            i = end
        elif two == b'/*':
            end = buffer.find(b'*/', i + 2)
            end = n if end < 0 else end + 2
            _blank(out, i, end)
            i = end
        elif ch in (b'"', b"'"):
            j = i + 1
            # Unterminated literals stop at the end of the line
            while j < n and buffer[j:j + 1] not in (ch, b'\n'):
                j += 2 if buffer[j:j + 1] == b'\\' else 1
            j = min(j, n)
            _blank(out, i + 1, j)
            i = j + 1
        else:
            i += 1
    return bytes(out)


def sanitize_source(buffer: bytes) -> bytes:
    """
    Blank out what a plain C++ parse cannot handle, keeping every offset.

    Include directives and launch configurations (<<<...>>>) are replaced by
    spaces of the same length; newlines are kept.
    """
    def blank(match):
        return re.sub(rb'[^\n]', b' ', match.group(0))

    buffer = INCLUDE_PATTERN.sub(blank, buffer)
    return CHEVRON_PATTERN.sub(blank, buffer)
