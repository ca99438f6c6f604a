# SPDX-License-Identifier: Apache-2.0
"""
libclang front-end for HIP/CUDA sources.

Parses a source file as C++ with a small device stub (so libclang does not
need a GPU toolchain), finds a function definition by exact name and turns
its body into a tree of SourceNode statements carrying byte offsets into the
original file.
"""

import os
import re
from typing import List, Optional, Tuple

import clang.cindex as cx

from .source import KernelFunction, SourceNode, sanitize_source, statement_end


DEVICE_STUB_PATH = '/__hip_analyzer_device_stub.h'
DEVICE_STUB_SRC = """\
// Device builtins for libclang parsing of HIP/CUDA sources as C++
#pragma once
#define __global__ __attribute__((annotate("__global__")))
#define __device__
#define __host__
#define __shared__
#define __constant__
#define __managed__
#define __restrict__
#define __forceinline__ inline
#define __noinline__
#define __launch_bounds__(...)
struct dim3 {
    unsigned int x, y, z;
    dim3(unsigned int x = 1, unsigned int y = 1, unsigned int z = 1) : x(x), y(y), z(z) {}
};
extern const dim3 threadIdx, blockIdx, blockDim, gridDim;
#define hipThreadIdx_x threadIdx.x
#define hipThreadIdx_y threadIdx.y
#define hipThreadIdx_z threadIdx.z
#define hipBlockIdx_x blockIdx.x
#define hipBlockIdx_y blockIdx.y
#define hipBlockIdx_z blockIdx.z
#define hipBlockDim_x blockDim.x
#define hipBlockDim_y blockDim.y
#define hipBlockDim_z blockDim.z
#define hipGridDim_x gridDim.x
#define hipGridDim_y gridDim.y
#define hipGridDim_z gridDim.z
void __syncthreads();
int printf(const char*, ...);
template <typename T> T atomicAdd(T*, T);
"""

PARSE_ARGS = ['-x', 'c++', '-std=c++17', f'-include{DEVICE_STUB_PATH}']

FUNCTION_KINDS = frozenset([
    cx.CursorKind.FUNCTION_DECL,
    cx.CursorKind.FUNCTION_TEMPLATE,
])

SCOPE_KINDS = frozenset([
    cx.CursorKind.TRANSLATION_UNIT,
    cx.CursorKind.NAMESPACE,
    cx.CursorKind.LINKAGE_SPEC,
    cx.CursorKind.UNEXPOSED_DECL,
])

STATEMENT_KINDS = {
    cx.CursorKind.COMPOUND_STMT: 'compound',
    cx.CursorKind.IF_STMT: 'if',
    cx.CursorKind.FOR_STMT: 'for',
    cx.CursorKind.CXX_FOR_RANGE_STMT: 'for_range',
    cx.CursorKind.WHILE_STMT: 'while',
    cx.CursorKind.DO_STMT: 'do',
    cx.CursorKind.SWITCH_STMT: 'switch',
    cx.CursorKind.CASE_STMT: 'case',
    cx.CursorKind.DEFAULT_STMT: 'default',
    cx.CursorKind.LABEL_STMT: 'label',
    cx.CursorKind.GOTO_STMT: 'goto',
    cx.CursorKind.RETURN_STMT: 'return',
    cx.CursorKind.BREAK_STMT: 'break',
    cx.CursorKind.CONTINUE_STMT: 'continue',
    cx.CursorKind.NULL_STMT: 'null',
    cx.CursorKind.DECL_STMT: 'decl',
}

ELSE_PATTERN = re.compile(rb'\belse\b')


class ClangFrontend:
    """Function lookup and statement trees from libclang."""

    def __init__(self, extra_args: Optional[List[str]] = None):
        self.index = cx.Index.create()
        self.extra_args = list(extra_args or [])

    def parse(self, path: str) -> Tuple[cx.TranslationUnit, bytes]:
        """
        Parse a source file.

        Returns:
            Tuple of (translation unit, original file bytes)
        """
        path = os.path.abspath(path)
        with open(path, 'rb') as f:
            buffer = f.read()

        tu = self.index.parse(
            path,
            args=PARSE_ARGS + self.extra_args,
            unsaved_files=[
                (DEVICE_STUB_PATH, DEVICE_STUB_SRC),
                (path, sanitize_source(buffer).decode('utf-8')),
            ]
        )
        return tu, buffer

    def find_function(self, tu: cx.TranslationUnit, name: str, path: str) -> Optional[cx.Cursor]:
        """Find a function definition by exact name in the main file."""
        path = os.path.realpath(path)
        stack = [tu.cursor]
        while stack:
            cursor = stack.pop()
            if cursor.kind in FUNCTION_KINDS:
                if (cursor.spelling == name and cursor.is_definition()
                        and cursor.location.file is not None
                        and os.path.realpath(cursor.location.file.name) == path):
                    return cursor
                continue
            if cursor.kind in SCOPE_KINDS:
                stack.extend(reversed(list(cursor.get_children())))
        return None

    def load_kernel(self, path: str, name: str) -> Optional[KernelFunction]:
        """
        Locate a kernel and build its statement tree.

        Returns:
            KernelFunction, or None when no definition named ``name`` exists
        """
        tu, buffer = self.parse(path)
        cursor = self.find_function(tu, name, path)
        if cursor is None:
            return None

        body_cursor = None
        for child in cursor.get_children():
            if child.kind == cx.CursorKind.COMPOUND_STMT:
                body_cursor = child
        if body_cursor is None:
            return None

        params_close, params_empty, void_param = self._parameter_list(cursor, name)

        return KernelFunction(
            name=name,
            path=os.path.abspath(path),
            buffer=buffer,
            body=self._convert(body_cursor, buffer),
            params_close=params_close,
            params_empty=params_empty,
            void_param=void_param
        )

    def _parameter_list(self, cursor: cx.Cursor, name: str):
        tokens = list(cursor.get_tokens())
        start = None
        for i, token in enumerate(tokens[:-1]):
            if token.spelling == name and tokens[i + 1].spelling == '(':
                start = i + 1
                break
        if start is None:
            raise ValueError(f"Could not find the parameter list of {name}")

        depth = 0
        for j in range(start, len(tokens)):
            spelling = tokens[j].spelling
            if spelling == '(':
                depth += 1
            elif spelling == ')':
                depth -= 1
                if depth == 0:
                    inner = tokens[start + 1:j]
                    void_param = None
                    if len(inner) == 1 and inner[0].spelling == 'void':
                        void_param = (inner[0].extent.start.offset, len('void'))
                    return tokens[j].extent.start.offset, not inner, void_param

        raise ValueError(f"Unbalanced parameter list for {name}")

    def _convert(self, cursor: cx.Cursor, buffer: bytes) -> SourceNode:
        """Convert a statement cursor to a SourceNode."""
        kind = STATEMENT_KINDS.get(cursor.kind)
        begin = cursor.extent.start.offset
        end = cursor.extent.end.offset

        if kind is None:
            kind = 'expr' if cursor.kind.is_expression() else 'other'
            return SourceNode(kind, begin, statement_end(buffer, end))

        children = list(cursor.get_children())
        node = SourceNode(kind, begin, end)

        if kind == 'compound':
            node.children = [self._convert(c, buffer) for c in children]
        elif kind == 'if':
            has_else = (len(children) >= 3 and ELSE_PATTERN.search(
                buffer, children[-2].extent.end.offset, children[-1].extent.start.offset
            ) is not None)
            if has_else:
                node.parts['cond'] = self._convert(children[-3], buffer)
                node.parts['then'] = self._convert(children[-2], buffer)
                node.parts['else'] = self._convert(children[-1], buffer)
            else:
                node.parts['cond'] = self._convert(children[-2], buffer)
                node.parts['then'] = self._convert(children[-1], buffer)
        elif kind == 'for':
            node.parts.update(self._for_parts(cursor, children, buffer))
        elif kind in ('while', 'switch', 'for_range'):
            node.parts['cond'] = self._convert(children[-2], buffer)
            node.parts['body'] = self._convert(children[-1], buffer)
        elif kind == 'do':
            node.parts['body'] = self._convert(children[0], buffer)
            node.parts['cond'] = self._convert(children[-1], buffer)
        elif kind in ('case', 'default', 'label'):
            node.parts['sub'] = self._convert(children[-1], buffer)
            if kind == 'label':
                node.name = cursor.spelling
        elif kind == 'goto':
            node.name = children[0].spelling if children else ''
            node.end = statement_end(buffer, end)
        else:
            node.end = statement_end(buffer, end)

        return node

    def _for_parts(self, cursor: cx.Cursor, children: List[cx.Cursor], buffer: bytes):
        """Assign for-statement children to init / cond / inc by header position."""
        semicolons = []
        depth = 0
        for token in cursor.get_tokens():
            if token.spelling == '(':
                depth += 1
            elif token.spelling == ')':
                depth -= 1
                if depth == 0:
                    break
            elif token.spelling == ';' and depth == 1:
                semicolons.append(token.extent.start.offset)

        parts = {'body': self._convert(children[-1], buffer)}
        for child in children[:-1]:
            offset = child.extent.start.offset
            if len(semicolons) >= 1 and offset < semicolons[0]:
                parts['init'] = self._convert(child, buffer)
            elif len(semicolons) >= 2 and offset < semicolons[1]:
                parts['cond'] = self._convert(child, buffer)
            else:
                parts['inc'] = self._convert(child, buffer)
        return parts
