# SPDX-License-Identifier: Apache-2.0
"""
Source edits keyed to byte offsets, and an edit set that refuses overlaps.

Offsets are byte offsets into the original (unmodified) buffer, which is what
libclang reports for source locations.
"""

import os
from dataclasses import dataclass
from typing import Iterator, List


class IncompatibleEdit(RuntimeError):
    """Raised when two edits claim the same source position."""


@dataclass(frozen=True)
class Edit:
    """Replace ``length`` bytes at ``offset`` with ``text`` (insertion if 0)."""
    offset: int
    length: int
    text: str

    @property
    def end(self) -> int:
        return self.offset + self.length

    def is_insertion(self) -> bool:
        return self.length == 0

    def overlaps(self, other: 'Edit') -> bool:
        if self.is_insertion() and other.is_insertion():
            return self.offset == other.offset
        if self.is_insertion():
            return other.offset < self.offset < other.end
        if other.is_insertion():
            return self.offset < other.offset < self.end
        return self.offset < other.end and other.offset < self.end

    def __str__(self):
        return f"{self.offset}:{self.length}:{self.text!r}"


class EditSet:
    """Ordered set of non-overlapping edits over one buffer."""

    def __init__(self):
        self._edits: List[Edit] = []

    def __len__(self) -> int:
        return len(self._edits)

    def __iter__(self) -> Iterator[Edit]:
        return iter(sorted(self._edits, key=lambda e: (e.offset, e.length)))

    def empty(self) -> bool:
        return not self._edits

    def add(self, edit: Edit):
        """
        Add an edit.

        Raises:
            IncompatibleEdit: If the edit overlaps one already in the set
        """
        for existing in self._edits:
            if existing.overlaps(edit):
                raise IncompatibleEdit(
                    f"Incompatible edit encountered: {edit} overlaps {existing}"
                )
        self._edits.append(edit)

    def insert(self, offset: int, text: str):
        self.add(Edit(offset, 0, text))

    def compose(self, offset: int, text: str, before: bool = False):
        """
        Attach text to the insertion at ``offset``, creating it if needed.

        Used for fragments that are meant to share a position with another
        insertion (e.g. a commit right after a block counter).
        """
        for i, existing in enumerate(self._edits):
            if existing.is_insertion() and existing.offset == offset:
                merged = text + existing.text if before else existing.text + text
                self._edits[i] = Edit(offset, 0, merged)
                return
        self.insert(offset, text)

    def apply(self, buffer: bytes) -> bytes:
        """Apply all edits to a buffer, returning the new buffer."""
        pieces = []
        position = 0
        for edit in self:
            if edit.end > len(buffer):
                raise IncompatibleEdit(f"Edit {edit} is past the end of the buffer")
            pieces.append(buffer[position:edit.offset])
            pieces.append(edit.text.encode('utf-8'))
            position = edit.end
        pieces.append(buffer[position:])
        return b''.join(pieces)


def write_output(buffer: bytes, output_path: str):
    """Write an edited buffer, creating the parent directory if needed."""
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output_path, 'wb') as f:
        f.write(buffer)
