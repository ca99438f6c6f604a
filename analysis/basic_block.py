# SPDX-License-Identifier: Apache-2.0
"""
Kernel static information: basic block records and the block cost database.

The database file is a JSON array of objects::

    [{"id": 0, "flops": 12, "begin": "vec.hip:10:5", "end": "vec.hip:14:1"}, ...]

Array order is preserved and does not need to follow block ids.
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List

import numpy as np


DEFAULT_DATABASE = 'hip_analyzer.json'

MAX_BLOCK_ID = 2**32 - 1
MAX_FLOPS = 2**64 - 1

# Fixed-width in-memory record; location strings live in a per-database arena
BLOCK_RECORD_DTYPE = np.dtype([
    ('id', '<u4'),
    ('flops', '<u8'),
    ('begin', '<u4'),
    ('end', '<u4'),
])


class ParseFailure(ValueError):
    """Raised when block database text is malformed."""


class DatabaseNotFound(FileNotFoundError):
    """Raised when the block database file does not exist."""


@dataclass(frozen=True)
class BasicBlock:
    """Static information for one basic block of a kernel."""
    id: int
    flops: int
    begin_loc: str = ""
    end_loc: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'flops': self.flops,
            'begin': self.begin_loc,
            'end': self.end_loc,
        }


def _block_from_dict(obj: Any) -> BasicBlock:
    if not isinstance(obj, dict):
        raise ParseFailure(f"Expected a JSON object for a basic block, got {type(obj).__name__}")

    missing = [key for key in ('id', 'flops', 'begin', 'end') if key not in obj]
    if missing:
        raise ParseFailure(f"Basic block is missing field(s): {', '.join(missing)}")

    for key in ('id', 'flops'):
        value = obj[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ParseFailure(f"Field '{key}' must be an unsigned integer, got {value!r}")

    if obj['id'] > MAX_BLOCK_ID:
        raise ParseFailure(f"Block id {obj['id']} does not fit in 32 bits")
    if obj['flops'] > MAX_FLOPS:
        raise ParseFailure(f"Block {obj['id']} flops {obj['flops']} do not fit in 64 bits")

    for key in ('begin', 'end'):
        if not isinstance(obj[key], str):
            raise ParseFailure(f"Field '{key}' must be a string, got {obj[key]!r}")

    return BasicBlock(
        id=obj['id'],
        flops=obj['flops'],
        begin_loc=obj['begin'],
        end_loc=obj['end']
    )


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Invalid JSON: {e}") from e


def to_json(block: BasicBlock) -> str:
    """Dump one block to JSON."""
    return json.dumps(block.to_dict())


def from_json(text: str) -> BasicBlock:
    """Load one block from JSON."""
    return _block_from_dict(_loads(text))


def json_array(blocks: Iterable[BasicBlock]) -> str:
    """Dump blocks to a JSON array, preserving order."""
    return json.dumps([block.to_dict() for block in blocks], indent=2)


def from_json_array(text: str) -> List[BasicBlock]:
    """
    Load blocks from a JSON array.

    Raises:
        ParseFailure: If the text is not a JSON array of block objects or
            a block id appears twice
    """
    data = _loads(text)
    if not isinstance(data, list):
        raise ParseFailure(f"Expected a JSON array of basic blocks, got {type(data).__name__}")

    blocks = [_block_from_dict(obj) for obj in data]

    seen = set()
    for block in blocks:
        if block.id in seen:
            raise ParseFailure(f"Duplicate basic block id {block.id}")
        seen.add(block.id)

    return blocks


class BlockDatabase:
    """
    Ordered, read-only collection of basic block cost records.

    Records are kept in a NumPy structured array; begin/end locations are
    interned into ``locations`` and referenced by index.
    """

    def __init__(self, blocks: Iterable[BasicBlock] = ()):
        blocks = list(blocks)

        self.locations: List[str] = []
        self._location_index: Dict[str, int] = {}
        self.records = np.zeros(len(blocks), dtype=BLOCK_RECORD_DTYPE)

        seen = set()
        for i, block in enumerate(blocks):
            if block.id in seen:
                raise ValueError(f"Duplicate basic block id {block.id}")
            seen.add(block.id)
            if not 0 <= block.id <= MAX_BLOCK_ID or not 0 <= block.flops <= MAX_FLOPS:
                raise ValueError(f"Basic block {block.id} is out of the record range")

            self.records[i] = (
                block.id,
                block.flops,
                self._intern(block.begin_loc),
                self._intern(block.end_loc),
            )

    def _intern(self, location: str) -> int:
        index = self._location_index.get(location)
        if index is None:
            index = len(self.locations)
            self.locations.append(location)
            self._location_index[location] = index
        return index

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index: int) -> BasicBlock:
        record = self.records[index]
        return BasicBlock(
            id=int(record['id']),
            flops=int(record['flops']),
            begin_loc=self.locations[record['begin']],
            end_loc=self.locations[record['end']]
        )

    def __iter__(self) -> Iterator[BasicBlock]:
        for i in range(len(self)):
            yield self[i]

    def __eq__(self, other):
        if not isinstance(other, BlockDatabase):
            return NotImplemented
        return list(self) == list(other)

    def empty(self) -> bool:
        return len(self) == 0

    def total_flops(self) -> int:
        return int(self.records['flops'].sum())

    def flops_by_id(self, basic_blocks: int) -> np.ndarray:
        """
        Static FLOP cost indexed by block id.

        Args:
            basic_blocks: Number of counter slots per thread

        Returns:
            uint64 array of length basic_blocks; ids without a record cost 0
        """
        ids = self.records['id']
        if len(ids) and int(ids.max()) >= basic_blocks:
            raise ValueError(
                f"Block id {int(ids.max())} does not fit in {basic_blocks} counter slots"
            )

        flops = np.zeros(basic_blocks, dtype=np.uint64)
        flops[ids] = self.records['flops']
        return flops

    def to_json(self) -> str:
        return json_array(self)

    @classmethod
    def from_json(cls, text: str) -> 'BlockDatabase':
        return cls(from_json_array(text))

    def save(self, path: str) -> str:
        save_database(self, path)
        return path


def save_database(blocks: Iterable[BasicBlock], path: str = DEFAULT_DATABASE):
    """Write blocks to a database file."""
    with open(path, 'w') as f:
        f.write(json_array(blocks))
        f.write('\n')
    return path


def load_database(path: str = DEFAULT_DATABASE) -> BlockDatabase:
    """
    Load a block database file.

    Raises:
        DatabaseNotFound: If the file does not exist
        ParseFailure: If the file content is malformed
    """
    if not os.path.exists(path):
        raise DatabaseNotFound(f"Block database not found: {path}")

    with open(path, 'r') as f:
        return BlockDatabase.from_json(f.read())
