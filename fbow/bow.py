"""Bag-of-words vectors produced by a vocabulary, and their binary form."""

from __future__ import annotations

import math
import struct
from typing import BinaryIO

import numpy as np

_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF
_GOLDEN = 0x9E3779B9

_U32 = struct.Struct("<I")
_ENTRY = struct.Struct("<If")


def _f32(value: float) -> float:
    """Round a value to single precision."""
    return float(np.float32(value))


def _mix(seed: int, value: int) -> int:
    """Combine a 32-bit value into a 64-bit hash seed."""
    term = (value + _GOLDEN) & _MASK32
    return (seed ^ ((term + ((seed << 6) & _MASK64) + (seed >> 2)) & _MASK64)) & _MASK64


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise ValueError(
            f"Unexpected end of stream: wanted {size} bytes, got {len(data or b'')}"
        )
    return data


def _read_u32(stream: BinaryIO) -> int:
    return _U32.unpack(_read_exact(stream, _U32.size))[0]


class BagOfWords(dict):
    """Mapping of word id to weight; a missing word is added with weight zero."""

    def __missing__(self, key: int) -> float:
        value = 0.0
        self[key] = value
        return value

    def to_stream(self, stream: BinaryIO) -> None:
        """Write the entry count followed by (word id, weight) pairs."""
        stream.write(_U32.pack(len(self)))
        for word_id, weight in sorted(self.items()):
            stream.write(_ENTRY.pack(word_id, weight))

    @classmethod
    def from_stream(cls, stream: BinaryIO) -> "BagOfWords":
        """Read a bag of words written by :meth:`to_stream`."""
        result = cls()
        for _ in range(_read_u32(stream)):
            word_id, weight = _ENTRY.unpack(_read_exact(stream, _ENTRY.size))
            result[word_id] = weight
        return result

    def hash(self) -> int:
        """Return a 64-bit hash of the words and their weights."""
        seed = 0
        for word_id, weight in sorted(self.items()):
            scaled = int(np.float32(weight) * np.float32(1000))
            seed = _mix(seed, (word_id + scaled) & _MASK32)
        return seed

    def normalized(self) -> "BagOfWords":
        """Return a copy scaled to unit L2 norm; an all-zero bag is returned as is."""
        norm = sum(_f32(weight * weight) for weight in self.values())
        result = BagOfWords(self)
        if norm > 0.0:
            inv_norm = 1.0 / math.sqrt(norm)
            for word_id in result:
                result[word_id] = _f32(result[word_id] * inv_norm)
        return result

    @staticmethod
    def score(v1: "BagOfWords", v2: "BagOfWords") -> float:
        """Similarity in [0, 1] between two L2-normalised bags of words."""
        total = 0.0
        for word_id in sorted(v1.keys() & v2.keys()):
            total += _f32(_f32(v1[word_id]) * _f32(v2[word_id]))
        if total >= 1.0:
            return 1.0
        return 1.0 - math.sqrt(1.0 - total)


class BagOfWordsIndex(dict):
    """Mapping of tree node id to the indices of the features that reached it."""

    def __missing__(self, key: int) -> list[int]:
        value: list[int] = []
        self[key] = value
        return value

    def to_stream(self, stream: BinaryIO) -> None:
        """Write the node count, then each node id with its index list."""
        stream.write(_U32.pack(len(self)))
        for node_id, indices in sorted(self.items()):
            stream.write(_U32.pack(node_id))
            stream.write(_U32.pack(len(indices)))
            stream.write(struct.pack(f"<{len(indices)}I", *indices))

    @classmethod
    def from_stream(cls, stream: BinaryIO) -> "BagOfWordsIndex":
        """Read an index written by :meth:`to_stream`."""
        result = cls()
        for _ in range(_read_u32(stream)):
            node_id = _read_u32(stream)
            count = _read_u32(stream)
            data = _read_exact(stream, _U32.size * count)
            result[node_id] = list(struct.unpack(f"<{count}I", data))
        return result

    def hash(self) -> int:
        """Return a 64-bit hash of the node ids and their feature indices."""
        seed = 0
        for node_id, indices in sorted(self.items()):
            seed = _mix(seed, node_id)
            for index in indices:
                seed = _mix(seed, index)
        return seed