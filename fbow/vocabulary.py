"""A vocabulary of visual words stored as a tree of fixed-size memory blocks.

Each block holds all children of one tree node: a small header, the
children's descriptors (each padded to the memory alignment), and one
:class:`NodeInfo` per child telling whether it is a leaf word or where its
own children are stored.
"""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Union

import numpy as np

from .bow import BagOfWords, BagOfWordsIndex, _mix
from .distance import DescriptorType

SIGNATURE = 55824124

_SIGNATURE = struct.Struct("<Q")
_PARAMS = struct.Struct("<50s2xII4xQQQQQiiI4x")
_NODE_INFO = struct.Struct("<If")
_HEADER = struct.Struct("<HHI")

_LEAF_BIT = 0x80000000
_ID_MASK = 0x7FFFFFFF
_MASK32 = 0xFFFFFFFF
_MAX_NAME_BYTES = 49
_MAX_ALIGNMENT = 256
_BINARY_LIMIT = 0xFFFFFFFF
_FLOAT_LIMIT = float(np.float32(0xFFFFFFFF))

PathLike = Union[str, Path]


def _f32(value: float) -> float:
    return float(np.float32(value))


def _round_up(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise ValueError(
            f"Unexpected end of stream: wanted {size} bytes, got {len(data or b'')}"
        )
    return data


@dataclass(frozen=True)
class VocabularyParams:
    """Memory layout of a vocabulary and the descriptors it was built from."""

    desc_name: str = ""
    alignment: int = 0
    nblocks: int = 0
    desc_size_bytes_wp: int = 0
    block_size_bytes_wp: int = 0
    feature_off_start: int = 0
    child_off_start: int = 0
    total_size: int = 0
    desc_type: int = 0
    desc_size: int = 0
    k: int = 0

    def pack(self) -> bytes:
        """Return the fixed-size binary record of these parameters."""
        return _PARAMS.pack(
            self.desc_name.encode("utf-8"),
            self.alignment,
            self.nblocks,
            self.desc_size_bytes_wp,
            self.block_size_bytes_wp,
            self.feature_off_start,
            self.child_off_start,
            self.total_size,
            self.desc_type,
            self.desc_size,
            self.k,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "VocabularyParams":
        """Parse a record written by :meth:`pack`."""
        (
            name,
            alignment,
            nblocks,
            desc_wp,
            block_wp,
            feature_off,
            child_off,
            total,
            desc_type,
            desc_size,
            k,
        ) = _PARAMS.unpack(data)
        return cls(
            desc_name=name.split(b"\0", 1)[0].decode("utf-8", errors="replace"),
            alignment=alignment,
            nblocks=nblocks,
            desc_size_bytes_wp=desc_wp,
            block_size_bytes_wp=block_wp,
            feature_off_start=feature_off,
            child_off_start=child_off,
            total_size=total,
            desc_type=desc_type,
            desc_size=desc_size,
            k=k,
        )


@dataclass(frozen=True)
class NodeInfo:
    """A child node: a leaf word with its weight, or a link to a child block."""

    id_or_childblock: int = 0
    weight: float = 0.0

    @property
    def is_leaf(self) -> bool:
        return bool(self.id_or_childblock & _LEAF_BIT)

    @property
    def id(self) -> int:
        """Word id of a leaf, or the block holding the children otherwise."""
        return self.id_or_childblock & _ID_MASK

    @classmethod
    def leaf(cls, word_id: int, weight: float) -> "NodeInfo":
        """A leaf node for word ``word_id`` with the given weight."""
        _check_id(word_id)
        return cls(word_id | _LEAF_BIT, _f32(weight))

    @classmethod
    def non_leaf(cls, child_block: int) -> "NodeInfo":
        """An inner node whose children live in block ``child_block``."""
        _check_id(child_block)
        return cls(child_block, 0.0)


def _check_id(value: int) -> None:
    if value < 0 or value > _ID_MASK:
        raise ValueError(f"Node id {value} does not fit in 31 bits")


@dataclass(frozen=True)
class _Block:
    n: int
    is_leaf: bool
    parent_id: int
    features: np.ndarray
    nodes: tuple[NodeInfo, ...]


class Vocabulary:
    """Tree of visual words that turns descriptors into bags of words."""

    def __init__(self) -> None:
        self._params = VocabularyParams()
        self._data: bytearray | None = None
        self._cache: dict[int, _Block] = {}

    @property
    def params(self) -> VocabularyParams:
        return self._params

    @property
    def desc_type(self) -> int:
        return self._params.desc_type

    @property
    def desc_size(self) -> int:
        """Descriptor size in bytes, or 0 if not set."""
        return self._params.desc_size

    @property
    def desc_name(self) -> str:
        return self._params.desc_name

    @property
    def k(self) -> int:
        """Branching factor: the maximum number of children per node."""
        return self._params.k

    @property
    def num_blocks(self) -> int:
        return self._params.nblocks

    def set_params(self, alignment, k, desc_type, desc_size, nblocks, desc_name) -> None:
        """Define the layout and allocate ``nblocks`` zeroed blocks."""
        if not 0 < alignment < _MAX_ALIGNMENT:
            raise ValueError(f"Alignment must be in 1..{_MAX_ALIGNMENT - 1}")
        if k < 1:
            raise ValueError("Branching factor must be positive")
        if desc_size < 1:
            raise ValueError("Descriptor size must be positive")
        if nblocks < 0:
            raise ValueError("Number of blocks must not be negative")
        if len(desc_name.encode("utf-8")) >= _MAX_NAME_BYTES:
            raise ValueError(
                f"Descriptor name must be shorter than {_MAX_NAME_BYTES} bytes"
            )

        desc_wp = _round_up(desc_size, alignment)
        feature_off = _round_up(_SIGNATURE.size, alignment)
        child_off = feature_off + k * desc_wp
        block_size = _round_up(feature_off + k * (desc_wp + _NODE_INFO.size), alignment)
        self._params = VocabularyParams(
            desc_name=desc_name,
            alignment=alignment,
            nblocks=nblocks,
            desc_size_bytes_wp=desc_wp,
            block_size_bytes_wp=block_size,
            feature_off_start=feature_off,
            child_off_start=child_off,
            total_size=block_size * nblocks,
            desc_type=int(desc_type),
            desc_size=desc_size,
            k=k,
        )
        self._data = bytearray(self._params.total_size)
        self._cache.clear()

    def is_valid(self) -> bool:
        return self._data is not None

    def clear(self) -> None:
        """Drop all data and parameters."""
        self._params = VocabularyParams()
        self._data = None
        self._cache.clear()

    def _require_valid(self) -> bytearray:
        if self._data is None:
            raise RuntimeError("Vocabulary holds no data")
        return self._data

    def _block_offset(self, index: int) -> int:
        self._require_valid()
        if not 0 <= index < self._params.nblocks:
            raise IndexError(f"Block {index} out of range 0..{self._params.nblocks - 1}")
        return index * self._params.block_size_bytes_wp

    def _feature_bytes(self, feature) -> bytes:
        dtype = np.float32 if self._params.desc_type == DescriptorType.FLOAT else np.uint8
        raw = np.ascontiguousarray(feature, dtype=dtype).ravel().tobytes()
        if len(raw) != self._params.desc_size:
            raise ValueError(
                f"Feature has {len(raw)} bytes, vocabulary expects {self._params.desc_size}"
            )
        return raw

    def set_block(self, block, n, parent_id, features, nodes, all_leaves) -> None:
        """Store the ``n`` children of a node, their features and node infos."""
        data = self._require_valid()
        base = self._block_offset(block)
        p = self._params
        features = list(features)
        nodes = list(nodes)
        if not 0 <= n <= p.k:
            raise ValueError(f"A block holds at most {p.k} nodes, got {n}")
        if len(features) != n or len(nodes) != n:
            raise ValueError("Need exactly one feature and one node info per node")

        _HEADER.pack_into(data, base, n, int(bool(all_leaves)), parent_id)
        for slot, (feature, node) in enumerate(zip(features, nodes)):
            raw = self._feature_bytes(feature)
            start = base + p.feature_off_start + slot * p.desc_size_bytes_wp
            data[start:start + len(raw)] = raw
            _NODE_INFO.pack_into(
                data,
                base + p.child_off_start + slot * _NODE_INFO.size,
                node.id_or_childblock,
                node.weight,
            )
        self._cache.pop(block, None)

    def _node_info(self, block: int, slot: int) -> NodeInfo:
        data = self._require_valid()
        offset = (
            block * self._params.block_size_bytes_wp
            + self._params.child_off_start
            + slot * _NODE_INFO.size
        )
        return NodeInfo(*_NODE_INFO.unpack_from(data, offset))

    def block(self, index) -> _Block:
        """Return a read-only view of block ``index``."""
        cached = self._cache.get(index)
        if cached is not None:
            return cached
        data = self._require_valid()
        base = self._block_offset(index)
        p = self._params
        n, leaf_flag, parent_id = _HEADER.unpack_from(data, base)
        if n > p.k:
            raise ValueError(f"Block {index} claims {n} nodes, more than k={p.k}")

        start = base + p.feature_off_start
        padded = np.frombuffer(
            bytes(data[start:start + n * p.desc_size_bytes_wp]), dtype=np.uint8
        ).reshape(n, p.desc_size_bytes_wp)
        features = padded[:, :p.desc_size].copy()
        if p.desc_type == DescriptorType.FLOAT and p.desc_size % 4 == 0:
            features = features.view(np.float32)
        features.flags.writeable = False

        result = _Block(
            n=n,
            is_leaf=bool(leaf_flag),
            parent_id=parent_id,
            features=features,
            nodes=tuple(self._node_info(index, slot) for slot in range(n)),
        )
        self._cache[index] = result
        return result

    def _prepare(self, features) -> np.ndarray:
        self._require_valid()
        arr = np.asarray(features)
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.ndim != 2 or arr.shape[0] == 0:
            raise ValueError("Vocabulary.transform No input data")
        try:
            kind = DescriptorType.from_array(arr)
        except ValueError as exc:
            raise ValueError(
                "Vocabulary.transform features are of different type than vocabulary"
            ) from exc
        if kind != self._params.desc_type:
            raise ValueError(
                "Vocabulary.transform features are of different type than vocabulary"
            )
        if arr.shape[1] * arr.itemsize != self._params.desc_size:
            raise ValueError(
                "Vocabulary.transform features are of different size than the vocabulary ones"
            )
        return arr

    def _walk(self, feature: np.ndarray) -> Iterator[tuple[int, NodeInfo]]:
        """Descend from the root, yielding the chosen slot and its node info."""
        binary = self._params.desc_type == DescriptorType.BINARY
        limit = _BINARY_LIMIT if binary else _FLOAT_LIMIT
        best = 0
        index = 0
        while True:
            blk = self.block(index)
            if blk.n:
                if binary:
                    dists = np.unpackbits(
                        np.bitwise_xor(blk.features, feature), axis=1
                    ).sum(axis=1)
                else:
                    diff = blk.features - feature
                    dists = (diff * diff).sum(axis=1, dtype=np.float32)
                candidate = int(np.argmin(dists))
                if dists[candidate] < limit:
                    best = candidate
            info = self._node_info(index, best)
            yield best, info
            if info.is_leaf or info.id == 0:
                return
            index = info.id

    def transform(self, features) -> BagOfWords:
        """Return the L2-normalised bag of words of the feature rows."""
        arr = self._prepare(features)
        result = BagOfWords()
        for row in arr:
            for _, info in self._walk(row):
                if info.is_leaf:
                    result[info.id] = _f32(result[info.id] + info.weight)
        return result.normalized()

    def transform_with_level(self, features, level) -> tuple[BagOfWords, BagOfWordsIndex]:
        """Return the unnormalised bag of words and, for each tree node at
        depth ``level``, the indices of the feature rows that passed through it."""
        if level < 0:
            raise ValueError("Level must not be negative")
        arr = self._prepare(features)
        nbits = math.ceil(math.log2(self._params.k))
        words = BagOfWords()
        index = BagOfWordsIndex()
        for feature_idx, row in enumerate(arr):
            depth = 0
            node = 0
            for best, info in self._walk(row):
                if depth == level:
                    index[node].append(feature_idx)
                if info.is_leaf:
                    words[info.id] = _f32(words[info.id] + info.weight)
                    if depth < level:
                        index[node].append(feature_idx)
                    break
                node = ((node << nbits) | best) & _MASK32
                depth += 1
        return words, index

    def read_from_file(self, filepath) -> None:
        with open(filepath, "rb") as handle:
            self.from_stream(handle)

    def save_to_file(self, filepath) -> None:
        with open(filepath, "wb") as handle:
            self.to_stream(handle)

    def to_stream(self, stream: BinaryIO) -> None:
        """Write the signature, the parameters and the raw blocks."""
        stream.write(_SIGNATURE.pack(SIGNATURE))
        stream.write(self._params.pack())
        stream.write(bytes(self._data or b""))

    def from_stream(self, stream: BinaryIO) -> None:
        """Replace this vocabulary with one read from a binary stream."""
        (signature,) = _SIGNATURE.unpack(_read_exact(stream, _SIGNATURE.size))
        if signature != SIGNATURE:
            raise ValueError("Vocabulary.fromStream invalid signature")
        params = VocabularyParams.unpack(_read_exact(stream, _PARAMS.size))
        data = bytearray(_read_exact(stream, params.total_size))
        self._params = params
        self._data = data
        self._cache.clear()

    def hash(self) -> int:
        """Return a 64-bit hash of the raw block data."""
        seed = 0
        for value in memoryview(bytes(self._data or b"")).cast("b"):
            seed = _mix(seed, value)
        return seed


def _iter_nodes(nodes: Iterable[NodeInfo]) -> list[NodeInfo]:
    return list(nodes)