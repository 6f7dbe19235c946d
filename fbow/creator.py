"""Build a vocabulary tree from training descriptors by hierarchical k-means."""

from __future__ import annotations

import random
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from .bow import _mix
from .distance import DescriptorType
from .vocabulary import NodeInfo, Vocabulary

MAX_THREADS = 100

_NO_INDEX = 0xFFFFFFFF
_MASK32 = 0xFFFFFFFF
_FLT_MIN = np.float32(np.finfo(np.float32).tiny)
_POPCOUNT = np.array([bin(value).count("1") for value in range(256)], dtype=np.uint16)


@dataclass
class CreatorParams:
    """Options for building a vocabulary.

    ``k`` is the branching factor, ``levels`` the maximum tree depth (-1 for
    no limit), ``nthreads`` the number of worker threads and ``max_iters`` the
    number of k-means iterations per node. ``seed`` makes the random choice
    of the first cluster centre reproducible.
    """

    k: int = 32
    levels: int = -1
    nthreads: int = 1
    max_iters: int = 11
    verbose: bool = False
    seed: int = 0


@dataclass
class _Node:
    id: int
    parent: int
    feature: np.ndarray | None = None
    feat_idx: int = _NO_INDEX
    children: list[int] = field(default_factory=list)
    weight: float = 1.0

    @property
    def is_leaf(self) -> bool:
        return not self.children


def vector_hash(assignments: Iterable[Sequence[int]]) -> int:
    """Return a 64-bit hash of a list of cluster assignment lists."""
    groups = [list(group) for group in assignments]
    seed = 0
    for position, group in enumerate(groups, start=1):
        seed = (seed + len(group) * position) & 0xFFFFFFFFFFFFFFFF
    for group in groups:
        for index in group:
            seed = _mix(seed, int(index) & _MASK32)
    return seed


class VocabularyCreator:
    """Clusters descriptors into a tree of visual words."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._params = CreatorParams()
        self._features = np.empty((0, 0), dtype=np.uint8)
        self._desc_type = DescriptorType.BINARY
        self._desc_nbytes = 0
        self._tree: dict[int, _Node] = {}
        self._assignments: dict[int, np.ndarray] = {}

    def create(self, features, desc_name, params=None) -> Vocabulary:
        """Build and return a vocabulary from one or several descriptor matrices."""
        params = params if params is not None else CreatorParams()
        if params.k < 2:
            raise ValueError("Branching factor k must be at least 2")
        stacked = self._stack(features)

        self._params = params
        self._features = stacked
        self._desc_type = DescriptorType.from_array(stacked)
        self._desc_nbytes = stacked.shape[1] * stacked.itemsize
        self._tree = {0: _Node(id=0, parent=_NO_INDEX)}
        self._assignments = {0: np.arange(stacked.shape[0], dtype=np.int64)}

        nthreads = min(MAX_THREADS, params.nthreads)
        frontier = [(0, 0)]
        if nthreads > 1:
            with ThreadPoolExecutor(max_workers=nthreads) as pool:
                while frontier:
                    batches = pool.map(lambda item: self._create_level(*item), frontier)
                    frontier = [job for batch in batches for job in batch]
        else:
            while frontier:
                parent, depth = frontier.pop()
                frontier.extend(self._create_level(parent, depth))

        return self._convert_into_vocabulary(desc_name)

    @staticmethod
    def _stack(features) -> np.ndarray:
        if isinstance(features, np.ndarray):
            matrices = [features]
        else:
            matrices = [np.asarray(matrix) for matrix in features]
        if not matrices:
            raise ValueError("No feature matrices given")
        first = matrices[0]
        if first.ndim != 2 or first.shape[1] == 0:
            raise ValueError("Feature matrices must be two-dimensional with columns")
        DescriptorType.from_array(first)
        for matrix in matrices[1:]:
            if matrix.ndim != 2 or matrix.shape[1] != first.shape[1]:
                raise ValueError("All feature matrices must have the same number of columns")
            if matrix.dtype != first.dtype:
                raise ValueError("All feature matrices must have the same type")
        stacked = np.ascontiguousarray(np.vstack(matrices))
        if stacked.shape[0] == 0:
            raise ValueError("No input data")
        return stacked

    def _create_level(self, parent: int, depth: int) -> list[tuple[int, int]]:
        params = self._params
        k = params.k
        with self._lock:
            findices = self._assignments.pop(parent)

        child_assignments: list[np.ndarray] = []
        if len(findices) <= k:
            centers = self._features[findices]
        else:
            rng = random.Random(f"{params.seed}:{parent}")
            centers = self._features[self._initial_centers(findices, rng)]
            prev_hash, cur_hash = 1, 0
            iterations = 0
            while iterations < params.max_iters and cur_hash != prev_hash:
                prev_hash, cur_hash = cur_hash, prev_hash
                child_assignments = self._assign(findices, centers)
                centers = self._recompute_centers(child_assignments)
                cur_hash = vector_hash(child_assignments)
                iterations += 1
            child_assignments = self._assign(findices, centers)
            if params.verbose:
                print(f"Cluster created :{parent} {depth}", file=sys.stderr)

        from_features = len(findices) == len(centers)
        new_nodes = [
            _Node(
                id=parent * k + 1 + slot,
                parent=parent,
                feature=np.array(center, copy=True),
                feat_idx=int(findices[slot]) if from_features else _NO_INDEX,
            )
            for slot, center in enumerate(centers)
        ]
        with self._lock:
            parent_node = self._tree[parent]
            for node in new_nodes:
                self._tree[node.id] = node
                parent_node.children.append(node.id)

        go_deeper = params.levels == -1 or depth < params.levels - 1
        if not go_deeper or not child_assignments:
            return []
        with self._lock:
            for slot, assigned in enumerate(child_assignments):
                self._assignments[parent * k + 1 + slot] = assigned
        return [(parent * k + 1 + slot, depth + 1) for slot in range(len(new_nodes))]

    def _distances(self, center: np.ndarray, rows: np.ndarray) -> np.ndarray:
        if self._desc_type is DescriptorType.BINARY:
            return _POPCOUNT[np.bitwise_xor(rows, center)].sum(axis=1).astype(np.float32)
        diff = rows.astype(np.float32) - center.astype(np.float32)
        return (diff * diff).sum(axis=1, dtype=np.float64).astype(np.float32)

    def _initial_centers(self, findices: np.ndarray, rng: random.Random) -> list[int]:
        rows = self._features[findices]
        accumulated = np.zeros(len(findices), dtype=np.float32)
        centers = [int(findices[rng.randrange(len(findices))])]
        while len(centers) < self._params.k:
            accumulated = accumulated + self._distances(self._features[centers[-1]], rows)
            position = int(np.argmax(accumulated))
            if accumulated[position] > _FLT_MIN:
                centers.append(int(findices[position]))
            else:
                centers.append(0)
        return centers

    def _assign(self, findices: np.ndarray, centers: np.ndarray) -> list[np.ndarray]:
        rows = self._features[findices]
        best = self._distances(centers[0], rows)
        owner = np.zeros(len(findices), dtype=np.int64)
        for slot in range(1, len(centers)):
            dist = self._distances(centers[slot], rows)
            closer = dist < best
            best = np.where(closer, dist, best)
            owner[closer] = slot
        return [findices[owner == slot] for slot in range(len(centers))]

    def _recompute_centers(self, assignments: list[np.ndarray]) -> np.ndarray:
        if self._desc_type is DescriptorType.BINARY:
            means = [self._mean_binary(indices) for indices in assignments]
        else:
            means = [self._mean_float(indices) for indices in assignments]
        return np.stack(means)

    def _mean_binary(self, indices: np.ndarray) -> np.ndarray:
        rows = self._features[indices]
        sums = np.unpackbits(rows, axis=1).sum(axis=0)
        count = len(indices)
        threshold = count // 2 + count % 2
        return np.packbits(sums >= threshold)

    def _mean_float(self, indices: np.ndarray) -> np.ndarray:
        cols = self._features.shape[1]
        if len(indices) == 0:
            return np.full(cols, np.nan, dtype=np.float32)
        total = self._features[indices].sum(axis=0, dtype=np.float32)
        return (total * (1.0 / len(indices))).astype(np.float32)

    def _convert_into_vocabulary(self, desc_name: str) -> Vocabulary:
        leaf_count = 0
        block_ids: dict[int, int] = {}
        for node_id in sorted(self._tree):
            node = self._tree[node_id]
            if node.is_leaf:
                if node.feat_idx == _NO_INDEX:
                    node.feat_idx = leaf_count
                leaf_count += 1
            else:
                block_ids[node_id] = len(block_ids)

        alignment = 32 if self._desc_type is DescriptorType.FLOAT else 8
        vocabulary = Vocabulary()
        vocabulary.set_params(
            alignment,
            self._params.k,
            int(self._desc_type),
            self._desc_nbytes,
            len(block_ids),
            desc_name,
        )
        for node_id, block in block_ids.items():
            children = [self._tree[child] for child in self._tree[node_id].children]
            infos = [
                NodeInfo.leaf(child.feat_idx, child.weight)
                if child.is_leaf
                else NodeInfo.non_leaf(block_ids[child.id])
                for child in children
            ]
            # The block header's leaf flag is always written as set.
            vocabulary.set_block(
                block,
                len(children),
                node_id & _MASK32,
                [child.feature for child in children],
                infos,
                True,
            )
        return vocabulary