"""Distance functions between feature descriptors."""

from __future__ import annotations

from enum import IntEnum
from typing import Callable

import numpy as np

DistanceFunction = Callable[[np.ndarray, np.ndarray], float]


class DescriptorType(IntEnum):
    """Supported descriptor element types, numbered like OpenCV matrix types."""

    BINARY = 0  # 8-bit unsigned, one channel
    FLOAT = 5  # 32-bit float, one channel

    @classmethod
    def from_array(cls, features) -> "DescriptorType":
        """Return the descriptor type of a feature array, checking its dtype."""
        dtype = np.asarray(features).dtype
        if dtype == np.uint8:
            return cls.BINARY
        if dtype == np.float32:
            return cls.FLOAT
        raise ValueError(
            f"Descriptors must be binary (uint8) or float (float32), got {dtype}"
        )


def _as_pair(a, b, dtype) -> tuple[np.ndarray, np.ndarray]:
    first = np.asarray(a, dtype=dtype).ravel()
    second = np.asarray(b, dtype=dtype).ravel()
    if first.shape != second.shape:
        raise ValueError(
            f"Descriptors differ in length: {first.size} and {second.size}"
        )
    return first, second


def hamming_distance(a, b) -> float:
    """Number of differing bits between two binary descriptors."""
    first, second = _as_pair(a, b, np.uint8)
    return float(np.unpackbits(np.bitwise_xor(first, second)).sum())


def l2_distance(a, b) -> float:
    """Squared Euclidean distance between two float descriptors."""
    first, second = _as_pair(a, b, np.float32)
    diff = first.astype(np.float64) - second.astype(np.float64)
    return float(np.dot(diff, diff))


def distance_function(desc_type) -> DistanceFunction:
    """Return the distance function suited to a descriptor type."""
    try:
        kind = DescriptorType(desc_type)
    except ValueError as exc:
        raise ValueError(
            "Descriptors must be binary CV_8UC1 or float CV_32FC1"
        ) from exc
    if kind is DescriptorType.BINARY:
        return hamming_distance
    return l2_distance