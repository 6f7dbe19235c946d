"""Bag-of-words vocabularies for binary and float image descriptors: distances,
bag-of-words vectors, vocabulary trees and their construction by k-means."""

__version__ = "0.1.0"
__all__ = ["distance", "bow", "vocabulary", "creator"]