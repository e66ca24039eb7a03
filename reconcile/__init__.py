"""
Reconciliation (merge) engine.

Classifies each incoming (already transformed) marker as new or as a duplicate
of an existing target marker, then produces a merged record set:
- strategies: none | label | photos | coordinates | smart (photos → label → coordinates)
- one-to-one matching in source order, best-scoring candidate wins
- statistics(): dry run with exactly the counts merge() will produce
"""
from .options import DuplicateStrategy, DuplicatePhotoStrategy, MergeOptions
from .merger import MergeResult, MergeStats, MarkerDecision, classify, merge, statistics

__all__ = [
    "DuplicateStrategy",
    "DuplicatePhotoStrategy",
    "MergeOptions",
    "MergeResult",
    "MergeStats",
    "MarkerDecision",
    "classify",
    "merge",
    "statistics",
]
