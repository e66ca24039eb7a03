from __future__ import annotations
"""
Duplicate-marker matching for reconciliation.

- TargetIndex: label / photo-filename / coordinate-grid indexes over the target markers,
  plus the pool of targets not yet consumed by an earlier source marker
- MatchRule: (strategy, candidates, score, accept, ceiling), one per duplicate strategy
- CASCADES: ordered rules per DuplicateStrategy; 'smart' = photos → label → coordinates
- find_match: best available candidate for one source marker
"""

import heapq
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, FrozenSet, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

from common.types import Marker, Photo, RecordSet
from reconcile.options import DuplicateStrategy, MergeOptions


def normalize_label(label: str) -> str:
    return (label or "").strip().casefold()


def normalize_filename(name: str) -> str:
    return (name or "").strip().lower()


def filename_set(photos: Iterable[Photo]) -> FrozenSet[str]:
    names = (normalize_filename(p.filename) for p in photos)
    return frozenset(n for n in names if n)


# -----------------------------
# Index over target markers
# -----------------------------

class TargetIndex:
    """
    Lookup structures over a target RecordSet, built once per merge call.
    Target positions are the indices into records.markers.

    Label and filename buckets hold indices in ascending target order; consumed
    targets are dropped from the front of a bucket the next time it is read.
    Grid cells forget a target as soon as it is consumed.
    """

    def __init__(self, records: RecordSet, cell_size: float = 5.0) -> None:
        self.markers = records.markers
        self.available: Set[int] = set(range(len(self.markers)))
        by_marker = records.photos_by_marker()

        self.filenames: List[FrozenSet[str]] = []
        self.by_label: Dict[str, Deque[int]] = {}
        self.by_filename: Dict[str, Deque[int]] = {}
        for i, m in enumerate(self.markers):
            names = filename_set(by_marker.get(m.id, ()))
            self.filenames.append(names)
            for n in names:
                self.by_filename.setdefault(n, deque()).append(i)
            key = normalize_label(m.label)
            if key:
                self.by_label.setdefault(key, deque()).append(i)

        # cell >= tolerance, so a 3x3 neighbourhood covers every point within tolerance
        self.cell = max(float(cell_size), 1.0)
        self.grid: Dict[Tuple[int, int], Dict[int, None]] = {}
        for i, m in enumerate(self.markers):
            self.grid.setdefault(self._cell_of(m.x, m.y), {})[i] = None

    def _cell_of(self, x: float, y: float) -> Tuple[int, int]:
        return (math.floor(x / self.cell), math.floor(y / self.cell))

    def live(self, bucket: Deque[int]) -> Deque[int]:
        while bucket and bucket[0] not in self.available:
            bucket.popleft()
        return bucket

    def consume(self, t: int) -> None:
        """Take target t out of the candidate pool."""
        self.available.discard(t)
        m = self.markers[t]
        cell = self.grid.get(self._cell_of(m.x, m.y))
        if cell is not None:
            cell.pop(t, None)

    def near(self, x: float, y: float) -> Iterable[int]:
        cx, cy = self._cell_of(x, y)
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                yield from self.grid.get((cx + dx, cy + dy), ())


@dataclass(frozen=True)
class Probe:
    """A source marker prepared for matching."""
    marker: Marker
    label_key: str
    filenames: FrozenSet[str]

    @classmethod
    def of(cls, marker: Marker, photos: Iterable[Photo]) -> "Probe":
        return cls(marker, normalize_label(marker.label), filename_set(photos))


# -----------------------------
# Rules
# -----------------------------

class MatchRule(NamedTuple):
    strategy: DuplicateStrategy
    # available target indices worth scoring, ascending and unique
    candidates: Callable[[TargetIndex, Probe], Iterable[int]]
    # higher is better
    score: Callable[[TargetIndex, Probe, int], float]
    # the duplicate predicate, given the score
    accept: Callable[[float, MergeOptions], bool]
    # no candidate can score above this; scanning stops once it is reached
    ceiling: float


def _label_candidates(index: TargetIndex, probe: Probe) -> Iterable[int]:
    bucket = index.by_label.get(probe.label_key) if probe.label_key else None
    if not bucket:
        return ()
    bucket = index.live(bucket)
    return (bucket[0],) if bucket else ()


def _photo_candidates(index: TargetIndex, probe: Probe) -> Iterator[int]:
    buckets = [index.live(index.by_filename[n]) for n in sorted(probe.filenames) if n in index.by_filename]
    last = -1
    for t in heapq.merge(*buckets):
        if t != last and t in index.available:
            yield t
        last = t


def _photo_overlap(index: TargetIndex, probe: Probe, t: int) -> float:
    theirs = index.filenames[t]
    if not probe.filenames or not theirs:
        return 0.0
    return len(probe.filenames & theirs) / min(len(probe.filenames), len(theirs))


def _coordinate_candidates(index: TargetIndex, probe: Probe) -> Iterable[int]:
    return sorted(index.near(probe.marker.x, probe.marker.y))


def _neg_distance(index: TargetIndex, probe: Probe, t: int) -> float:
    m = index.markers[t]
    return -math.hypot(m.x - probe.marker.x, m.y - probe.marker.y)


LABEL_RULE = MatchRule(
    DuplicateStrategy.LABEL,
    _label_candidates,
    lambda index, probe, t: 1.0,
    lambda score, opts: True,
    1.0,
)

PHOTOS_RULE = MatchRule(
    DuplicateStrategy.PHOTOS,
    _photo_candidates,
    _photo_overlap,
    lambda score, opts: score > 0.0 and score >= opts.photo_match_threshold,
    1.0,
)

COORDINATES_RULE = MatchRule(
    DuplicateStrategy.COORDINATES,
    _coordinate_candidates,
    _neg_distance,
    lambda score, opts: -score <= opts.coordinate_tolerance,
    0.0,
)

CASCADES: Dict[DuplicateStrategy, Tuple[MatchRule, ...]] = {
    DuplicateStrategy.NONE: (),
    DuplicateStrategy.LABEL: (LABEL_RULE,),
    DuplicateStrategy.PHOTOS: (PHOTOS_RULE,),
    DuplicateStrategy.COORDINATES: (COORDINATES_RULE,),
    DuplicateStrategy.SMART: (PHOTOS_RULE, LABEL_RULE, COORDINATES_RULE),
}


def best_candidate(
    rule: MatchRule,
    index: TargetIndex,
    probe: Probe,
    options: MergeOptions,
) -> Optional[Tuple[int, float]]:
    """
    Highest-scoring available target accepted by the rule; ties go to the
    target that comes first in target order.
    """
    best: Optional[Tuple[int, float]] = None
    for t in rule.candidates(index, probe):
        if t not in index.available:
            continue
        s = rule.score(index, probe, t)
        if not rule.accept(s, options):
            continue
        if best is None or s > best[1]:
            best = (t, s)
            if s >= rule.ceiling:
                break
    return best


def find_match(
    index: TargetIndex,
    probe: Probe,
    options: MergeOptions,
) -> Optional[Tuple[int, DuplicateStrategy, float]]:
    """
    Run the cascade for options.duplicate_strategy. The first rule with any
    accepted candidate decides; later rules are not consulted.
    """
    for rule in CASCADES[options.duplicate_strategy]:
        hit = best_candidate(rule, index, probe, options)
        if hit is not None:
            return hit[0], rule.strategy, hit[1]
    return None
