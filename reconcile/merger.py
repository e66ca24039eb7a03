from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from common.logging_setup import get_logger
from common.types import Marker, Photo, RecordSet
from reconcile.matching import Probe, TargetIndex, find_match, normalize_filename
from reconcile.options import DuplicatePhotoStrategy, DuplicateStrategy, MergeOptions


log = get_logger("reconcile.merger")


@dataclass(frozen=True)
class MarkerDecision:
    """
    Classification of one source marker.

    Attributes:
        source_index: position in source.markers.
        target_index: matched position in target.markers, or None when new.
        strategy: rule that produced the match (None when new).
        score: rule score (overlap fraction, 1.0 for labels, negated distance for coordinates).
        photos: source photos that will be added.
        photo_collisions: source photos whose filename already exists on the matched target.
    """
    source_index: int
    target_index: Optional[int]
    strategy: Optional[DuplicateStrategy]
    score: float
    photos: Tuple[Photo, ...] = ()
    photo_collisions: Tuple[Photo, ...] = ()

    @property
    def is_duplicate(self) -> bool:
        return self.target_index is not None


@dataclass(frozen=True)
class MergeStats:
    new_markers: int
    duplicate_markers: int
    new_photos: int
    duplicate_photos: int
    updated_markers: int
    total_source_markers: int
    total_source_photos: int
    matched_by: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_markers": self.new_markers,
            "duplicate_markers": self.duplicate_markers,
            "new_photos": self.new_photos,
            "duplicate_photos": self.duplicate_photos,
            "updated_markers": self.updated_markers,
            "total_source_markers": self.total_source_markers,
            "total_source_photos": self.total_source_photos,
            "matched_by": dict(self.matched_by),
        }


@dataclass(frozen=True)
class MergeResult:
    result: RecordSet
    stats: MergeStats
    decisions: Tuple[MarkerDecision, ...] = ()


def _check_inputs(target: RecordSet, source: RecordSet, options: Optional[MergeOptions]) -> MergeOptions:
    if not isinstance(target, RecordSet) or not isinstance(source, RecordSet):
        raise TypeError("target and source must be RecordSet instances")
    if options is None:
        return MergeOptions()
    if not isinstance(options, MergeOptions):
        raise TypeError("options must be a MergeOptions instance")
    return options


def classify(
    target: RecordSet,
    source: RecordSet,
    options: Optional[MergeOptions] = None,
) -> List[MarkerDecision]:
    """
    Decide, for every source marker in order, whether it duplicates a target
    marker and which of its photos will be carried over. Matching is one-to-one:
    a consumed target leaves the candidate pool for later source markers.
    """
    options = _check_inputs(target, source, options)
    index = TargetIndex(target, cell_size=options.coordinate_tolerance)
    target_photos = target.photos_by_marker()
    source_photos = source.photos_by_marker()

    decisions: List[MarkerDecision] = []
    for si, marker in enumerate(source.markers):
        photos = source_photos.get(marker.id, [])
        hit = find_match(index, Probe.of(marker, photos), options)

        if hit is None:
            decisions.append(MarkerDecision(si, None, None, 0.0, tuple(photos)))
            continue

        ti, strategy, score = hit
        index.consume(ti)
        existing = {
            normalize_filename(p.filename)
            for p in target_photos.get(target.markers[ti].id, [])
        }
        existing.discard("")
        kept: List[Photo] = []
        collisions: List[Photo] = []
        for p in photos:
            name = normalize_filename(p.filename)
            if name and name in existing:
                collisions.append(p)
                if options.duplicate_photo_strategy is DuplicatePhotoStrategy.KEEP_BOTH:
                    kept.append(p)
                continue
            kept.append(p)
            if name:
                existing.add(name)
        decisions.append(MarkerDecision(si, ti, strategy, score, tuple(kept), tuple(collisions)))
        log.debug(
            "Duplicate marker",
            extra={"extra": {
                "source": marker.id,
                "target": target.markers[ti].id,
                "strategy": strategy.value,
                "score": score,
            }},
        )
    return decisions


def _stats(decisions: List[MarkerDecision], source: RecordSet) -> MergeStats:
    matched_by: Dict[str, int] = {}
    dup = new = new_photos = dup_photos = updated = 0
    for d in decisions:
        new_photos += len(d.photos)
        if d.is_duplicate:
            dup += 1
            dup_photos += len(d.photo_collisions)
            matched_by[d.strategy.value] = matched_by.get(d.strategy.value, 0) + 1
            if d.photos:
                updated += 1
        else:
            new += 1
    return MergeStats(
        new_markers=new,
        duplicate_markers=dup,
        new_photos=new_photos,
        duplicate_photos=dup_photos,
        updated_markers=updated,
        total_source_markers=len(source.markers),
        total_source_photos=len(source.photos),
        matched_by=matched_by,
    )


def statistics(
    target: RecordSet,
    source: RecordSet,
    options: Optional[MergeOptions] = None,
) -> MergeStats:
    """Dry run: the counts merge() would produce for the same inputs."""
    return _stats(classify(target, source, options), source)


def merge(
    target: RecordSet,
    source: RecordSet,
    options: Optional[MergeOptions] = None,
) -> MergeResult:
    """
    Fold a (coordinate-transformed) source record set into the target.

    - Target markers keep their ids and positions; a matched one gains the
      carried-over source photos in photo_refs.
    - Unmatched source markers are appended with fresh ids; their photos get
      fresh ids and marker_id rewritten.
    - Inputs are never modified.
    """
    options = _check_inputs(target, source, options)
    decisions = classify(target, source, options)
    now = options.clock()
    keep_ts = options.preserve_timestamps

    markers: List[Marker] = list(target.markers)
    appended: List[Marker] = []
    photos_out: List[Photo] = []

    def carry(p: Photo, marker_id: str) -> str:
        pid = options.id_generator()
        photos_out.append(p.replace(
            id=pid,
            marker_id=marker_id,
            created_at=p.created_at if keep_ts else now,
        ))
        return pid

    for d in decisions:
        src = source.markers[d.source_index]
        if d.is_duplicate:
            t = markers[d.target_index]
            refs = t.photo_refs + tuple(carry(p, t.id) for p in d.photos)
            markers[d.target_index] = t.replace(
                photo_refs=refs,
                modified_at=t.modified_at if keep_ts else now,
            )
        else:
            mid = options.id_generator()
            refs = tuple(carry(p, mid) for p in d.photos)
            appended.append(src.replace(
                id=mid,
                photo_refs=refs,
                created_at=src.created_at if keep_ts else now,
                modified_at=src.modified_at if keep_ts else now,
            ))

    result = RecordSet(
        markers=tuple(markers) + tuple(appended),
        photos=tuple(target.photos) + tuple(photos_out),
    )
    stats = _stats(decisions, source)
    log.info(
        "Merge complete",
        extra={"extra": {
            "strategy": options.duplicate_strategy.value,
            "tolerance_px": options.coordinate_tolerance,
            **stats.to_dict(),
        }},
    )
    return MergeResult(result=result, stats=stats, decisions=tuple(decisions))
