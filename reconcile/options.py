from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from common.errors import InvalidOptionsError
from common.types import IsoTime
from common.utils import new_id, now_iso


class DuplicateStrategy(str, Enum):
    NONE = "none"
    LABEL = "label"
    PHOTOS = "photos"
    COORDINATES = "coordinates"
    SMART = "smart"


class DuplicatePhotoStrategy(str, Enum):
    SKIP = "skip"
    KEEP_BOTH = "keep-both"


def _enum(cls, value: Any, name: str):
    if isinstance(value, cls):
        return value
    allowed = ", ".join(m.value for m in cls)
    if not isinstance(value, str):
        raise InvalidOptionsError(f"{name} must be one of: {allowed} (got {value!r})")
    try:
        return cls(value.strip().lower())
    except ValueError:
        raise InvalidOptionsError(f"{name} must be one of: {allowed} (got {value!r})") from None


@dataclass(frozen=True)
class MergeOptions:
    """
    Reconciliation settings.

    Attributes:
        duplicate_strategy: rule deciding whether a source marker already exists.
        coordinate_tolerance: max Euclidean distance (px) for the coordinates rule.
            Callers usually derive it from the fit RMSE (see recommended_tolerance).
        photo_match_threshold: min filename overlap |S∩T| / min(|S|,|T|), in (0, 1].
        duplicate_photo_strategy: what to do with a source photo whose filename
            already exists on the matched target marker.
        preserve_timestamps: keep original created/modified timestamps.
        id_generator: mints ids for new markers/photos.
        clock: merge time source.
    """
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.COORDINATES
    coordinate_tolerance: float = 5.0
    photo_match_threshold: float = 0.7
    duplicate_photo_strategy: DuplicatePhotoStrategy = DuplicatePhotoStrategy.SKIP
    preserve_timestamps: bool = False
    id_generator: Callable[[], str] = field(default=new_id, repr=False, compare=False)
    clock: Callable[[], IsoTime] = field(default=now_iso, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "duplicate_strategy",
            _enum(DuplicateStrategy, self.duplicate_strategy, "duplicate_strategy"),
        )
        object.__setattr__(
            self, "duplicate_photo_strategy",
            _enum(DuplicatePhotoStrategy, self.duplicate_photo_strategy, "duplicate_photo_strategy"),
        )
        try:
            tol = float(self.coordinate_tolerance)
            thr = float(self.photo_match_threshold)
        except (TypeError, ValueError):
            raise InvalidOptionsError("coordinate_tolerance and photo_match_threshold must be numbers") from None
        if not math.isfinite(tol) or tol < 0:
            raise InvalidOptionsError(f"coordinate_tolerance must be a finite value >= 0 (got {self.coordinate_tolerance!r})")
        if not math.isfinite(thr) or not (0.0 < thr <= 1.0):
            raise InvalidOptionsError(f"photo_match_threshold must be in (0, 1] (got {self.photo_match_threshold!r})")
        if not callable(self.id_generator) or not callable(self.clock):
            raise InvalidOptionsError("id_generator and clock must be callables")
        object.__setattr__(self, "coordinate_tolerance", tol)
        object.__setattr__(self, "photo_match_threshold", thr)
        if not isinstance(self.preserve_timestamps, bool):
            raise InvalidOptionsError(f"preserve_timestamps must be true or false (got {self.preserve_timestamps!r})")

    @classmethod
    def from_mapping(cls, d: Mapping[str, Any], **overrides: Any) -> "MergeOptions":
        """
        Build from a config/HTTP mapping. Unknown keys are rejected so that a
        typo never silently falls back to a default.
        """
        known = {
            "duplicate_strategy", "coordinate_tolerance", "photo_match_threshold",
            "duplicate_photo_strategy", "preserve_timestamps",
        }
        unknown = sorted(set(d) - known)
        if unknown:
            raise InvalidOptionsError(f"Unknown merge option(s): {', '.join(unknown)}")
        kwargs: Dict[str, Any] = {k: v for k, v in d.items() if v is not None}
        kwargs.update(overrides)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duplicate_strategy": self.duplicate_strategy.value,
            "coordinate_tolerance": self.coordinate_tolerance,
            "photo_match_threshold": self.photo_match_threshold,
            "duplicate_photo_strategy": self.duplicate_photo_strategy.value,
            "preserve_timestamps": self.preserve_timestamps,
        }
