from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Tuple, Any, Dict, Iterable, List, FrozenSet
import numpy as np


IsoTime = str

# |det| below this is treated as non-invertible
DEGENERATE_EPS = 1e-10


def _as_float(v: Any, name: str) -> float:
    f = float(v)
    if not math.isfinite(f):
        raise ValueError(f"{name} must be finite, got {v!r}")
    return f


def _unique(items: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for it in items:
        seen.setdefault(str(it), None)
    return tuple(seen)


# -----------------------------
# Geometry
# -----------------------------

@dataclass(frozen=True, slots=True)
class Point:
    """Pixel-space coordinate (origin top-left) in one image's coordinate system."""
    x: float
    y: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", _as_float(self.x, "x"))
        object.__setattr__(self, "y", _as_float(self.y, "y"))

    @classmethod
    def of(cls, value: Any) -> "Point":
        """Accept a Point, an (x, y) pair or a {"x", "y"} mapping."""
        if isinstance(value, Point):
            return value
        if isinstance(value, dict):
            return cls(value["x"], value["y"])
        x, y = value
        return cls(x, y)

    def distance_to(self, other: "Point") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def to_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True, slots=True)
class AffineMatrix:
    """
    2-D affine map:
        x' = a*x + b*y + e
        y' = c*x + d*y + f
    """
    a: float
    b: float
    c: float
    d: float
    e: float
    f: float

    @property
    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    @property
    def is_degenerate(self) -> bool:
        return abs(self.determinant) < DEGENERATE_EPS

    @classmethod
    def identity(cls) -> "AffineMatrix":
        return cls(1.0, 0.0, 0.0, 1.0, 0.0, 0.0)

    @classmethod
    def from_array(cls, m: np.ndarray) -> "AffineMatrix":
        """From a 2x3 or 3x3 homogeneous matrix."""
        arr = np.asarray(m, dtype=float)
        if arr.shape not in ((2, 3), (3, 3)):
            raise ValueError("Expected a 2x3 or 3x3 matrix")
        return cls(
            a=float(arr[0, 0]), b=float(arr[0, 1]), e=float(arr[0, 2]),
            c=float(arr[1, 0]), d=float(arr[1, 1]), f=float(arr[1, 2]),
        )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AffineMatrix":
        return cls(*(float(d[k]) for k in ("a", "b", "c", "d", "e", "f")))

    def to_array(self) -> np.ndarray:
        return np.array(
            [[self.a, self.b, self.e],
             [self.c, self.d, self.f],
             [0.0, 0.0, 1.0]],
            dtype=float,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["determinant"] = self.determinant
        d["is_degenerate"] = self.is_degenerate
        return d


@dataclass(frozen=True, slots=True)
class CorrespondencePair:
    """One user-asserted source -> target reference-point pair."""
    source: Point
    target: Point

    @classmethod
    def of(cls, source: Any, target: Any) -> "CorrespondencePair":
        return cls(Point.of(source), Point.of(target))


class WarningKind(str, Enum):
    HIGH_RMSE = "high_rmse"
    UNEQUAL_SCALE = "unequal_scale"
    SHEAR = "shear"
    REFLECTION = "reflection"
    EXTREME_SCALE = "extreme_scale"
    EXTREME_SHEAR = "extreme_shear"
    DEGENERATE = "degenerate"
    POOR_DISTRIBUTION = "poor_distribution"


WARNING_MESSAGES: Dict[WarningKind, str] = {
    WarningKind.HIGH_RMSE: "High RMSE error - point placement may be inaccurate",
    WarningKind.UNEQUAL_SCALE: "Unequal scaling detected - maps may have different aspect ratios",
    WarningKind.SHEAR: "Shear transformation detected - maps may be skewed",
    WarningKind.REFLECTION: "Transformation includes reflection/mirroring",
    WarningKind.EXTREME_SCALE: "Extreme scaling detected - verify your reference points",
    WarningKind.EXTREME_SHEAR: "Extreme shear detected - maps may be heavily skewed",
    WarningKind.DEGENERATE: "Degenerate transformation - points may be collinear",
    WarningKind.POOR_DISTRIBUTION: "Reference points are poorly distributed",
}


@dataclass(frozen=True, slots=True)
class QualityReport:
    """
    Derived, read-only quality metrics for one fit.

    Attributes:
        rmse: residual RMSE (pixels) over the same pairs used for fitting.
        scale_x, scale_y: lengths of the transformed unit vectors.
        shear: normalized dot product of the transformed basis vectors (signed).
        rotation_deg: rotation of the transformed x axis.
        has_reflection: determinant < 0.
        is_degenerate: |determinant| < DEGENERATE_EPS.
        warnings: advisory findings; never blocking on their own.
    """
    rmse: float
    scale_x: float
    scale_y: float
    shear: float
    rotation_deg: float
    determinant: float
    has_reflection: bool
    is_degenerate: bool
    warnings: FrozenSet[WarningKind] = frozenset()

    def warning_messages(self) -> List[str]:
        return [WARNING_MESSAGES[w] for w in WarningKind if w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rmse": self.rmse,
            "scale_x": self.scale_x,
            "scale_y": self.scale_y,
            "shear": self.shear,
            "rotation_deg": self.rotation_deg,
            "determinant": self.determinant,
            "has_reflection": self.has_reflection,
            "is_degenerate": self.is_degenerate,
            "warnings": [w.value for w in WarningKind if w in self.warnings],
        }


# -----------------------------
# Records
# -----------------------------

@dataclass(frozen=True, slots=True)
class Photo:
    """
    Photo attached to exactly one Marker (via marker_id, a back-reference).

    Attributes:
        id: unique within its record set.
        filename: original file name; the key for duplicate detection.
        marker_id: id of the owning Marker.
        content_hash: hex digest of the photo payload.
        created_at: ISO-8601 (UTC) timestamp, may be empty when unknown.
        extra: interchange fields carried through untouched (image data, size, ...).
    """
    id: str
    filename: str
    marker_id: str
    content_hash: str = ""
    created_at: IsoTime = ""
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def replace(self, **changes: Any) -> "Photo":
        fields = {
            "id": self.id, "filename": self.filename, "marker_id": self.marker_id,
            "content_hash": self.content_hash, "created_at": self.created_at,
            "extra": self.extra,
        }
        fields.update(changes)
        return Photo(**fields)


@dataclass(frozen=True, slots=True)
class Marker:
    """
    Point annotation placed on a map image.

    photo_refs has set semantics (unique ids, order irrelevant to meaning) but is
    kept as an ordered tuple so that serialized output is stable across runs.
    """
    id: str
    x: float
    y: float
    label: str = ""
    photo_refs: Tuple[str, ...] = ()
    created_at: IsoTime = ""
    modified_at: IsoTime = ""
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", _as_float(self.x, "x"))
        object.__setattr__(self, "y", _as_float(self.y, "y"))
        object.__setattr__(self, "photo_refs", _unique(self.photo_refs))
        object.__setattr__(self, "label", self.label or "")

    @property
    def position(self) -> Point:
        return Point(self.x, self.y)

    def replace(self, **changes: Any) -> "Marker":
        fields = {
            "id": self.id, "x": self.x, "y": self.y, "label": self.label,
            "photo_refs": self.photo_refs, "created_at": self.created_at,
            "modified_at": self.modified_at, "description": self.description,
            "extra": self.extra,
        }
        fields.update(changes)
        return Marker(**fields)


@dataclass(frozen=True, slots=True)
class RecordSet:
    """Markers plus their photos; the unit of input/output for reconciliation."""
    markers: Tuple[Marker, ...] = ()
    photos: Tuple[Photo, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "markers", tuple(self.markers))
        object.__setattr__(self, "photos", tuple(self.photos))

    def marker_ids(self) -> List[str]:
        return [m.id for m in self.markers]

    def photos_for(self, marker_id: str) -> List[Photo]:
        return [p for p in self.photos if p.marker_id == marker_id]

    def photos_by_marker(self) -> Dict[str, List[Photo]]:
        out: Dict[str, List[Photo]] = {}
        for p in self.photos:
            out.setdefault(p.marker_id, []).append(p)
        return out

    def reference_problems(self) -> List[str]:
        """
        Every violation of the photo-reference invariant: each photo_refs entry
        must resolve to a Photo whose marker_id points back at the marker.
        """
        by_id = {p.id: p for p in self.photos}
        problems: List[str] = []
        for m in self.markers:
            for ref in m.photo_refs:
                p = by_id.get(ref)
                if p is None:
                    problems.append(f"marker {m.id}: photo {ref} not found")
                elif p.marker_id != m.id:
                    problems.append(f"marker {m.id}: photo {ref} belongs to marker {p.marker_id}")
        return problems

    @property
    def is_consistent(self) -> bool:
        return not self.reference_problems()
