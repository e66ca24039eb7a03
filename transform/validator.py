from __future__ import annotations
"""
Quality metrics for a fitted affine transform:
- rmse over the fitting pairs (a fit residual, not a held-out score)
- anomaly detection on the matrix (scale, shear, reflection, degeneracy)
- point distribution check (near-collinear reference points)
- suggestions for where to add reference points
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from common.logging_setup import get_logger
from common.types import (
    AffineMatrix,
    CorrespondencePair,
    Point,
    QualityReport,
    WarningKind,
    DEGENERATE_EPS,
)
from transform.affine import apply_array


log = get_logger("transform.validator")


@dataclass(frozen=True)
class Thresholds:
    """Tunable warning thresholds (advisory, not invariants)."""
    high_rmse_px: float = 15.0
    scale_ratio: float = 0.1          # relative difference between axis scales
    shear: float = 0.1
    extreme_shear: float = 0.5
    min_scale: float = 0.2
    max_scale: float = 5.0
    min_area_ratio: float = 0.1


DEFAULT_THRESHOLDS = Thresholds()


@dataclass(frozen=True)
class AnomalyReport:
    scale_x: float
    scale_y: float
    shear: float
    rotation_deg: float
    determinant: float
    has_reflection: bool
    has_extreme_scale: bool
    has_extreme_shear: bool
    is_degenerate: bool


@dataclass(frozen=True)
class DistributionCheck:
    is_valid: bool
    reason: Optional[str]
    area_ratio: float


@dataclass(frozen=True)
class Suggestion:
    x: float
    y: float
    reason: str


# -----------------------------
# Metrics
# -----------------------------

def rmse(pairs: Sequence[CorrespondencePair], m: AffineMatrix) -> float:
    """
    sqrt(mean(|M·source - target|²)) over the same pairs used to fit M.
    Returns 0.0 for no pairs.
    """
    if not pairs:
        return 0.0
    src = np.array([(p.source.x, p.source.y) for p in pairs], dtype=float)
    dst = np.array([(p.target.x, p.target.y) for p in pairs], dtype=float)
    err = apply_array(src, m) - dst
    return float(np.sqrt(np.mean(np.sum(err ** 2, axis=1))))


def detect_anomalies(m: AffineMatrix, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> AnomalyReport:
    det = m.determinant
    scale_x = math.hypot(m.a, m.c)
    scale_y = math.hypot(m.b, m.d)
    denom = scale_x * scale_y
    # 0 = perpendicular basis vectors, ±1 = parallel
    shear = (m.a * m.b + m.c * m.d) / denom if denom > 0 else 0.0
    rotation = math.degrees(math.atan2(m.c, m.a))
    return AnomalyReport(
        scale_x=scale_x,
        scale_y=scale_y,
        shear=shear,
        rotation_deg=rotation,
        determinant=det,
        has_reflection=det < 0,
        has_extreme_scale=(
            scale_x > thresholds.max_scale or scale_y > thresholds.max_scale
            or scale_x < thresholds.min_scale or scale_y < thresholds.min_scale
        ),
        has_extreme_shear=abs(shear) > thresholds.extreme_shear,
        is_degenerate=abs(det) < DEGENERATE_EPS,
    )


# -----------------------------
# Point distribution
# -----------------------------

def _bbox(points: Sequence[Point]) -> Tuple[float, float, float, float]:
    xs = [p.x for p in points]
    ys = [p.y for p in points]
    return min(xs), min(ys), max(xs), max(ys)


def _cross(o: Point, a: Point, b: Point) -> float:
    return (a.x - o.x) * (b.y - o.y) - (a.y - o.y) * (b.x - o.x)


def convex_hull(points: Sequence[Point]) -> List[Point]:
    """Andrew's monotone chain; counter-clockwise, collinear points dropped."""
    pts = sorted(set((p.x, p.y) for p in points))
    if len(pts) < 3:
        return [Point(x, y) for x, y in pts]
    P = [Point(x, y) for x, y in pts]

    lower: List[Point] = []
    for p in P:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)
    upper: List[Point] = []
    for p in reversed(P):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)
    return lower[:-1] + upper[:-1]


def polygon_area(points: Sequence[Point]) -> float:
    """Area spanned by the points: triangle for 3, convex hull (shoelace) otherwise."""
    if len(points) < 3:
        return 0.0
    if len(points) == 3:
        return abs(_cross(points[0], points[1], points[2])) / 2.0
    hull = convex_hull(points)
    if len(hull) < 3:
        return 0.0
    s = 0.0
    for i, p in enumerate(hull):
        q = hull[(i + 1) % len(hull)]
        s += p.x * q.y - q.x * p.y
    return abs(s) / 2.0


def validate_point_distribution(
    points: Sequence[Point],
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> DistributionCheck:
    """
    Flag near-collinear reference points: spanned area / bounding-box area must
    exceed thresholds.min_area_ratio. Advisory only; fewer than 3 points pass.
    """
    if len(points) < 3:
        return DistributionCheck(True, None, 1.0)

    x0, y0, x1, y1 = _bbox(points)
    w, h = x1 - x0, y1 - y0
    box = w * h
    if box == 0:
        if w == 0 and h == 0:
            reason = "All reference points are at the same location"
        else:
            reason = "Reference points are collinear (all on one horizontal or vertical line)"
        return DistributionCheck(False, reason, 0.0)

    ratio = polygon_area(points) / box
    if ratio > thresholds.min_area_ratio:
        return DistributionCheck(True, None, ratio)
    return DistributionCheck(
        False,
        "Reference points are nearly collinear - add points further apart",
        ratio,
    )


def suggest_additional_points(
    current: Sequence[Point],
    bounds: Tuple[float, float],
) -> List[Suggestion]:
    """
    Candidate locations for further reference points inside a (width, height) image:
      - no points yet: three corners
      - otherwise: centre of every empty quadrant
      - all quadrants covered: corners with no point within 10% of the shorter side
    """
    width, height = float(bounds[0]), float(bounds[1])
    if not current:
        return [
            Suggestion(0.0, 0.0, "Top-left corner (origin)"),
            Suggestion(width, 0.0, "Top-right corner"),
            Suggestion(0.0, height, "Bottom-left corner"),
        ]

    mx, my = width / 2.0, height / 2.0
    quadrants = [
        ("top-left", 0.0, mx, 0.0, my),
        ("top-right", mx, width, 0.0, my),
        ("bottom-left", 0.0, mx, my, height),
        ("bottom-right", mx, width, my, height),
    ]
    out: List[Suggestion] = []
    for name, qx0, qx1, qy0, qy1 in quadrants:
        occupied = any(qx0 <= p.x <= qx1 and qy0 <= p.y <= qy1 for p in current)
        if not occupied:
            out.append(Suggestion((qx0 + qx1) / 2.0, (qy0 + qy1) / 2.0, f"No points in {name} quadrant"))
    if out:
        return out

    near = min(width, height) * 0.1
    corners = [
        ("top-left corner", 0.0, 0.0),
        ("top-right corner", width, 0.0),
        ("bottom-left corner", 0.0, height),
        ("bottom-right corner", width, height),
    ]
    for name, cx, cy in corners:
        if not any(abs(p.x - cx) < near and abs(p.y - cy) < near for p in current):
            out.append(Suggestion(cx, cy, f"Add point near {name} for better coverage"))
    return out


# -----------------------------
# Report
# -----------------------------

def quality_report(
    pairs: Sequence[CorrespondencePair],
    m: AffineMatrix,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> QualityReport:
    """Full QualityReport for a fit, with the advisory warning set."""
    err = rmse(pairs, m)
    an = detect_anomalies(m, thresholds)
    dist = validate_point_distribution([p.source for p in pairs], thresholds)

    warnings = set()
    if err > thresholds.high_rmse_px:
        warnings.add(WarningKind.HIGH_RMSE)
    top = max(an.scale_x, an.scale_y)
    if top > 0 and abs(an.scale_x - an.scale_y) / top > thresholds.scale_ratio:
        warnings.add(WarningKind.UNEQUAL_SCALE)
    if abs(an.shear) > thresholds.shear:
        warnings.add(WarningKind.SHEAR)
    if an.has_reflection:
        warnings.add(WarningKind.REFLECTION)
    if an.has_extreme_scale:
        warnings.add(WarningKind.EXTREME_SCALE)
    if an.has_extreme_shear:
        warnings.add(WarningKind.EXTREME_SHEAR)
    if an.is_degenerate:
        warnings.add(WarningKind.DEGENERATE)
    if not dist.is_valid:
        warnings.add(WarningKind.POOR_DISTRIBUTION)

    report = QualityReport(
        rmse=err,
        scale_x=an.scale_x,
        scale_y=an.scale_y,
        shear=an.shear,
        rotation_deg=an.rotation_deg,
        determinant=an.determinant,
        has_reflection=an.has_reflection,
        is_degenerate=an.is_degenerate,
        warnings=frozenset(warnings),
    )
    if warnings:
        log.info("Transform quality warnings", extra={"extra": {"warnings": sorted(w.value for w in warnings)}})
    return report


def recommended_tolerance(rmse_px: float, factor: float = 2.5, floor: float = 5.0) -> float:
    """Suggested duplicate-coordinate tolerance: max(floor, ceil(rmse * factor))."""
    if not math.isfinite(rmse_px) or rmse_px < 0:
        return float(floor)
    return float(max(floor, math.ceil(rmse_px * factor)))
