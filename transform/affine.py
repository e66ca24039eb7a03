from __future__ import annotations
"""
Affine transform engine:
- fit(pairs): least-squares 2-D affine map from >= 3 correspondences
- apply / apply_batch / apply_array: forward mapping
- invert: exact algebraic inverse

The x' and y' outputs are fitted as two independent 3-parameter regressions
({a, b, e} and {c, d, f}); they share the same normal-equations matrix.
"""

from typing import Iterable, List, Sequence

import numpy as np

from common.errors import InsufficientPointsError, SingularMatrixError
from common.logging_setup import get_logger
from common.types import AffineMatrix, CorrespondencePair, Point, DEGENERATE_EPS
from transform.linalg import normal_equations, solve_3x3


log = get_logger("transform.affine")

MIN_PAIRS = 3


def fit(pairs: Sequence[CorrespondencePair]) -> AffineMatrix:
    """
    Fit x' = a*x + b*y + e, y' = c*x + d*y + f to the correspondences.

    Exact for 3 pairs, least-squares optimal for more. A degenerate *result*
    (|det| < eps) is returned as-is with is_degenerate=True.

    Raises:
        InsufficientPointsError: fewer than 3 pairs.
        SingularSystemError: normal equations unsolvable (collinear sources).
    """
    pairs = list(pairs)
    if len(pairs) < MIN_PAIRS:
        raise InsufficientPointsError(
            f"Minimum {MIN_PAIRS} point pairs required, got {len(pairs)}"
        )

    xs = [p.source.x for p in pairs]
    ys = [p.source.y for p in pairs]
    AtA, Atb_x = normal_equations(xs, ys, [p.target.x for p in pairs])
    _, Atb_y = normal_equations(xs, ys, [p.target.y for p in pairs])

    a, b, e = solve_3x3(AtA, Atb_x)
    c, d, f = solve_3x3(AtA, Atb_y)
    m = AffineMatrix(a=float(a), b=float(b), c=float(c), d=float(d), e=float(e), f=float(f))

    log.debug(
        "Affine fit",
        extra={"extra": {"pairs": len(pairs), "det": m.determinant, "degenerate": m.is_degenerate}},
    )
    return m


def fit_points(sources: Sequence, targets: Sequence) -> AffineMatrix:
    """Two-sequence form of fit(); items may be Points, (x, y) pairs or {"x","y"} dicts."""
    if len(sources) != len(targets):
        raise ValueError("Source and target point sequences must have the same length")
    return fit([CorrespondencePair.of(s, t) for s, t in zip(sources, targets)])


def apply(point: Point, m: AffineMatrix) -> Point:
    return Point(
        m.a * point.x + m.b * point.y + m.e,
        m.c * point.x + m.d * point.y + m.f,
    )


def apply_array(pts: np.ndarray, m: AffineMatrix) -> np.ndarray:
    """
    Transform an (N, 2) float array. Element-wise ops in the same order as
    apply(), so each row is bit-identical to the scalar result.
    """
    arr = np.asarray(pts, dtype=float).reshape(-1, 2)
    x = arr[:, 0]
    y = arr[:, 1]
    out = np.empty_like(arr)
    out[:, 0] = m.a * x + m.b * y + m.e
    out[:, 1] = m.c * x + m.d * y + m.f
    return out


def apply_batch(points: Iterable[Point], m: AffineMatrix) -> List[Point]:
    pts = list(points)
    if not pts:
        return []
    arr = apply_array(np.array([(p.x, p.y) for p in pts], dtype=float), m)
    return [Point(float(x), float(y)) for x, y in arr]


def invert(m: AffineMatrix) -> AffineMatrix:
    """
    Exact inverse. Raises SingularMatrixError when |det| < DEGENERATE_EPS.
    """
    det = m.determinant
    if abs(det) < DEGENERATE_EPS:
        raise SingularMatrixError(f"Matrix is singular (not invertible): det={det:.3e}")
    return AffineMatrix(
        a=m.d / det,
        b=-m.b / det,
        c=-m.c / det,
        d=m.a / det,
        e=(m.b * m.f - m.d * m.e) / det,
        f=(m.c * m.e - m.a * m.f) / det,
    )
