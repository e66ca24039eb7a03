from __future__ import annotations
"""
Small dense linear algebra for the affine fit:
- normal equations (A^T A, A^T b) for the model  v = p0*x + p1*y + p2
- 3x3 Gaussian elimination with partial pivoting
"""

from typing import Sequence, Tuple

import numpy as np

from common.errors import SingularSystemError


# Absolute pivot floor
PIVOT_EPS = 1e-10
# Pivots within this many ulps of the largest entry are rounding noise
NOISE_ULPS = 64.0


def normal_equations(
    xs: Sequence[float],
    ys: Sequence[float],
    values: Sequence[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build A^T A and A^T b for rows A_i = [x_i, y_i, 1], b_i = values[i].

        A^T A = [[Σx²,  Σxy, Σx],
                 [Σxy,  Σy², Σy],
                 [Σx,   Σy,  n ]]
        A^T b = [Σx·v, Σy·v, Σv]
    """
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    v = np.asarray(values, dtype=float)
    if not (x.shape == y.shape == v.shape) or x.ndim != 1:
        raise ValueError("xs, ys and values must be 1-D and of equal length")

    sx, sy = float(x.sum()), float(y.sum())
    sxx, syy, sxy = float(x @ x), float(y @ y), float(x @ y)
    n = float(x.size)

    AtA = np.array(
        [[sxx, sxy, sx],
         [sxy, syy, sy],
         [sx, sy, n]],
        dtype=float,
    )
    Atb = np.array([float(x @ v), float(y @ v), float(v.sum())], dtype=float)
    return AtA, Atb


def solve_3x3(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Solve A·x = b for a 3x3 system by Gaussian elimination with partial pivoting.
    Inputs are not modified. Raises SingularSystemError when a pivot falls below
    PIVOT_EPS or below the rounding noise of the largest entry in A.
    """
    M = np.array(A, dtype=float, copy=True)
    r = np.array(b, dtype=float, copy=True).reshape(-1)
    if M.shape != (3, 3) or r.shape != (3,):
        raise ValueError("Expected a 3x3 matrix and a length-3 vector")

    n = 3
    tol = max(PIVOT_EPS, NOISE_ULPS * float(np.finfo(float).eps) * float(np.abs(M).max()))

    # Forward elimination
    for i in range(n):
        p = i + int(np.argmax(np.abs(M[i:, i])))
        if p != i:
            M[[i, p]] = M[[p, i]]
            r[[i, p]] = r[[p, i]]
        if abs(M[i, i]) < tol:
            raise SingularSystemError("Matrix is singular or nearly singular (are the points collinear?)")
        for k in range(i + 1, n):
            factor = M[k, i] / M[i, i]
            r[k] -= factor * r[i]
            M[k, i:] -= factor * M[i, i:]

    # Back substitution
    sol = np.zeros(n, dtype=float)
    for i in range(n - 1, -1, -1):
        s = r[i] - float(M[i, i + 1:] @ sol[i + 1:])
        sol[i] = s / M[i, i]
    return sol


def least_squares_3(
    xs: Sequence[float],
    ys: Sequence[float],
    values: Sequence[float],
) -> np.ndarray:
    """Least-squares [p0, p1, p2] for v ≈ p0*x + p1*y + p2 (exact for 3 points)."""
    AtA, Atb = normal_equations(xs, ys, values)
    return solve_3x3(AtA, Atb)
