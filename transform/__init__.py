"""
Affine transformation engine.

This package provides:
- A 3x3 normal-equations solver (Gaussian elimination, partial pivoting)
- Least-squares affine fitting from point correspondences, forward/batch
  application and exact inversion
- Quality metrics: RMSE, scale/shear/reflection anomalies, point-distribution
  checks and suggestions for additional reference points

Usage:
    from transform import fit, apply, quality_report
"""
from .affine import fit, fit_points, apply, apply_batch, apply_array, invert
from .validator import (
    Thresholds,
    rmse,
    detect_anomalies,
    validate_point_distribution,
    suggest_additional_points,
    quality_report,
    recommended_tolerance,
)

__all__ = [
    "fit",
    "fit_points",
    "apply",
    "apply_batch",
    "apply_array",
    "invert",
    "Thresholds",
    "rmse",
    "detect_anomalies",
    "validate_point_distribution",
    "suggest_additional_points",
    "quality_report",
    "recommended_tolerance",
]
