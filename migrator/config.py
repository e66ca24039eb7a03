from __future__ import annotations

import copy
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from common.errors import InvalidOptionsError
from common.logging_setup import get_logger
from reconcile.options import MergeOptions
from transform.validator import Thresholds, recommended_tolerance


log = get_logger("migrator.config")

DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "logging": {"level": "INFO", "metrics_file": "logs/migrations.jsonl"},
    "transform": {
        "high_rmse_px": 15.0,
        "scale_ratio": 0.1,
        "shear": 0.1,
        "extreme_shear": 0.5,
        "min_scale": 0.2,
        "max_scale": 5.0,
        "min_area_ratio": 0.1,
    },
    "merge": {
        "duplicate_strategy": "coordinates",
        # null: derive from the fit RMSE via recommended_tolerance
        "coordinate_tolerance": None,
        "tolerance_factor": 2.5,
        "tolerance_floor": 5.0,
        "photo_match_threshold": 0.7,
        "duplicate_photo_strategy": "skip",
        "preserve_timestamps": True,
    },
    "output": {"directory": "out", "source_app": "Map Migrator", "name_suffix": " - Migrated"},
    "service": {"host": "127.0.0.1", "port": 8080},
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; override wins, nested dicts are merged key by key."""
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML config over the built-in defaults.
    Path precedence: explicit arg, env MIGRATOR_CONFIG, config/params.yaml.
    A missing file yields the defaults.
    """
    p = Path(path or os.environ.get("MIGRATOR_CONFIG") or DEFAULT_CONFIG_PATH)
    if not p.exists():
        log.debug("Config file not found, using defaults", extra={"extra": {"path": str(p)}})
        return copy.deepcopy(DEFAULTS)
    with p.open("r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise InvalidOptionsError(f"Config root must be a mapping: {p}")
    return deep_merge(DEFAULTS, loaded)


def thresholds_from_config(P: Dict[str, Any]) -> Thresholds:
    section = dict(P.get("transform") or {})
    known = {f.name for f in fields(Thresholds)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise InvalidOptionsError(f"Unknown transform threshold(s): {', '.join(unknown)}")
    return Thresholds(**{k: float(v) for k, v in section.items()})


def merge_options_from_config(
    P: Dict[str, Any],
    rmse_px: Optional[float] = None,
    **overrides: Any,
) -> MergeOptions:
    """
    MergeOptions from the `merge` section. With coordinate_tolerance null the
    tolerance is recommended_tolerance(rmse_px, factor, floor), or the floor
    when no fit is available.
    """
    m = dict(P.get("merge") or {})
    factor = float(m.pop("tolerance_factor", 2.5))
    floor = float(m.pop("tolerance_floor", 5.0))
    m.update({k: v for k, v in overrides.items() if v is not None})
    if m.get("coordinate_tolerance") is None:
        m["coordinate_tolerance"] = (
            recommended_tolerance(rmse_px, factor, floor) if rmse_px is not None else floor
        )
    return MergeOptions.from_mapping(m)
