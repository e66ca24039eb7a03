from __future__ import annotations

import argparse
import json
import math
import re
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import yaml

from common.errors import InvalidOptionsError, MigratorError, SingularMatrixError
from common.logging_setup import get_logger, setup_logging
from common.types import AffineMatrix, CorrespondencePair, Point, QualityReport, RecordSet
from common.utils import clamp, now_iso, timer_ms
from exchange.parser import MapInfo, ParsedExport, load_export, passthrough_metadata
from exchange.splitter import date_range_summary, split_by_dates
from exchange.writer import export_document, map_from_image, write_export
from migrator.config import load_config, merge_options_from_config, thresholds_from_config
from reconcile.merger import MergeResult, merge, statistics
from reconcile.options import MergeOptions
from transform.affine import apply_array, fit, invert
from transform.validator import Thresholds, quality_report, recommended_tolerance, suggest_additional_points


log = get_logger("migrator")


# -----------------------------
# Correspondences
# -----------------------------

def denormalize(
    pairs: Sequence[CorrespondencePair],
    source_size: Tuple[float, float],
    target_size: Tuple[float, float],
) -> List[CorrespondencePair]:
    """Scale 0..1 image coordinates to pixels of the source / target images."""
    sw, sh = source_size
    tw, th = target_size
    return [
        CorrespondencePair(
            Point(p.source.x * sw, p.source.y * sh),
            Point(p.target.x * tw, p.target.y * th),
        )
        for p in pairs
    ]


def load_correspondences(
    path: str,
    source_size: Optional[Tuple[float, float]] = None,
    target_size: Optional[Tuple[float, float]] = None,
) -> List[CorrespondencePair]:
    """
    Read `pairs: [{source: [x, y], target: [x, y]}, ...]` from YAML or JSON.
    With `normalized: true` both image sizes are required.
    """
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)
    if isinstance(doc, list):
        doc = {"pairs": doc}
    if not isinstance(doc, dict) or not isinstance(doc.get("pairs"), list):
        raise InvalidOptionsError(f"{path}: expected a 'pairs' list")
    try:
        pairs = [CorrespondencePair.of(p["source"], p["target"]) for p in doc["pairs"]]
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidOptionsError(f"{path}: malformed pair ({e})") from e

    if doc.get("normalized"):
        if source_size is None or target_size is None:
            raise InvalidOptionsError("normalized pairs need both source and target image sizes")
        pairs = denormalize(pairs, source_size, target_size)
    return pairs


def _parse_size(s: Optional[str]) -> Optional[Tuple[float, float]]:
    if not s:
        return None
    parts = s.lower().replace(",", "x").split("x")
    try:
        w, h = [float(x) for x in parts]
    except ValueError:
        raise InvalidOptionsError(f"Image size must look like WIDTHxHEIGHT (got {s!r})") from None
    if not (math.isfinite(w) and math.isfinite(h)) or w <= 0 or h <= 0:
        raise InvalidOptionsError(f"Image size must be positive (got {s!r})")
    return (w, h)


# -----------------------------
# Fit + transform
# -----------------------------

def fit_and_report(
    pairs: Sequence[CorrespondencePair],
    thresholds: Thresholds,
) -> Tuple[AffineMatrix, QualityReport, float]:
    """Returns (matrix, quality report, fit latency in ms)."""
    m, fit_ms = timer_ms(fit)(pairs)
    report = quality_report(pairs, m, thresholds)
    log.info(
        "Fitted affine transform",
        extra={"extra": {"pairs": len(pairs), "rmse_px": report.rmse, "latency_ms": round(fit_ms, 3)}},
    )
    return m, report, fit_ms


def _round_half_up(v: float) -> float:
    return float(math.floor(v + 0.5))


def transform_record_set(
    records: RecordSet,
    m: AffineMatrix,
    bounds: Tuple[float, float],
    now: Optional[str] = None,
) -> Tuple[RecordSet, int]:
    """
    Map every marker into target pixels, clamp to [0, width] x [0, height] and
    round to whole pixels. Photos are untouched.
    Returns (record set, number of markers that had to be clamped).
    """
    if not records.markers:
        return records, 0
    width, height = bounds
    stamp = now or now_iso()
    pts = np.array([[mk.x, mk.y] for mk in records.markers], dtype=float)
    moved = apply_array(pts, m)

    markers = []
    clamped = 0
    for mk, (x, y) in zip(records.markers, moved):
        if x < 0 or x > width or y < 0 or y > height:
            clamped += 1
        markers.append(mk.replace(
            x=_round_half_up(clamp(x, 0.0, width)),
            y=_round_half_up(clamp(y, 0.0, height)),
            modified_at=stamp,
        ))
    if clamped:
        log.warning(
            "Markers outside target bounds were clamped",
            extra={"extra": {"count": clamped, "width": width, "height": height}},
        )
    return RecordSet(markers=tuple(markers), photos=records.photos), clamped


# -----------------------------
# Migration modes
# -----------------------------

def migrate_replace(
    source: ParsedExport,
    target_map: MapInfo,
    transformed: RecordSet,
    P: Dict[str, Any],
) -> Dict[str, Any]:
    """Target is a bare image: a fresh export around it holding the transformed records."""
    out = P.get("output", {})
    info = MapInfo(
        id=target_map.id,
        name=f"{source.map_meta.name}{out.get('name_suffix', '')}",
        width=target_map.width,
        height=target_map.height,
        image_hash=target_map.image_hash,
        created_at=target_map.created_at,
        modified_at=target_map.modified_at,
        extra={**target_map.extra, "description": f"Migrated from {source.map_meta.name}"},
    )
    metadata = passthrough_metadata(source.metadata)
    metadata["migratedFrom"] = {"mapId": source.map_meta.id, "mapName": source.map_meta.name}
    return export_document(
        info,
        transformed,
        source_app=out.get("source_app", "Map Migrator"),
        metadata=metadata,
    )


def migrate_merge(
    source: ParsedExport,
    target: ParsedExport,
    transformed: RecordSet,
    options: MergeOptions,
    P: Dict[str, Any],
) -> Tuple[Dict[str, Any], MergeResult]:
    """Target is an export: reconcile the transformed records into it."""
    res = merge(target.records, transformed, options)
    now = options.clock()
    tm = target.map_meta
    info = MapInfo(
        id=tm.id,
        name=tm.name,
        width=tm.width,
        height=tm.height,
        image_hash=tm.image_hash,
        created_at=tm.created_at,
        modified_at=now,
        extra={**tm.extra, "description": f"Merged with {source.map_meta.name}"},
    )
    metadata = passthrough_metadata(target.metadata)
    history = list(metadata.get("mergedFrom") or [])
    history.append({
        "mapId": source.map_meta.id,
        "mapName": source.map_meta.name,
        "mergedAt": now,
        "options": options.to_dict(),
        "stats": res.stats.to_dict(),
    })
    metadata["mergedFrom"] = history
    doc = export_document(
        info,
        res.result,
        source_app=P.get("output", {}).get("source_app", "Map Migrator"),
        metadata=metadata,
        clock=options.clock,
    )
    return doc, res


def _slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_") or "map"


def _default_out(P: Dict[str, Any], name: str) -> Path:
    stamp = now_iso().replace(":", "-").replace(".", "-")
    return Path(P.get("output", {}).get("directory", "out")) / f"{_slug(name)}_{stamp}.json"


def _write_metrics_row(path: Path, row: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", buffering=1) as f:
        f.write(json.dumps(row) + "\n")


def _emit(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


# -----------------------------
# Commands
# -----------------------------

def cmd_fit(args: argparse.Namespace, P: Dict[str, Any]) -> int:
    source_size = _parse_size(args.source_size)
    pairs = load_correspondences(args.pairs, source_size, _parse_size(args.target_size))
    m, report, _ = fit_and_report(pairs, thresholds_from_config(P))
    merge_cfg = P.get("merge", {})
    try:
        inverse = invert(m).to_dict()
    except SingularMatrixError:
        inverse = None
    out = {
        "matrix": m.to_dict(),
        "inverse": inverse,
        "quality": report.to_dict(),
        "warnings": report.warning_messages(),
        "recommended_tolerance": recommended_tolerance(
            report.rmse,
            float(merge_cfg.get("tolerance_factor", 2.5)),
            float(merge_cfg.get("tolerance_floor", 5.0)),
        ),
    }
    if source_size is not None:
        out["suggestions"] = [
            {"x": s.x, "y": s.y, "reason": s.reason}
            for s in suggest_additional_points([p.source for p in pairs], source_size)
        ]
    _emit(out)
    return 0


def cmd_migrate(args: argparse.Namespace, P: Dict[str, Any]) -> int:
    t0 = time.perf_counter()
    source = load_export(args.source)
    target_path = Path(args.target)
    merge_mode = target_path.suffix.lower() == ".json"

    if merge_mode:
        target: Optional[ParsedExport] = load_export(target_path)
        target_map = target.map_meta
    else:
        target = None
        target_map = map_from_image(target_path)

    pairs = load_correspondences(
        args.pairs,
        (source.map_meta.width, source.map_meta.height),
        (target_map.width, target_map.height),
    )
    m, report, _ = fit_and_report(pairs, thresholds_from_config(P))
    for msg in report.warning_messages():
        log.warning(msg, extra={"extra": {"rmse_px": report.rmse}})

    transformed, clamped = transform_record_set(
        source.records, m, (target_map.width, target_map.height)
    )

    row: Dict[str, Any] = {
        "ts": now_iso(),
        "command": "migrate",
        "mode": "merge" if merge_mode else "replace",
        "source": str(args.source),
        "target": str(target_path),
        "pairs": len(pairs),
        "rmse_px": report.rmse,
        "warnings": sorted(w.value for w in report.warnings),
        "markers_in": len(source.records.markers),
        "clamped": clamped,
        "dry_run": bool(args.dry_run),
    }

    if merge_mode:
        options = merge_options_from_config(
            P,
            rmse_px=report.rmse,
            duplicate_strategy=args.strategy,
            coordinate_tolerance=args.tolerance,
            photo_match_threshold=args.photo_threshold,
            duplicate_photo_strategy=args.photo_strategy,
        )
        row["options"] = options.to_dict()
        if args.dry_run:
            stats = statistics(target.records, transformed, options)
            row.update(stats.to_dict())
            _emit({"mode": "merge", "options": options.to_dict(), "stats": stats.to_dict()})
        else:
            doc, res = migrate_merge(source, target, transformed, options, P)
            row.update(res.stats.to_dict())
    elif args.dry_run:
        _emit({"mode": "replace", "markers": len(transformed.markers), "clamped": clamped})
    else:
        doc = migrate_replace(source, target_map, transformed, P)

    if not args.dry_run:
        out_path = Path(args.out) if args.out else _default_out(P, target_map.name)
        write_export(out_path, doc)
        row["output"] = str(out_path)
        row["markers_out"] = len(doc["markers"])
        _emit({"output": str(out_path), "markers": len(doc["markers"]), "photos": len(doc["photos"])})

    row["latency_ms"] = int(1000.0 * (time.perf_counter() - t0))
    _write_metrics_row(Path(P["logging"]["metrics_file"]), row)
    log.info("Migration finished", extra={"extra": row})
    return 0


def cmd_split(args: argparse.Namespace, P: Dict[str, Any]) -> int:
    parsed = load_export(args.export)
    summary = date_range_summary(parsed.records)
    if args.summary:
        _emit(summary.to_dict())
        return 0

    dates = [d.strip() for d in args.dates.split(",") if d.strip()] if args.dates else summary.all_dates
    if not dates:
        log.warning("Export has no dated markers", extra={"extra": {"path": args.export}})
        return 0

    out_dir = Path(args.out or P.get("output", {}).get("directory", "out"))
    stem = _slug(parsed.map_meta.name)
    written = []
    for day, subset in split_by_dates(parsed.records, dates).items():
        metadata = passthrough_metadata(parsed.metadata)
        metadata.update({"splitDate": day, "originalTimestamp": parsed.metadata.get("exportDate")})
        doc = export_document(
            parsed.map_meta,
            subset,
            source_app=parsed.metadata.get("sourceApp") or P["output"]["source_app"],
            metadata=metadata,
        )
        written.append(str(write_export(out_dir / f"{stem}_{day}.json", doc)))
    _emit({"files": written})
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Map Migrator: move markers between map images")
    ap.add_argument("--config", default=None, help="YAML config (default: $MIGRATOR_CONFIG or config/params.yaml)")
    ap.add_argument("--log-level", default=None)
    sub = ap.add_subparsers(dest="command", required=True)

    f = sub.add_parser("fit", help="Fit a transform and print its quality report")
    f.add_argument("--pairs", required=True, help="YAML/JSON correspondences")
    f.add_argument("--source-size", default=None, help="WxH of the source image")
    f.add_argument("--target-size", default=None, help="WxH of the target image")
    f.set_defaults(func=cmd_fit)

    m = sub.add_parser("migrate", help="Transform a source export onto a target image or export")
    m.add_argument("--source", required=True, help="Source export (.json)")
    m.add_argument("--target", required=True, help="Target image (replace) or export .json (merge)")
    m.add_argument("--pairs", required=True, help="YAML/JSON correspondences")
    m.add_argument("--out", default=None, help="Output export path")
    m.add_argument("--strategy", default=None, choices=["none", "label", "photos", "coordinates", "smart"])
    m.add_argument("--tolerance", type=float, default=None, help="Coordinate tolerance px (default: from RMSE)")
    m.add_argument("--photo-threshold", type=float, default=None)
    m.add_argument("--photo-strategy", default=None, choices=["skip", "keep-both"])
    m.add_argument("--dry-run", action="store_true", help="Only report what would happen")
    m.set_defaults(func=cmd_migrate)

    s = sub.add_parser("split", help="Split an export by marker creation day")
    s.add_argument("--export", required=True)
    s.add_argument("--dates", default=None, help="Comma-separated YYYY-MM-DD list (default: every day)")
    s.add_argument("--out", default=None, help="Output directory")
    s.add_argument("--summary", action="store_true", help="Print the date range summary only")
    s.set_defaults(func=cmd_split)
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    P = load_config(args.config)
    setup_logging(args.log_level or P.get("logging", {}).get("level", "INFO"), stream=sys.stderr, force=True)
    try:
        return args.func(args, P)
    except MigratorError as e:
        log.error(e.message, extra={"extra": e.to_dict()})
        return 2


if __name__ == "__main__":
    sys.exit(main())
