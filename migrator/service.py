from __future__ import annotations

from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from common.errors import MigratorError, SingularMatrixError
from common.logging_setup import get_logger
from common.types import AffineMatrix, CorrespondencePair, Point, RecordSet
from exchange.parser import parse_document, passthrough_metadata
from exchange.writer import export_document
from migrator.config import load_config, merge_options_from_config, thresholds_from_config
from migrator.pipeline import transform_record_set
from reconcile.merger import merge, statistics
from transform.affine import apply_batch, fit, invert
from transform.validator import Thresholds, quality_report, recommended_tolerance, suggest_additional_points


log = get_logger("migrator.service")

P = load_config()

app = FastAPI(title="Map Migrator API", version="1.1.0")


def _bad_request(kind: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"kind": kind, "message": message})


def _pairs(payload: Dict[str, Any]) -> List[CorrespondencePair]:
    raw = payload.get("pairs")
    if not isinstance(raw, list):
        raise _bad_request("bad_request", "'pairs' must be a list of {source, target}")
    try:
        return [CorrespondencePair.of(p["source"], p["target"]) for p in raw]
    except (KeyError, TypeError, ValueError) as e:
        raise _bad_request("bad_request", f"malformed pair: {e}") from e


def _matrix(payload: Dict[str, Any]) -> AffineMatrix:
    try:
        return AffineMatrix.from_dict(payload["matrix"])
    except (KeyError, TypeError, ValueError) as e:
        raise _bad_request("bad_request", f"'matrix' needs numeric a..f: {e}") from e


def _thresholds(payload: Dict[str, Any]) -> Thresholds:
    if "thresholds" not in payload:
        return thresholds_from_config(P)
    return thresholds_from_config({"transform": {**P.get("transform", {}), **(payload["thresholds"] or {})}})


def _merge_inputs(payload: Dict[str, Any]):
    """(target ParsedExport, source ParsedExport, source records in target space, options)."""
    if not isinstance(payload.get("target"), dict) or not isinstance(payload.get("source"), dict):
        raise _bad_request("bad_request", "'target' and 'source' export documents are required")
    target = parse_document(payload["target"])
    source = parse_document(payload["source"])
    records: RecordSet = source.records
    if payload.get("matrix") is not None:
        records, _ = transform_record_set(
            records, _matrix(payload), (target.map_meta.width, target.map_meta.height)
        )
    rmse = payload.get("rmse")
    try:
        rmse_px = float(rmse) if rmse is not None else None
    except (TypeError, ValueError) as e:
        raise _bad_request("bad_request", f"'rmse' must be a number: {e}") from e
    options = merge_options_from_config(P, rmse_px=rmse_px, **dict(payload.get("options") or {}))
    return target, source, records, options


@app.exception_handler(MigratorError)
def _migrator_error(request: Request, exc: MigratorError):
    # core input errors are client errors
    log.warning("Rejected request", extra={"extra": {"path": request.url.path, **exc.to_dict()}})
    return JSONResponse(status_code=400, content={"detail": exc.to_dict()})


@app.get("/health")
def health():
    return {
        "status": "ok",
        "merge_defaults": dict(P.get("merge", {})),
    }


@app.post("/fit")
def fit_endpoint(payload: Dict[str, Any] = Body(...)):
    """
    Body: {pairs: [{source: [x, y], target: [x, y]}], thresholds?: {...}, bounds?: [w, h]}
    Returns the matrix, its inverse, the quality report and the recommended tolerance.
    """
    pairs = _pairs(payload)
    m = fit(pairs)
    report = quality_report(pairs, m, _thresholds(payload))
    try:
        inverse: Optional[Dict[str, Any]] = invert(m).to_dict()
    except SingularMatrixError:
        inverse = None
    merge_cfg = P.get("merge", {})
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
    bounds = payload.get("bounds")
    if bounds is not None:
        w, h = bounds
        out["suggestions"] = [
            {"x": s.x, "y": s.y, "reason": s.reason}
            for s in suggest_additional_points([p.source for p in pairs], (float(w), float(h)))
        ]
    return out


@app.post("/transform")
def transform_endpoint(payload: Dict[str, Any] = Body(...)):
    """Body: {matrix: {a..f}, points: [[x, y], ...], inverse?: bool}"""
    m = _matrix(payload)
    if payload.get("inverse"):
        m = invert(m)
    try:
        pts = [Point.of(p) for p in payload.get("points") or []]
    except (KeyError, TypeError, ValueError) as e:
        raise _bad_request("bad_request", f"malformed point: {e}") from e
    return {"points": [[p.x, p.y] for p in apply_batch(pts, m)]}


@app.post("/merge/preview")
def merge_preview(payload: Dict[str, Any] = Body(...)):
    """Statistics merge would produce; nothing is built."""
    target, _, records, options = _merge_inputs(payload)
    stats = statistics(target.records, records, options)
    return {"options": options.to_dict(), "stats": stats.to_dict()}


@app.post("/merge")
def merge_endpoint(payload: Dict[str, Any] = Body(...)):
    target, source, records, options = _merge_inputs(payload)
    res = merge(target.records, records, options)
    metadata = passthrough_metadata(target.metadata)
    metadata["mergedFrom"] = list(metadata.get("mergedFrom") or []) + [{
        "mapId": source.map_meta.id,
        "mapName": source.map_meta.name,
        "options": options.to_dict(),
        "stats": res.stats.to_dict(),
    }]
    doc = export_document(
        target.map_meta,
        res.result,
        source_app=P.get("output", {}).get("source_app", "Map Migrator"),
        metadata=metadata,
        clock=options.clock,
    )
    return {"stats": res.stats.to_dict(), "document": doc}


def main() -> None:
    svc = P.get("service", {})
    uvicorn.run(app, host=svc.get("host", "127.0.0.1"), port=int(svc.get("port", 8080)))


if __name__ == "__main__":
    main()
