from __future__ import annotations
"""
Reader for the JSON export interchange format (v1.1):

    {version, type, sourceApp, timestamp,
     map: {id, name, imageData, width, height, imageHash, createdDate, lastModified},
     markers: [{id, x, y, description, createdDate, label?, photoIds?, lastModified?}],
     photos?: [{id, markerId, imageData, fileName, fileType, fileSize, createdDate}],
     metadata?: {...}}

Schema problems raise ExportFormatError (all problems listed at once);
out-of-bounds markers and dangling photo references are reported as warnings.
"""

import base64
import binascii
import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from common.errors import ExportFormatError
from common.logging_setup import get_logger
from common.types import IsoTime, Marker, Photo, RecordSet
from common.utils import sha256_bytes


log = get_logger("exchange.parser")

SUPPORTED_VERSIONS = ("1.1",)
# header fields folded into ParsedExport.metadata
HEADER_KEYS = ("version", "type", "sourceApp", "exportDate")
EXPORT_TYPES = ("SnapSpotDataExport", "snapspot-export")

SCHEMA: Dict[str, tuple] = {
    "root": ("version", "type", "sourceApp", "timestamp", "map", "markers"),
    "map": ("id", "name", "imageData", "width", "height", "imageHash", "createdDate", "lastModified"),
    "marker": ("id", "x", "y", "description", "createdDate"),
    "photo": ("id", "markerId", "imageData", "fileName", "fileType", "fileSize", "createdDate"),
}

_MARKER_KEYS = {"id", "x", "y", "label", "description", "photoIds", "createdDate", "lastModified"}
_PHOTO_KEYS = {"id", "markerId", "fileName", "createdDate"}
_MAP_KEYS = {"id", "name", "width", "height", "imageHash", "createdDate", "lastModified"}


@dataclass(frozen=True)
class MapInfo:
    """Map (image) metadata of an export; image bytes stay in extra['imageData']."""
    id: str
    name: str
    width: float
    height: float
    image_hash: str = ""
    created_at: IsoTime = ""
    modified_at: IsoTime = ""
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class ParsedExport:
    map_meta: MapInfo
    records: RecordSet
    metadata: Dict[str, Any]
    warnings: List[Dict[str, Any]]


# -----------------------------
# Data URIs
# -----------------------------

def decode_data_uri(uri: str) -> bytes:
    """Payload bytes of a base64 data URI ('data:<mime>;base64,<payload>')."""
    if not isinstance(uri, str) or not uri.startswith("data:") or "," not in uri:
        raise ValueError("not a data URI")
    head, payload = uri.split(",", 1)
    if not head.endswith(";base64"):
        return payload.encode("utf-8")
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def _content_hash(d: Dict[str, Any]) -> str:
    if d.get("hash"):
        return str(d["hash"])
    data = d.get("imageData")
    if not isinstance(data, str):
        return ""
    try:
        return sha256_bytes(decode_data_uri(data))
    except ValueError:
        return sha256_bytes(data.encode("utf-8"))


# -----------------------------
# Validation
# -----------------------------

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _required(obj: Any, keys: tuple, what: str) -> List[str]:
    if not isinstance(obj, dict):
        return [f"{what} must be an object"]
    errs = []
    for k in keys:
        if k not in obj:
            errs.append(f"{what} missing required field: {k}")
        elif obj[k] is None:
            errs.append(f"{what} field '{k}' cannot be null")
    return errs


def validate_export(data: Any) -> List[str]:
    """Every schema problem of a decoded export document (empty list = valid)."""
    errs = _required(data, SCHEMA["root"], "export")
    if errs:
        return errs

    if data["version"] not in SUPPORTED_VERSIONS:
        errs.append(
            f"Unsupported export version: {data['version']}. "
            f"Supported versions: {', '.join(SUPPORTED_VERSIONS)}"
        )
    if data["type"] not in EXPORT_TYPES:
        errs.append(f"Invalid export type: {data['type']}. Expected one of: {', '.join(EXPORT_TYPES)}")

    m = data["map"]
    map_errs = _required(m, SCHEMA["map"], "map")
    if not map_errs:
        if not _is_number(m["width"]) or m["width"] <= 0:
            map_errs.append("map.width must be a positive number")
        if not _is_number(m["height"]) or m["height"] <= 0:
            map_errs.append("map.height must be a positive number")
        if not isinstance(m["imageData"], str) or not m["imageData"].startswith("data:image/"):
            map_errs.append("map.imageData must be a valid data URI")
    errs.extend(map_errs)

    if not isinstance(data["markers"], list):
        errs.append("markers must be an array")
    else:
        for i, mk in enumerate(data["markers"]):
            e = _required(mk, SCHEMA["marker"], f"markers[{i}]")
            if not e:
                if not _is_number(mk["x"]):
                    e.append(f"markers[{i}].x must be a finite number")
                if not _is_number(mk["y"]):
                    e.append(f"markers[{i}].y must be a finite number")
            errs.extend(e)

    if "photos" in data:
        if not isinstance(data["photos"], list):
            errs.append("photos must be an array")
        else:
            for i, ph in enumerate(data["photos"]):
                e = _required(ph, SCHEMA["photo"], f"photos[{i}]")
                if not e and (not isinstance(ph["imageData"], str) or not ph["imageData"].startswith("data:image/")):
                    e.append(f"photos[{i}].imageData must be a valid data URI")
                errs.extend(e)
    return errs


# -----------------------------
# Conversion
# -----------------------------

def map_from_dict(d: Dict[str, Any]) -> MapInfo:
    return MapInfo(
        id=str(d["id"]),
        name=str(d["name"]),
        width=float(d["width"]),
        height=float(d["height"]),
        image_hash=str(d.get("imageHash") or d.get("hash") or ""),
        created_at=str(d.get("createdDate") or ""),
        modified_at=str(d.get("lastModified") or ""),
        extra={k: v for k, v in d.items() if k not in _MAP_KEYS},
    )


def photo_from_dict(d: Dict[str, Any]) -> Photo:
    return Photo(
        id=str(d["id"]),
        filename=str(d.get("fileName") or ""),
        marker_id=str(d["markerId"]),
        content_hash=_content_hash(d),
        created_at=str(d.get("createdDate") or ""),
        extra={k: v for k, v in d.items() if k not in _PHOTO_KEYS},
    )


def marker_from_dict(d: Dict[str, Any], fallback_refs: Optional[List[str]] = None) -> Marker:
    """
    Older exports may omit photoIds; the refs are then rebuilt from the photos'
    markerId back-references (fallback_refs).
    """
    refs = d.get("photoIds")
    if refs is None:
        refs = fallback_refs or []
    description = str(d.get("description") or "")
    created = str(d.get("createdDate") or "")
    return Marker(
        id=str(d["id"]),
        x=d["x"],
        y=d["y"],
        label=str(d.get("label") or description),
        description=description,
        photo_refs=tuple(str(r) for r in refs),
        created_at=created,
        modified_at=str(d.get("lastModified") or created),
        extra={k: v for k, v in d.items() if k not in _MARKER_KEYS},
    )


def records_from_document(data: Dict[str, Any]) -> RecordSet:
    photos = [photo_from_dict(p) for p in data.get("photos") or []]
    refs_by_marker: Dict[str, List[str]] = {}
    for p in photos:
        refs_by_marker.setdefault(p.marker_id, []).append(p.id)
    markers = [marker_from_dict(m, refs_by_marker.get(str(m["id"]))) for m in data.get("markers") or []]
    return RecordSet(markers=tuple(markers), photos=tuple(photos))


def out_of_bounds(records: RecordSet, width: float, height: float) -> List[Dict[str, Any]]:
    out = []
    for i, m in enumerate(records.markers):
        issues = []
        if m.x < 0 or m.x > width:
            issues.append(f"x={m.x} (should be 0-{width})")
        if m.y < 0 or m.y > height:
            issues.append(f"y={m.y} (should be 0-{height})")
        if issues:
            out.append({"index": i, "id": m.id, "issues": issues})
    return out


def parse_document(data: Any) -> ParsedExport:
    problems = validate_export(data)
    if problems:
        raise ExportFormatError(
            "Export validation failed:\n  - " + "\n  - ".join(problems),
            problems,
        )

    try:
        info = map_from_dict(data["map"])
        records = records_from_document(data)
    except ValueError as e:
        raise ExportFormatError(f"Export validation failed: {e}", [str(e)]) from e

    warnings: List[Dict[str, Any]] = []
    oob = out_of_bounds(records, info.width, info.height)
    if oob:
        warnings.append({
            "type": "out-of-bounds-markers",
            "count": len(oob),
            "markers": oob,
            "message": f"{len(oob)} marker(s) have coordinates outside map bounds",
        })
    dangling = records.reference_problems()
    if dangling:
        warnings.append({
            "type": "dangling-photo-references",
            "count": len(dangling),
            "problems": dangling,
            "message": f"{len(dangling)} photo reference(s) do not resolve",
        })
    if not records.markers:
        warnings.append({"type": "no-markers", "count": 0, "message": "Export contains no markers"})

    metadata = dict(data.get("metadata") or {})
    metadata.update({
        "version": data["version"],
        "type": data["type"],
        "sourceApp": data["sourceApp"],
        "exportDate": data.get("timestamp") or data.get("exportDate"),
    })
    for w in warnings:
        log.warning(w["message"], extra={"extra": {"type": w["type"], "map": info.name}})
    return ParsedExport(map_meta=info, records=records, metadata=metadata, warnings=warnings)


def parse_export(text: Union[str, bytes]) -> ParsedExport:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExportFormatError(f"Failed to parse JSON: {e}") from e
    return parse_document(data)


def load_export(path: Union[str, Path]) -> ParsedExport:
    p = Path(path)
    parsed = parse_export(p.read_text(encoding="utf-8"))
    log.info(
        "Loaded export",
        extra={"extra": {
            "path": str(p),
            "map": parsed.map_meta.name,
            "markers": len(parsed.records.markers),
            "photos": len(parsed.records.photos),
        }},
    )
    return parsed


def parse_export_metadata(text: Union[str, bytes]) -> Dict[str, Any]:
    """Cheap preview without schema validation."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExportFormatError(f"Failed to parse JSON: {e}") from e
    if not isinstance(data, dict):
        raise ExportFormatError("Export root must be an object")
    m = data.get("map") if isinstance(data.get("map"), dict) else {}
    return {
        "version": data.get("version") or "unknown",
        "map_name": m.get("name") or "Unknown Map",
        "marker_count": len(data.get("markers") or []),
        "photo_count": len(data.get("photos") or []),
        "export_date": data.get("timestamp") or data.get("exportDate") or "unknown",
        "source_app": data.get("sourceApp") or "unknown",
    }


def passthrough_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """ParsedExport.metadata without the folded-in header fields, for re-export."""
    return {k: v for k, v in metadata.items() if k not in HEADER_KEYS}
