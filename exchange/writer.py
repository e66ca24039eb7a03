from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from PIL import Image

from common.logging_setup import get_logger
from common.types import IsoTime, Marker, Photo, RecordSet
from common.utils import new_id, now_iso, sha256_bytes
from exchange.parser import EXPORT_TYPES, SUPPORTED_VERSIONS, MapInfo


log = get_logger("exchange.writer")

DEFAULT_SOURCE_APP = "Map Migrator"


def encode_data_uri(data: bytes, mime: str) -> str:
    return f"data:{mime};base64," + base64.b64encode(data).decode("ascii")


def map_from_image(
    path: Union[str, Path],
    name: Optional[str] = None,
    map_id: Optional[str] = None,
    clock: Callable[[], IsoTime] = now_iso,
) -> MapInfo:
    """
    Map metadata for a plain image file: pixel size via Pillow, bytes embedded
    as a data URI, sha256 of the raw file as imageHash.
    """
    p = Path(path)
    raw = p.read_bytes()
    with Image.open(p) as img:
        width, height = img.size
        mime = Image.MIME.get(img.format or "", "image/png")
    now = clock()
    return MapInfo(
        id=map_id or new_id(),
        name=name or p.stem,
        width=float(width),
        height=float(height),
        image_hash=sha256_bytes(raw),
        created_at=now,
        modified_at=now,
        extra={"imageData": encode_data_uri(raw, mime)},
    )


def _num(v: float) -> Union[int, float]:
    # whole-pixel values serialize as JSON integers
    return int(v) if float(v).is_integer() else v


def marker_to_dict(m: Marker, now: IsoTime) -> Dict[str, Any]:
    created = m.created_at or now
    d: Dict[str, Any] = {
        "id": m.id,
        "x": _num(m.x),
        "y": _num(m.y),
        "description": m.description,
        "label": m.label,
        "photoIds": list(m.photo_refs),
        "createdDate": created,
        "lastModified": m.modified_at or created,
    }
    d.update(m.extra)
    return d


def photo_to_dict(p: Photo, now: IsoTime) -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "id": p.id,
        "markerId": p.marker_id,
        "fileName": p.filename or "photo.jpg",
        "fileType": "image/jpeg",
        "fileSize": 0,
        "createdDate": p.created_at or now,
    }
    d.update(p.extra)
    return d


def map_to_dict(info: MapInfo, now: IsoTime) -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "id": info.id,
        "name": info.name,
        "width": _num(info.width),
        "height": _num(info.height),
        "imageHash": info.image_hash,
        "createdDate": info.created_at or now,
        "lastModified": info.modified_at or now,
    }
    d.update(info.extra)
    return d


def export_document(
    map_meta: MapInfo,
    records: RecordSet,
    *,
    source_app: str = DEFAULT_SOURCE_APP,
    metadata: Optional[Dict[str, Any]] = None,
    include_photos: bool = True,
    clock: Callable[[], IsoTime] = now_iso,
) -> Dict[str, Any]:
    """
    Build a v1.1 export document (ready for json.dumps) from map metadata and a
    record set. Pass-through fields kept in `extra` are written back as-is.
    """
    now = clock()
    doc: Dict[str, Any] = {
        "version": SUPPORTED_VERSIONS[-1],
        "type": EXPORT_TYPES[0],
        "sourceApp": source_app,
        "timestamp": now,
        "map": map_to_dict(map_meta, now),
        "markers": [marker_to_dict(m, now) for m in records.markers],
        "photos": [photo_to_dict(p, now) for p in records.photos] if include_photos else [],
    }
    if metadata:
        doc["metadata"] = dict(metadata)
    return doc


def write_export(path: Union[str, Path], document: Dict[str, Any]) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
    log.info(
        "Wrote export",
        extra={"extra": {
            "path": str(p),
            "markers": len(document.get("markers") or []),
            "photos": len(document.get("photos") or []),
        }},
    )
    return p
