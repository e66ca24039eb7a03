"""
Builders for record sets and export documents shared by the test suites
"""

import itertools
from typing import Any, Dict, Iterable, List, Optional

from common.types import Marker, Photo, RecordSet
from reconcile.options import MergeOptions

# 1x1 transparent PNG
PNG_DATA_URI = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
JPEG_DATA_URI = "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQAAAQABAAD/2wBDAP//"

FIXED_NOW = "2026-03-01T12:00:00.000Z"


def mk(mid: str, x: float, y: float, label: str = "", refs: Iterable[str] = (), created: str = "2026-01-10T10:00:00.000Z") -> Marker:
    return Marker(id=mid, x=x, y=y, label=label, photo_refs=tuple(refs), created_at=created, modified_at=created)


def ph(pid: str, marker_id: str, filename: str) -> Photo:
    return Photo(id=pid, filename=filename, marker_id=marker_id, created_at="2026-01-10T10:00:00.000Z")


def records(markers: Iterable[Marker], photos: Iterable[Photo] = ()) -> RecordSet:
    return RecordSet(markers=tuple(markers), photos=tuple(photos))


def with_photos(mid: str, x: float, y: float, filenames: List[str], label: str = "") -> tuple:
    """A marker plus one photo per filename, refs wired both ways."""
    photos = [ph(f"{mid}-p{i}", mid, name) for i, name in enumerate(filenames)]
    return mk(mid, x, y, label=label, refs=[p.id for p in photos]), photos


def deterministic_options(**kwargs: Any) -> MergeOptions:
    """MergeOptions with a counting id generator and a frozen clock."""
    counter = itertools.count(1)
    kwargs.setdefault("id_generator", lambda: f"new-{next(counter)}")
    kwargs.setdefault("clock", lambda: FIXED_NOW)
    return MergeOptions(**kwargs)


def marker_doc(
    mid: str,
    x: float,
    y: float,
    description: str = "",
    created: str = "2026-01-10T10:00:00.000Z",
    photo_ids: Optional[List[str]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    d: Dict[str, Any] = {"id": mid, "x": x, "y": y, "description": description, "createdDate": created}
    if photo_ids is not None:
        d["photoIds"] = list(photo_ids)
    d.update(extra)
    return d


def photo_doc(pid: str, marker_id: str, file_name: str, created: str = "2026-01-10T10:00:00.000Z", **extra: Any) -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "id": pid,
        "markerId": marker_id,
        "imageData": JPEG_DATA_URI,
        "fileName": file_name,
        "fileType": "image/jpeg",
        "fileSize": 12,
        "createdDate": created,
    }
    d.update(extra)
    return d


def make_export(
    markers: Iterable[Dict[str, Any]] = (),
    photos: Iterable[Dict[str, Any]] = (),
    name: str = "Test Map",
    width: int = 1000,
    height: int = 800,
    map_id: str = "map-1",
) -> Dict[str, Any]:
    return {
        "version": "1.1",
        "type": "SnapSpotDataExport",
        "sourceApp": "SnapSpot",
        "timestamp": "2026-02-01T09:00:00.000Z",
        "map": {
            "id": map_id,
            "name": name,
            "imageData": PNG_DATA_URI,
            "width": width,
            "height": height,
            "imageHash": "abc123",
            "createdDate": "2026-01-01T00:00:00.000Z",
            "lastModified": "2026-01-02T00:00:00.000Z",
        },
        "markers": list(markers),
        "photos": list(photos),
    }
