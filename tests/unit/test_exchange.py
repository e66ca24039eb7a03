"""
Unit tests for the JSON export reader / writer
"""

import base64
import copy
import json
import pytest
import os
import sys

from PIL import Image

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import ExportFormatError
from common.utils import sha256_bytes
from exchange.parser import (
    decode_data_uri,
    load_export,
    parse_document,
    parse_export,
    parse_export_metadata,
    validate_export,
)
from exchange.writer import export_document, map_from_image, write_export
from tests.helpers import JPEG_DATA_URI, make_export, marker_doc, photo_doc


def _doc():
    return make_export(
        markers=[
            marker_doc("m1", 100, 200, "Front door", photo_ids=["p1", "p2"], color="red"),
            marker_doc("m2", 300.5, 400, "", label="Gate"),
        ],
        photos=[
            photo_doc("p1", "m1", "IMG_1.jpg", caption="left"),
            photo_doc("p2", "m1", "IMG_2.jpg"),
        ],
    )


class TestParse:
    """Reading valid documents"""

    def test_records(self):
        """Markers and photos come through with snake_case fields"""
        parsed = parse_document(_doc())
        m1, m2 = parsed.records.markers
        assert (m1.id, m1.x, m1.y) == ("m1", 100.0, 200.0)
        assert m1.photo_refs == ("p1", "p2")
        assert m1.label == "Front door"
        assert m2.label == "Gate"
        assert [p.filename for p in parsed.records.photos] == ["IMG_1.jpg", "IMG_2.jpg"]
        assert parsed.records.is_consistent
        assert parsed.warnings == []

    def test_map_meta(self):
        """Map fields and header metadata"""
        parsed = parse_document(_doc())
        assert parsed.map_meta.name == "Test Map"
        assert parsed.map_meta.width == 1000.0
        assert parsed.metadata["version"] == "1.1"
        assert parsed.metadata["sourceApp"] == "SnapSpot"

    def test_content_hash_from_payload(self):
        """Photo hash is the sha256 of the decoded image bytes"""
        parsed = parse_document(_doc())
        raw = base64.b64decode(JPEG_DATA_URI.split(",", 1)[1])
        assert parsed.records.photos[0].content_hash == sha256_bytes(raw)

    def test_refs_rebuilt_without_photo_ids(self):
        """Older documents without photoIds use the photos' markerId"""
        doc = _doc()
        del doc["markers"][0]["photoIds"]
        parsed = parse_document(doc)
        assert parsed.records.markers[0].photo_refs == ("p1", "p2")

    def test_snapspot_export_type(self):
        """Both export type spellings are accepted"""
        doc = _doc()
        doc["type"] = "snapspot-export"
        assert parse_document(doc).records.markers

    def test_parse_text_and_file(self, tmp_path):
        """String and file entry points"""
        text = json.dumps(_doc())
        assert len(parse_export(text).records.markers) == 2
        p = tmp_path / "export.json"
        p.write_text(text)
        assert len(load_export(p).records.photos) == 2


class TestValidation:
    """Schema problems and warnings"""

    def test_all_problems_reported(self):
        """Every missing field is listed, not just the first"""
        doc = _doc()
        del doc["map"]["width"]
        del doc["markers"][1]["x"]
        doc["photos"][0]["fileName"] = None
        with pytest.raises(ExportFormatError) as ei:
            parse_document(doc)
        problems = ei.value.problems
        assert len(problems) == 3
        assert any("map missing required field: width" in p for p in problems)
        assert any("markers[1] missing required field: x" in p for p in problems)
        assert any("cannot be null" in p for p in problems)

    def test_bad_version_and_type(self):
        """Unsupported version / type"""
        doc = _doc()
        doc["version"] = "2.0"
        doc["type"] = "Other"
        problems = validate_export(doc)
        assert any("Unsupported export version" in p for p in problems)
        assert any("Invalid export type" in p for p in problems)

    def test_non_numeric_coordinates(self):
        """Marker coordinates must be numbers"""
        doc = _doc()
        doc["markers"][0]["x"] = "100"
        assert validate_export(doc) == ["markers[0].x must be a finite number"]

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_coordinates(self, literal):
        """NaN / Infinity in the JSON are schema problems, not crashes"""
        text = json.dumps(_doc()).replace('"x": 100', f'"x": {literal}', 1)
        with pytest.raises(ExportFormatError) as ei:
            parse_export(text)
        assert ei.value.problems == ["markers[0].x must be a finite number"]

    def test_non_finite_map_size(self):
        """Map dimensions must be finite too"""
        doc = _doc()
        doc["map"]["width"] = float("inf")
        assert validate_export(doc) == ["map.width must be a positive number"]

    def test_invalid_json(self):
        """Malformed JSON is an export error"""
        with pytest.raises(ExportFormatError):
            parse_export("{not json")

    def test_error_is_value_error(self):
        """Export errors are also ValueErrors"""
        with pytest.raises(ValueError):
            parse_document({})

    def test_out_of_bounds_warning(self):
        """Markers outside the image only warn"""
        doc = _doc()
        doc["markers"][1]["x"] = 2000
        parsed = parse_document(doc)
        assert [w["type"] for w in parsed.warnings] == ["out-of-bounds-markers"]
        assert parsed.warnings[0]["markers"][0]["id"] == "m2"

    def test_dangling_reference_warning(self):
        """Unresolvable photo refs only warn"""
        doc = _doc()
        doc["markers"][1]["photoIds"] = ["missing"]
        parsed = parse_document(doc)
        assert [w["type"] for w in parsed.warnings] == ["dangling-photo-references"]

    def test_metadata_preview(self):
        """Preview works on documents that would not validate"""
        doc = _doc()
        del doc["map"]["imageData"]
        meta = parse_export_metadata(json.dumps(doc))
        assert meta["map_name"] == "Test Map"
        assert meta["marker_count"] == 2
        assert meta["photo_count"] == 2

    def test_decode_data_uri(self):
        """Base64 payload is decoded"""
        assert decode_data_uri("data:text/plain;base64,aGVsbG8=") == b"hello"
        with pytest.raises(ValueError):
            decode_data_uri("hello")


class TestWrite:
    """Rebuilding documents"""

    def test_round_trip(self):
        """Export -> parse -> export keeps records and pass-through fields"""
        parsed = parse_document(_doc())
        doc = export_document(parsed.map_meta, parsed.records, clock=lambda: "2026-03-01T00:00:00.000Z")
        assert validate_export(doc) == []
        again = parse_document(copy.deepcopy(doc))
        assert again.records == parsed.records
        assert doc["markers"][0]["color"] == "red"
        assert doc["photos"][0]["caption"] == "left"
        assert doc["photos"][0]["imageData"] == JPEG_DATA_URI
        assert doc["map"]["imageData"] == parsed.map_meta.extra["imageData"]
        assert doc["timestamp"] == "2026-03-01T00:00:00.000Z"

    def test_hash_fields_survive_round_trip(self):
        """Photo and map 'hash' keys are written back unchanged"""
        doc = _doc()
        doc["photos"][0]["hash"] = "feedbeef"
        doc["map"]["hash"] = "cafe01"
        parsed = parse_document(doc)
        assert parsed.records.photos[0].content_hash == "feedbeef"
        out = export_document(parsed.map_meta, parsed.records)
        assert out["photos"][0]["hash"] == "feedbeef"
        assert "hash" not in out["photos"][1]
        assert out["map"]["hash"] == "cafe01"
        assert parse_document(out).records.photos[0].content_hash == "feedbeef"

    def test_whole_pixels_written_as_ints(self):
        """Integral coordinates serialize as integers"""
        parsed = parse_document(_doc())
        doc = export_document(parsed.map_meta, parsed.records)
        assert doc["markers"][0]["x"] == 100 and isinstance(doc["markers"][0]["x"], int)
        assert doc["markers"][1]["x"] == 300.5

    def test_write_export(self, tmp_path):
        """Written file is valid JSON and loads back"""
        parsed = parse_document(_doc())
        path = write_export(tmp_path / "sub" / "out.json", export_document(parsed.map_meta, parsed.records))
        assert path.exists()
        assert len(load_export(path).records.markers) == 2

    def test_map_from_image(self, tmp_path):
        """Image size and data URI via Pillow"""
        p = tmp_path / "floor.png"
        Image.new("RGB", (40, 30), (255, 0, 0)).save(p)
        info = map_from_image(p)
        assert (info.width, info.height) == (40.0, 30.0)
        assert info.name == "floor"
        assert info.extra["imageData"].startswith("data:image/png;base64,")
        assert info.image_hash == sha256_bytes(p.read_bytes())
