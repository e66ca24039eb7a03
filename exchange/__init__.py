"""
JSON export interchange: the record-set provider for the migrator.

parser  -> ParsedExport (map metadata, RecordSet, metadata, warnings)
writer  -> v1.1 export documents from a RecordSet
splitter-> per-day subsets of a RecordSet
"""
from common.utils import new_id
from .parser import (
    MapInfo,
    ParsedExport,
    load_export,
    parse_document,
    parse_export,
    parse_export_metadata,
    validate_export,
)
from .writer import export_document, map_from_image, write_export
from .splitter import (
    DateRangeSummary,
    date_range_summary,
    filter_by_date_range,
    filter_by_dates,
    group_markers_by_day,
    split_by_dates,
)

__all__ = [
    "MapInfo",
    "ParsedExport",
    "load_export",
    "parse_document",
    "parse_export",
    "parse_export_metadata",
    "validate_export",
    "export_document",
    "map_from_image",
    "write_export",
    "new_id",
    "DateRangeSummary",
    "date_range_summary",
    "filter_by_date_range",
    "filter_by_dates",
    "group_markers_by_day",
    "split_by_dates",
]
