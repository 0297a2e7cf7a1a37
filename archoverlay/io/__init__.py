"""Overlay file codecs: JSON, CSV-long and survey (wide) CSV."""

from .csv_long import import_csv_long, parse_csv_long, serialize_store_to_csv_long
from .json_overlay import (
    OVERLAY_FILE_FORMAT_V1,
    ImportResult,
    import_overlay_file,
    import_overlay_json,
    parse_overlay_json,
    serialize_store_to_file,
    serialize_store_to_json,
)
from .survey_csv import SurveyExportOptions, import_survey_csv, serialize_survey_csv

__all__ = [
    "OVERLAY_FILE_FORMAT_V1",
    "ImportResult",
    "SurveyExportOptions",
    "import_csv_long",
    "import_overlay_file",
    "import_overlay_json",
    "import_survey_csv",
    "parse_csv_long",
    "parse_overlay_json",
    "serialize_store_to_csv_long",
    "serialize_store_to_file",
    "serialize_store_to_json",
    "serialize_survey_csv",
]
