"""Tests for the CSV-long overlay codec."""

from archoverlay.io.csv_long import (
    CSV_LONG_COLUMNS,
    SIGNATURE_MARKER,
    CsvLongRow,
    csv_long_rows_to_file,
    import_csv_long,
    parse_csv_long,
    serialize_store_to_csv_long,
)
from archoverlay.io.csv_utils import parse_csv
from archoverlay.signature import compute_signature
from archoverlay.store import OverlayStore
from archoverlay.types import ELEMENT, RELATIONSHIP, ExternalRef

from tests.conftest import ref

HEADER = ",".join(CSV_LONG_COLUMNS)


class TestSerialize:

    def test_one_row_per_tag_sorted(self, store):
        store.upsert_entry(ELEMENT, [ref("x@s", "1"), ref("y", "2")], entry_id="e", tags={"b": 2, "a": "text"})
        grid = parse_csv(serialize_store_to_csv_long(store))
        assert grid[0] == list(CSV_LONG_COLUMNS)
        assert [row[5] for row in grid[1:]] == ["a", "b"]
        a_row, b_row = grid[1], grid[2]
        assert a_row[:4] == ["element", "e", "x@s", "1"]
        assert a_row[6:] == ["text", '"text"']
        assert b_row[6:] == ["2", "2"]

    def test_entry_without_tags_keeps_a_row(self, store):
        store.upsert_entry(ELEMENT, [ref("x", "1")], entry_id="bare")
        grid = parse_csv(serialize_store_to_csv_long(store))
        assert len(grid) == 2
        assert grid[1][1] == "bare"
        assert grid[1][5:] == ["", "", ""]

    def test_signature_footer_with_model(self, model, store):
        grid = parse_csv(serialize_store_to_csv_long(store, model))
        assert grid[-1][0] == SIGNATURE_MARKER
        assert grid[-1][6] == compute_signature(model)

    def test_quotes_json_cells(self, store):
        store.upsert_entry(ELEMENT, [ref("x", "1")], entry_id="e", tags={"list": ["a", "b"]})
        text = serialize_store_to_csv_long(store)
        assert '"[""a"",""b""]"' in text


class TestParse:

    def test_missing_required_headers(self):
        rows, warnings = parse_csv_long("entry_id,tag_value\ne,v\n")
        assert rows == []
        assert "missing required headers" in warnings[0]

    def test_headers_case_insensitive_and_reordered(self):
        text = "TAG_KEY,Kind,Entry_Id,tag_value\nowner,element,e1,alice\n"
        rows, warnings = parse_csv_long(text)
        assert warnings == []
        assert rows == [CsvLongRow(kind="element", tag_key="owner", entry_id="e1", tag_value="alice")]

    def test_invalid_kind_warned(self):
        rows, warnings = parse_csv_long(f"{HEADER}\nnode,e,x,1,,k,v,\n")
        assert rows == []
        assert warnings == ["row 2: invalid kind 'node'"]

    def test_signature_row_skipped(self):
        rows, warnings = parse_csv_long(f"{HEADER}\n{SIGNATURE_MARKER},,,,,,ext-1,\n")
        assert rows == []
        assert warnings == []

    def test_empty(self):
        assert parse_csv_long("") == ([], ["empty csv"])


class TestRowsToFile:

    def test_group_by_entry_id(self, model):
        rows = [
            CsvLongRow(kind=ELEMENT, entry_id="e", primary_ref_scheme="x", primary_ref_value="1", tag_key="a", tag_value="1"),
            CsvLongRow(kind=ELEMENT, entry_id="e", primary_ref_scheme="x", primary_ref_value="1", tag_key="b", tag_value_json="true"),
        ]
        file, warnings = csv_long_rows_to_file(rows, model=model)
        assert warnings == []
        assert len(file["entries"]) == 1
        entry = file["entries"][0]
        assert entry["entryId"] == "e"
        assert entry["tags"] == {"a": "1", "b": True}
        assert file["modelHint"]["signature"] == compute_signature(model)

    def test_group_by_primary_ref_without_id(self):
        rows = [
            CsvLongRow(kind=ELEMENT, primary_ref_scheme="x", primary_ref_value="1", tag_key="a", tag_value="1"),
            CsvLongRow(kind=ELEMENT, primary_ref_scheme="x", primary_ref_value="1", tag_key="b", tag_value="2"),
            CsvLongRow(kind=RELATIONSHIP, primary_ref_scheme="x", primary_ref_value="1", tag_key="c", tag_value="3"),
        ]
        file, _ = csv_long_rows_to_file(rows)
        assert len(file["entries"]) == 2
        assert "entryId" not in file["entries"][0]

    def test_refs_json_wins_over_primary(self):
        rows = [CsvLongRow(
            kind=ELEMENT, entry_id="e", primary_ref_scheme="p", primary_ref_value="1",
            refs_json='[{"scheme":"a@s","value":"1"},{"scheme":"b","value":"2"}]', tag_key="",
        )]
        file, _ = csv_long_rows_to_file(rows)
        assert file["entries"][0]["target"]["externalRefs"] == [
            {"scheme": "a@s", "value": "1"},
            {"scheme": "b", "value": "2"},
        ]

    def test_bad_tag_json_falls_back_to_text(self):
        rows = [CsvLongRow(kind=ELEMENT, entry_id="e", primary_ref_scheme="x", primary_ref_value="1",
                           tag_key="k", tag_value="raw", tag_value_json="{broken")]
        file, _ = csv_long_rows_to_file(rows)
        assert file["entries"][0]["tags"] == {"k": "raw"}

    def test_row_without_identity_warned(self):
        file, warnings = csv_long_rows_to_file([CsvLongRow(kind=ELEMENT, tag_key="k", tag_value="v")])
        assert file["entries"] == []
        assert "missing entry_id" in warnings[0]

    def test_invalid_refs_json_and_no_refs_drops_entry(self):
        rows = [CsvLongRow(kind=ELEMENT, entry_id="e", refs_json="not json", tag_key="k", tag_value="v")]
        file, warnings = csv_long_rows_to_file(rows)
        assert file["entries"] == []
        assert warnings == ["row 2: invalid refs_json", "entry 'e' dropped: no refs"]

    def test_inconsistent_kind_warned(self):
        rows = [
            CsvLongRow(kind=ELEMENT, entry_id="e", primary_ref_scheme="x", primary_ref_value="1", tag_key="a"),
            CsvLongRow(kind=RELATIONSHIP, entry_id="e", primary_ref_scheme="x", primary_ref_value="1", tag_key="b"),
        ]
        _, warnings = csv_long_rows_to_file(rows)
        assert warnings == ["row 3: inconsistent kind for entry 'e'"]


class TestImport:

    def test_export_import_reproduces_tags(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x@s", "1")], entry_id="e1", tags={"n": 3, "s": "text", "l": [1]})
        store.upsert_entry(ELEMENT, [ref("nowhere", "1")], entry_id="bare")
        text = serialize_store_to_csv_long(store, model)

        fresh = OverlayStore()
        result = import_csv_long(fresh, model, text)
        assert result.stats.added == 2
        assert fresh.get_entry("e1").tags == {"n": 3, "s": "text", "l": [1]}
        assert fresh.get_entry("e1").target.external_refs == [ExternalRef("x@s", "1")]
        assert fresh.get_entry("bare").tags == {}
        assert result.report.counts == {"attached": 1, "orphan": 1, "ambiguous": 0}

    def test_merge_into_existing(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x@s", "1")], entry_id="existing", tags={"keep": "me"})
        text = f"{HEADER}\nelement,,x@s,1,,owner,alice,\n"
        result = import_csv_long(store, model, text)
        assert result.stats.updated == 1
        assert store.get_entry("existing").tags == {"keep": "me", "owner": "alice"}

    def test_semicolon_file_is_not_sniffed(self, model, store):
        text = HEADER.replace(",", ";") + "\nelement;e;x;1;;k;v;\n"
        result = import_csv_long(store, model, text)
        assert len(store) == 0
        assert "missing required headers" in result.warnings[0]
