"""Tests for external reference normalization and canonical keys."""

from archoverlay.external_ids import (
    dedupe_external_ids,
    external_key,
    external_keys,
    normalize_external_id_ref,
    normalize_overlay_refs,
    overlay_ref_key,
    overlay_ref_keys,
    to_external_id_ref,
    to_overlay_ref,
)
from archoverlay.types import ExternalIdRef, ExternalRef


class TestExternalKey:

    def test_key_with_scope(self):
        assert external_key(ExternalIdRef("sys", "42", "scopeA")) == "sys|scopeA|42"

    def test_key_without_scope_has_empty_middle(self):
        assert external_key(ExternalIdRef("sys", "42")) == "sys||42"

    def test_key_trims_fields(self):
        assert external_key({"system": " sys ", "id": " 42 ", "scope": "  "}) == "sys||42"


class TestNormalize:

    def test_missing_system_or_id_is_invalid(self):
        assert normalize_external_id_ref({"system": "", "id": "1"}) is None
        assert normalize_external_id_ref({"system": "x", "id": "  "}) is None
        assert normalize_external_id_ref(None) is None

    def test_blank_scope_becomes_none(self):
        n = normalize_external_id_ref({"system": "x", "id": "1", "scope": " "})
        assert n == ExternalIdRef("x", "1", None)

    def test_dedupe_keeps_last_occurrence(self):
        refs = [
            ExternalIdRef("a", "1"),
            ExternalIdRef("b", "2"),
            ExternalIdRef(" a ", "1 "),
        ]
        out = dedupe_external_ids(refs)
        assert [external_key(r) for r in out] == ["b||2", "a||1"]

    def test_dedupe_drops_invalid(self):
        out = dedupe_external_ids([ExternalIdRef("", "1"), ExternalIdRef("a", "1")])
        assert out == [ExternalIdRef("a", "1")]

    def test_dedupe_is_idempotent(self):
        refs = [
            ExternalIdRef("a", "1", "s"),
            ExternalIdRef(" b ", "2"),
            ExternalIdRef("", "3"),
            ExternalIdRef("a", " 1 ", " s "),
            ExternalIdRef("c", "4", "  "),
            ExternalIdRef("b", "2"),
        ]
        once = dedupe_external_ids(refs)
        assert dedupe_external_ids(once) == once
        assert [external_key(r) for r in once] == ["a|s|1", "c||4", "b||2"]

    def test_normalize_overlay_refs_is_idempotent(self):
        refs = [
            ExternalRef("x@s", "1"),
            ExternalRef(" x @ s ", " 1 "),
            ExternalRef("y", "2"),
            ExternalRef("", "3"),
            ExternalRef("z@", "4"),
            ExternalRef("y", " "),
        ]
        once = normalize_overlay_refs(refs)
        assert normalize_overlay_refs(once) == once
        assert once == [ExternalRef("x@s", "1"), ExternalRef("y", "2"), ExternalRef("z", "4")]

    def test_external_keys_sorted(self):
        keys = external_keys([ExternalIdRef("z", "1"), ExternalIdRef("a", "9", "s")])
        assert keys == ["a|s|9", "z||1"]


class TestOverlayRefs:

    def test_scheme_with_scope_splits(self):
        r = to_external_id_ref(ExternalRef("sys@scopeA", "42"))
        assert r == ExternalIdRef("sys", "42", "scopeA")

    def test_scheme_without_scope(self):
        assert to_external_id_ref({"scheme": "sys", "value": "42"}) == ExternalIdRef("sys", "42", None)

    def test_to_overlay_ref_packs_scope(self):
        assert to_overlay_ref(ExternalIdRef("sys", "42", "s")) == ExternalRef("sys@s", "42")
        assert to_overlay_ref(ExternalIdRef("sys", "42")) == ExternalRef("sys", "42")

    def test_overlay_and_model_keys_agree(self):
        model_side = ExternalIdRef("sys", "42", "s")
        assert overlay_ref_key(to_overlay_ref(model_side)) == external_key(model_side)

    def test_invalid_overlay_ref_has_empty_key(self):
        assert overlay_ref_key(ExternalRef("", "42")) == ""
        assert overlay_ref_key(ExternalRef("@scope", "42")) == ""

    def test_normalize_overlay_refs_dedupes_and_trims(self):
        refs = [
            ExternalRef(" sys ", " 1 "),
            ExternalRef("sys", "1"),
            ExternalRef("", "x"),
            None,
            {"scheme": "other@s", "value": "2"},
        ]
        assert normalize_overlay_refs(refs) == [ExternalRef("sys", "1"), ExternalRef("other@s", "2")]

    def test_overlay_ref_keys_sorted_set(self):
        refs = [ExternalRef("b", "1"), ExternalRef("a@s", "2"), ExternalRef("b", "1")]
        assert overlay_ref_keys(refs) == ["a|s|2", "b||1"]
