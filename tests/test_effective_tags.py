"""
Tests for effective tags.

Overlay keys win over core tagged values with the same key; core values
for other keys pass through untouched.
"""

import pytest

from archoverlay.effective_tags import (
    OVERLAY_TAG_NS,
    get_effective_tags,
    get_effective_tags_for_element,
    get_effective_tags_for_relationship,
    merge_tagged_values_with_overlay,
    overlay_tag_id,
    overlay_tags_to_tagged_values,
    stringify_tag_value,
    tagged_values_to_overlay_tags,
)
from archoverlay.types import ELEMENT, RELATIONSHIP, TaggedValue

from tests.conftest import ext, make_element, ref


class TestPrecedence:

    def test_overlay_overrides_core_key(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x@s", "1")], entry_id="a", tags={"owner": "overlay-team", "tier": 1})
        result = get_effective_tags_for_element(model, model.elements["e1"], store)

        by_key = {tv.key: tv for tv in result.effective_tagged_values}
        assert by_key["owner"].value == "overlay-team"
        assert by_key["owner"].ns == OVERLAY_TAG_NS
        assert by_key["tier"].value == "1"
        assert by_key["tier"].type == "number"
        assert result.overridden_core_keys == ["owner"]
        assert result.overlay_match.kind == "single"
        assert result.overlay_match.entry_id == "a"

    def test_core_passes_through_without_overlay(self, model, store):
        result = get_effective_tags(model.elements["e1"], ELEMENT, store)
        assert [(tv.key, tv.value) for tv in result.effective_tagged_values] == [("owner", "core-team")]
        assert result.overlay_match.kind == "none"
        assert result.overlay_match.entry_id is None
        assert result.overridden_core_keys == []

    def test_core_keys_matched_after_trim(self, store):
        el = make_element("a", ext("k", "1"))
        el.tagged_values = [TaggedValue(key=" owner ", value="core"), TaggedValue(key="other", value="x")]
        store.upsert_entry(ELEMENT, [ref("k", "1")], tags={"owner": "ovl"})
        result = get_effective_tags(el, ELEMENT, store)
        assert [tv.key for tv in result.effective_tagged_values] == ["other", "owner"]
        assert result.overridden_core_keys == ["owner"]

    def test_multiple_entries_later_id_wins(self, store):
        el = make_element("a", ext("k", "1"), ext("k", "2"))
        store.upsert_entry(ELEMENT, [ref("k", "1")], entry_id="ovl_a", tags={"t": "a", "x": 1})
        store.upsert_entry(ELEMENT, [ref("k", "2")], entry_id="ovl_b", tags={"t": "b"})
        result = get_effective_tags(el, ELEMENT, store)
        assert result.overlay_tags == {"t": "b", "x": 1}
        assert result.overlay_match.kind == "multiple"
        assert result.overlay_match.entry_ids == ["ovl_a", "ovl_b"]

    def test_entries_of_other_kind_ignored(self, model, store):
        store.upsert_entry(RELATIONSHIP, [ref("x@s", "1")], tags={"owner": "rel"})
        result = get_effective_tags(model.elements["e1"], ELEMENT, store)
        assert result.overlay_match.kind == "none"

    def test_relationship(self, model, store):
        store.upsert_entry(RELATIONSHIP, [ref("y", "r1")], tags={"protocol": "https"})
        result = get_effective_tags_for_relationship(model, model.relationships["r1"], store)
        assert result.overlay_tags == {"protocol": "https"}


class TestConversion:

    @pytest.mark.parametrize("value, expected", [
        ("text", ("string", "text")),
        (True, ("boolean", "true")),
        (False, ("boolean", "false")),
        (3, ("number", "3")),
        (2.5, ("number", "2.5")),
        (None, ("json", "null")),
        ([1, "a"], ("json", '[1,"a"]')),
        ({"k": 1}, ("json", '{"k":1}')),
    ])
    def test_stringify(self, value, expected):
        assert stringify_tag_value(value) == expected

    def test_overlay_tagged_values_sorted_with_stable_ids(self):
        tvs = overlay_tags_to_tagged_values({"b": 1, " a ": "x", "": "dropped"})
        assert [tv.key for tv in tvs] == ["a", "b"]
        assert tvs[0].id == overlay_tag_id("a")
        assert tvs[0].id.startswith("ovl_tag_")
        assert all(tv.ns == OVERLAY_TAG_NS for tv in tvs)

    def test_tagged_values_back_to_tags(self):
        tags = tagged_values_to_overlay_tags([
            TaggedValue("n", "42", "number"),
            TaggedValue("f", "1.5", "number"),
            TaggedValue("bad", "abc", "number"),
            TaggedValue("b", "TRUE", "boolean"),
            TaggedValue("maybe", "yes", "boolean"),
            TaggedValue("j", '{"a": [1]}', "json"),
            TaggedValue("broken", "{nope", "json"),
            TaggedValue("empty", "  ", "json"),
            TaggedValue("s", "plain"),
            TaggedValue("  ", "dropped"),
        ])
        assert tags == {
            "n": 42,
            "f": 1.5,
            "bad": "abc",
            "b": True,
            "maybe": "yes",
            "j": {"a": [1]},
            "broken": "{nope",
            "empty": "",
            "s": "plain",
        }

    def test_last_duplicate_key_wins(self):
        tags = tagged_values_to_overlay_tags([TaggedValue("k", "1"), TaggedValue(" k", "2")])
        assert tags == {"k": "2"}

    def test_non_finite_number_kept_as_text(self):
        assert tagged_values_to_overlay_tags([TaggedValue("n", "inf", "number")]) == {"n": "inf"}

    def test_merge_returns_overridden_keys(self):
        core = [TaggedValue("a", "1"), TaggedValue("b", "2"), TaggedValue("a", "3")]
        effective, overridden = merge_tagged_values_with_overlay(core, {"a": "ovl"})
        assert [(tv.key, tv.value) for tv in effective] == [("b", "2"), ("a", "ovl")]
        assert overridden == ["a"]
