"""Tests for rebinding overlay entries to a chosen model target."""

from archoverlay.model_index import build_index
from archoverlay.rebind import (
    ENTRY_NOT_FOUND,
    TARGET_HAS_NO_EXTERNAL_IDS,
    TARGET_NOT_FOUND,
    rebind_entry,
)
from archoverlay.resolve import resolve
from archoverlay.types import ELEMENT, RELATIONSHIP, ExternalRef, ModelTargetRef

from tests.conftest import ref


class TestRebind:

    def test_prefers_unique_refs(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x", "shared")], entry_id="amb", tags={"k": "v"})
        result = rebind_entry(store, model, "amb", ModelTargetRef(ELEMENT, "e1"))

        assert result.ok
        assert result.used_unique_refs
        assert result.used_refs == [ExternalRef("x@s", "1")]
        entry = store.get_entry("amb")
        assert entry.target.external_refs == [ExternalRef("x@s", "1")]
        assert entry.tags == {"k": "v"}

        report = resolve(store.list_entries(), build_index(model))
        assert report.attached[0].target == ModelTargetRef(ELEMENT, "e1")

    def test_falls_back_to_all_refs(self, model, store):
        store.upsert_entry(ELEMENT, [ref("gone", "1")], entry_id="o")
        result = rebind_entry(store, model, "o", ModelTargetRef(ELEMENT, "e2"))
        assert result.ok
        assert not result.used_unique_refs
        assert store.get_entry("o").target.external_refs == [ExternalRef("x", "shared")]

    def test_all_refs_when_not_preferring_unique(self, model, store):
        store.upsert_entry(ELEMENT, [ref("gone", "1")], entry_id="o")
        result = rebind_entry(store, model, "o", ModelTargetRef(ELEMENT, "e1"), prefer_unique_refs=False)
        assert [r.scheme for r in result.used_refs] == ["x@s", "x"]

    def test_append_keeps_existing_refs(self, model, store):
        store.upsert_entry(ELEMENT, [ref("legacy", "1")], entry_id="o")
        rebind_entry(store, model, "o", ModelTargetRef(ELEMENT, "e1"), replace_refs=False)
        assert store.get_entry("o").target.external_refs == [ExternalRef("legacy", "1"), ExternalRef("x@s", "1")]

    def test_kind_follows_target(self, model, store):
        store.upsert_entry(ELEMENT, [ref("gone", "1")], entry_id="o")
        rebind_entry(store, model, "o", ModelTargetRef(RELATIONSHIP, "r1"))
        assert store.get_entry("o").target.kind == RELATIONSHIP

    def test_entry_not_found(self, model, store):
        result = rebind_entry(store, model, "missing", ModelTargetRef(ELEMENT, "e1"))
        assert not result.ok
        assert result.error == ENTRY_NOT_FOUND

    def test_target_not_found(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x", "1")], entry_id="a")
        result = rebind_entry(store, model, "a", ModelTargetRef(ELEMENT, "nope"))
        assert result.error == TARGET_NOT_FOUND
        assert store.get_version() == 1

    def test_target_without_ids(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x", "1")], entry_id="a")
        result = rebind_entry(store, model, "a", ModelTargetRef(ELEMENT, "e3"))
        assert result.error == TARGET_HAS_NO_EXTERNAL_IDS
        assert store.get_entry("a").target.external_refs == [ExternalRef("x", "1")]
