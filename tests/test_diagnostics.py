"""Tests for model collision and tag coverage diagnostics."""

from archoverlay.diagnostics import Collision, compute_coverage, find_model_collisions
from archoverlay.model_index import build_index
from archoverlay.types import ELEMENT, RELATIONSHIP

from tests.conftest import ext, make_element, make_model, make_relationship, ref


class TestCollisions:

    def test_shared_key_reported(self, model):
        assert find_model_collisions(build_index(model)) == [
            Collision(ELEMENT, "x||shared", ["e1", "e2"]),
        ]

    def test_cross_kind_sharing_is_not_a_collision(self):
        m = make_model(
            elements=[make_element("a", ext("k", "1"))],
            relationships=[make_relationship("r", ext("k", "1"))],
        )
        assert find_model_collisions(build_index(m)) == []

    def test_relationship_collisions(self):
        m = make_model(relationships=[make_relationship("r1", ext("k", "1")), make_relationship("r2", ext("k", "1"))])
        assert find_model_collisions(build_index(m)) == [Collision(RELATIONSHIP, "k||1", ["r1", "r2"])]


class TestCoverage:

    def test_core_and_overlay_both_count(self, model, store):
        store.upsert_entry(ELEMENT, [ref("x", "shared")], tags={"owner": "team"})
        store.upsert_entry(RELATIONSHIP, [ref("y", "r1")], tags={"zone": "internal"})
        report = compute_coverage(model, store, ["owner", " zone ", ""])

        assert report.total_elements == 3
        assert report.total_relationships == 1
        by_key = {t.key: t for t in report.per_tag}
        assert sorted(by_key) == ["owner", "zone"]
        # e1 has a core owner; e1 and e2 both get the overlay owner
        assert by_key["owner"].elements == 2
        assert by_key["zone"].relationships == 1
        assert by_key["zone"].elements == 0

    def test_blank_values_do_not_count(self, store):
        m = make_model(elements=[make_element("a", ext("k", "1"), tags={"owner": "  "})])
        report = compute_coverage(m, store, ["owner"])
        assert report.per_tag[0].elements == 0

    def test_to_dict(self, model, store):
        d = compute_coverage(model, store, ["owner"]).to_dict()
        assert d == {
            "total_elements": 3,
            "total_relationships": 1,
            "per_tag": [{"key": "owner", "elements": 1, "relationships": 0}],
        }
