"""
Diagnostics over the model and overlay: external-id collisions and
required-tag coverage.
"""

from dataclasses import dataclass, field

from .effective_tags import get_effective_tags
from .model_index import ModelIndex
from .types import ELEMENT, RELATIONSHIP, Model, normalize_tag_key


@dataclass
class Collision:
    """Several same-kind model targets sharing one external key."""
    kind: str
    external_key: str
    target_ids: list[str]


def find_model_collisions(index: ModelIndex) -> list[Collision]:
    out = []
    for key in sorted(index):
        for kind in (ELEMENT, RELATIONSHIP):
            ids = sorted(t.id for t in index[key] if t.kind == kind)
            if len(ids) > 1:
                out.append(Collision(kind, key, ids))
    return out


@dataclass
class TagCoverage:
    key: str
    elements: int = 0
    relationships: int = 0


@dataclass
class CoverageReport:
    total_elements: int = 0
    total_relationships: int = 0
    per_tag: list[TagCoverage] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_elements": self.total_elements,
            "total_relationships": self.total_relationships,
            "per_tag": [
                {"key": t.key, "elements": t.elements, "relationships": t.relationships}
                for t in self.per_tag
            ],
        }


def _has_tag(tagged_values, key: str) -> bool:
    for tv in tagged_values:
        if normalize_tag_key(tv.key) == key and str(tv.value or "").strip():
            return True
    return False


def compute_coverage(model: Model, store, required_keys) -> CoverageReport:
    """Count elements and relationships whose effective tags carry each required key."""
    keys = sorted({k for k in (normalize_tag_key(k0) for k0 in required_keys or []) if k})
    per_tag = {k: TagCoverage(k) for k in keys}

    for el in model.elements.values():
        effective = get_effective_tags(el, ELEMENT, store).effective_tagged_values
        for k in keys:
            if _has_tag(effective, k):
                per_tag[k].elements += 1
    for rel in model.relationships.values():
        effective = get_effective_tags(rel, RELATIONSHIP, store).effective_tagged_values
        for k in keys:
            if _has_tag(effective, k):
                per_tag[k].relationships += 1

    return CoverageReport(
        total_elements=len(model.elements),
        total_relationships=len(model.relationships),
        per_tag=[per_tag[k] for k in keys],
    )
