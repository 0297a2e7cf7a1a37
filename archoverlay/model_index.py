"""
External-id index over the primary model.

Maps each canonical external key to every model target carrying it. The
mapping is 1:N: two targets sharing a key are reported as ambiguous
rather than picked between.
"""

from typing import Optional

from .external_ids import dedupe_external_ids, external_key
from .types import ELEMENT, RELATIONSHIP, ExternalIdRef, Model, ModelTargetRef

ModelIndex = dict[str, list[ModelTargetRef]]


def get_external_refs(obj) -> list[ExternalIdRef]:
    """Normalized, deduplicated external refs of an element or relationship."""
    if obj is None:
        return []
    return dedupe_external_ids(getattr(obj, "external_ids", None))


def _add_target(index: ModelIndex, key: str, target: ModelTargetRef) -> None:
    bucket = index.setdefault(key, [])
    if target not in bucket:
        bucket.append(target)


def build_index(model: Model) -> ModelIndex:
    """
    Build the external key -> targets index in a single pass.

    Elements are visited before relationships, each in sorted id order, so
    bucket order is deterministic. A target citing the same key twice
    appears once in that key's bucket.
    """
    index: ModelIndex = {}
    for id in sorted(model.elements):
        for ref in get_external_refs(model.elements[id]):
            _add_target(index, external_key(ref), ModelTargetRef(ELEMENT, id))
    for id in sorted(model.relationships):
        for ref in get_external_refs(model.relationships[id]):
            _add_target(index, external_key(ref), ModelTargetRef(RELATIONSHIP, id))
    return index


def resolve_targets_by_key(index: ModelIndex, key: str, kind: Optional[str] = None) -> list[ModelTargetRef]:
    targets = index.get(key, [])
    if kind is None:
        return list(targets)
    return [t for t in targets if t.kind == kind]


def get_unique_external_refs(model: Model, index: ModelIndex, target: ModelTargetRef) -> list[ExternalIdRef]:
    """Refs of ``target`` whose key maps to that target alone (within its kind)."""
    out = []
    for ref in get_external_refs(model.get_object(target)):
        candidates = resolve_targets_by_key(index, external_key(ref), target.kind)
        if len(candidates) == 1 and candidates[0] == target:
            out.append(ref)
    return out
