"""
Resolve overlay entries against the current model.

Each entry lands in exactly one bucket:

- attached:  exactly one model target of the entry's kind matched
- orphan:    nothing matched
- ambiguous: two or more distinct targets of the entry's kind matched

Any single matching ref is enough to attach, but more than one distinct
target is never resolved by picking one.
"""

from dataclasses import dataclass, field
from typing import Iterable

from .external_ids import overlay_ref_keys
from .model_index import ModelIndex, build_index, resolve_targets_by_key
from .types import (
    ELEMENT,
    Model,
    ModelTargetRef,
    OverlayStoreEntry,
    TagValue,
)


@dataclass
class AttachedEntry:
    entry_id: str
    target: ModelTargetRef
    matched_keys: list[str]


@dataclass
class OrphanEntry:
    entry_id: str
    kind: str
    keys: list[str]


@dataclass
class AmbiguousEntry:
    entry_id: str
    kind: str
    candidates: list[ModelTargetRef]
    matched_keys: list[str]


@dataclass
class ResolveReport:
    attached: list[AttachedEntry] = field(default_factory=list)
    orphan: list[OrphanEntry] = field(default_factory=list)
    ambiguous: list[AmbiguousEntry] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return {
            "attached": len(self.attached),
            "orphan": len(self.orphan),
            "ambiguous": len(self.ambiguous),
        }

    @property
    def total(self) -> int:
        return len(self.attached) + len(self.orphan) + len(self.ambiguous)

    def to_dict(self) -> dict:
        return {
            "counts": self.counts,
            "attached": [
                {"entryId": a.entry_id, "target": a.target.to_dict(), "matchedKeys": a.matched_keys}
                for a in self.attached
            ],
            "orphan": [
                {"entryId": o.entry_id, "kind": o.kind, "keys": o.keys}
                for o in self.orphan
            ],
            "ambiguous": [
                {
                    "entryId": a.entry_id,
                    "kind": a.kind,
                    "candidates": [c.to_dict() for c in a.candidates],
                    "matchedKeys": a.matched_keys,
                }
                for a in self.ambiguous
            ],
        }


def _candidates(index: ModelIndex, keys: list[str], kind: str) -> tuple[list[ModelTargetRef], list[str]]:
    found: list[ModelTargetRef] = []
    matched: list[str] = []
    for k in keys:
        targets = resolve_targets_by_key(index, k, kind)
        if not targets:
            continue
        matched.append(k)
        for t in targets:
            if t not in found:
                found.append(t)
    return found, matched


def resolve_entry(entry: OverlayStoreEntry, index: ModelIndex) -> tuple[list[ModelTargetRef], list[str], list[str]]:
    """Candidate targets for one entry, with the keys tried and the keys that matched."""
    keys = overlay_ref_keys(entry.target.external_refs)
    found, matched = _candidates(index, keys, entry.target.kind)
    return found, keys, matched


def resolve(entries: Iterable[OverlayStoreEntry], index: ModelIndex) -> ResolveReport:
    report = ResolveReport()
    for entry in entries:
        found, keys, matched = resolve_entry(entry, index)
        if not found:
            report.orphan.append(OrphanEntry(entry.entry_id, entry.target.kind, keys))
        elif len(found) == 1:
            report.attached.append(AttachedEntry(entry.entry_id, found[0], matched))
        else:
            report.ambiguous.append(AmbiguousEntry(
                entry.entry_id, entry.target.kind, sorted(found), matched,
            ))
    return report


# ---------------------------------------------------------------------------
# Attachment index
# ---------------------------------------------------------------------------


def merge_tag_maps(entries: list[OverlayStoreEntry]) -> dict[str, TagValue]:
    """Merge tag maps in ascending entry-id order, later entries winning per key."""
    out: dict[str, TagValue] = {}
    for e in sorted(entries, key=lambda e: e.entry_id):
        out.update(e.tags)
    return out


@dataclass
class AttachedTarget:
    target_id: str
    entry_ids: list[str]
    merged_tags: dict[str, TagValue]


@dataclass
class AttachmentIndex:
    """Overlay tags by model id, for repeated lookups during analysis."""
    model_index: ModelIndex
    elements: dict[str, AttachedTarget]
    relationships: dict[str, AttachedTarget]
    orphan_entry_ids: list[str]

    def tags_for_element(self, element_id: str) -> dict[str, TagValue]:
        hit = self.elements.get(element_id)
        return dict(hit.merged_tags) if hit else {}

    def tags_for_relationship(self, relationship_id: str) -> dict[str, TagValue]:
        hit = self.relationships.get(relationship_id)
        return dict(hit.merged_tags) if hit else {}


def build_attachment_index(model: Model, store) -> AttachmentIndex:
    """
    Attach every store entry to each target it matches.

    Unlike ``resolve``, an entry matching several targets is attached to
    all of them; ambiguity is reported by the resolver, not here.
    """
    index = build_index(model)
    by_element: dict[str, list[OverlayStoreEntry]] = {}
    by_relationship: dict[str, list[OverlayStoreEntry]] = {}
    orphans: list[str] = []

    for entry in store.list_entries():
        found, _, _ = resolve_entry(entry, index)
        if not found:
            orphans.append(entry.entry_id)
            continue
        for t in found:
            bucket = by_element if t.kind == ELEMENT else by_relationship
            bucket.setdefault(t.id, []).append(entry)

    def build(groups: dict[str, list[OverlayStoreEntry]]) -> dict[str, AttachedTarget]:
        out = {}
        for target_id, entries in groups.items():
            out[target_id] = AttachedTarget(
                target_id=target_id,
                entry_ids=sorted(e.entry_id for e in entries),
                merged_tags=merge_tag_maps(entries),
            )
        return out

    return AttachmentIndex(
        model_index=index,
        elements=build(by_element),
        relationships=build(by_relationship),
        orphan_entry_ids=sorted(orphans),
    )
