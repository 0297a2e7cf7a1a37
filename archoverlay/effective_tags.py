"""
Effective tags: core tagged values combined with overlay tags.

Ownership policy: when a key is present in the overlay, the overlay wins
and every core tagged value with that key is dropped from the effective
list. Keys are matched after trimming; namespaces are ignored.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .external_ids import external_keys
from .resolve import merge_tag_maps
from .signature import fnv1a32
from .types import (
    ELEMENT,
    RELATIONSHIP,
    Element,
    Model,
    OverlayStoreEntry,
    Relationship,
    TaggedValue,
    TagValue,
    normalize_tag_key,
)

# Namespace marking tagged values that come from the overlay
OVERLAY_TAG_NS = "overlay"


@dataclass
class OverlayMatch:
    """Which overlay entries matched: ``none``, ``single`` or ``multiple``."""
    kind: str = "none"
    entry_ids: list[str] = field(default_factory=list)

    @property
    def entry_id(self) -> Optional[str]:
        return self.entry_ids[0] if self.kind == "single" else None


@dataclass
class EffectiveTagsResult:
    effective_tagged_values: list[TaggedValue]
    overlay_tags: dict[str, TagValue]
    overlay_match: OverlayMatch
    overridden_core_keys: list[str]


# ---------------------------------------------------------------------------
# Overlay tag <-> tagged value conversion
# ---------------------------------------------------------------------------


def stringify_tag_value(value: TagValue) -> tuple[str, str]:
    """Return ``(type, text)`` for an overlay tag value."""
    if value is None:
        return "json", "null"
    if isinstance(value, bool):
        return "boolean", "true" if value else "false"
    if isinstance(value, str):
        return "string", value
    if isinstance(value, (int, float)):
        return "number", json.dumps(value)
    return "json", json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def overlay_tag_id(key: str) -> str:
    return f"ovl_tag_{fnv1a32(key)}"


def overlay_tags_to_tagged_values(tags: Optional[dict[str, TagValue]]) -> list[TaggedValue]:
    """Synthesize one tagged value per overlay key, in the overlay namespace, sorted by key."""
    out = []
    for raw_key, value in (tags or {}).items():
        key = normalize_tag_key(raw_key)
        if not key:
            continue
        type_, text = stringify_tag_value(value)
        out.append(TaggedValue(key=key, value=text, type=type_, ns=OVERLAY_TAG_NS, id=overlay_tag_id(key)))
    out.sort(key=lambda tv: tv.key)
    return out


def _parse_number(raw: str):
    text = raw.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        n = float(text)
    except ValueError:
        return raw
    return n if math.isfinite(n) else raw


def tagged_values_to_overlay_tags(tagged_values: Optional[Iterable[TaggedValue]]) -> dict[str, TagValue]:
    """
    Convert edited tagged value rows back into an overlay tag map.

    Empty keys are dropped and the last duplicate key wins. Typed values
    that fail to parse are kept as their raw text.
    """
    out: dict[str, TagValue] = {}
    for tv in tagged_values or []:
        k = normalize_tag_key(tv.key)
        if not k:
            continue
        raw = "" if tv.value is None else str(tv.value)
        type_ = tv.type or "string"

        if type_ == "number":
            out[k] = _parse_number(raw)
        elif type_ == "boolean":
            s = raw.strip().lower()
            if s == "true":
                out[k] = True
            elif s == "false":
                out[k] = False
            else:
                out[k] = raw
        elif type_ == "json":
            trimmed = raw.strip()
            if not trimmed:
                out[k] = ""
                continue
            try:
                out[k] = json.loads(trimmed)
            except ValueError:
                out[k] = raw
        else:
            out[k] = raw
    return out


def merge_tagged_values_with_overlay(
    core: Optional[Iterable[TaggedValue]],
    overlay_tags: Optional[dict[str, TagValue]],
) -> tuple[list[TaggedValue], list[str]]:
    """Return ``(effective, overridden_core_keys)``."""
    overlay_list = overlay_tags_to_tagged_values(overlay_tags)
    overlay_keys = {tv.key for tv in overlay_list}

    overridden: set[str] = set()
    kept: list[TaggedValue] = []
    for tv in core or []:
        k = normalize_tag_key(tv.key)
        if k and k in overlay_keys:
            overridden.add(k)
            continue
        kept.append(tv)
    return kept + overlay_list, sorted(overridden)


# ---------------------------------------------------------------------------
# Effective tags per model object
# ---------------------------------------------------------------------------


def find_matching_entries(store, kind: str, keys: Iterable[str]) -> list[OverlayStoreEntry]:
    """Store entries of ``kind`` indexed under any of ``keys``, sorted by entry id."""
    ids: set[str] = set()
    for k in keys:
        ids.update(store.find_entry_ids_by_external_key(k))
    out = []
    for id in sorted(ids):
        entry = store.get_entry(id)
        if entry is not None and entry.target.kind == kind:
            out.append(entry)
    return out


def get_effective_tags(obj, kind: str, store) -> EffectiveTagsResult:
    keys = external_keys(getattr(obj, "external_ids", None))
    matches = find_matching_entries(store, kind, keys)
    overlay_tags = merge_tag_maps(matches)
    effective, overridden = merge_tagged_values_with_overlay(getattr(obj, "tagged_values", None), overlay_tags)

    if not matches:
        match = OverlayMatch("none")
    elif len(matches) == 1:
        match = OverlayMatch("single", [matches[0].entry_id])
    else:
        match = OverlayMatch("multiple", [m.entry_id for m in matches])

    return EffectiveTagsResult(
        effective_tagged_values=effective,
        overlay_tags=overlay_tags,
        overlay_match=match,
        overridden_core_keys=overridden,
    )


def get_effective_tags_for_element(model: Model, element: Element, store) -> EffectiveTagsResult:
    return get_effective_tags(element, ELEMENT, store)


def get_effective_tags_for_relationship(model: Model, relationship: Relationship, store) -> EffectiveTagsResult:
    return get_effective_tags(relationship, RELATIONSHIP, store)
