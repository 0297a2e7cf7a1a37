"""
Data types for the overlay layer.

Two families of types live here:

- Overlay records (``ExternalRef``, ``OverlayTarget``, ``OverlayStoreEntry``)
  which are owned by the overlay store and serialized to files and storage.
- Primary-model collaborators (``Element``, ``Relationship``, ``Model``)
  which the overlay layer only ever reads.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


ELEMENT = "element"
RELATIONSHIP = "relationship"
TARGET_KINDS = (ELEMENT, RELATIONSHIP)

# JSON-serializable scalar, list or dict. The store never interprets it.
TagValue = Any


def utc_now() -> str:
    """Current UTC timestamp in ISO 8601 format with a ``Z`` suffix."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def new_entry_id() -> str:
    """Allocate a fresh overlay entry id."""
    return f"ovl_{uuid.uuid4().hex[:16]}"


def normalize_tag_key(key: Any) -> str:
    """Trim a tag key. Returns empty string for None/blank keys."""
    if key is None:
        return ""
    return str(key).strip()


def is_target_kind(kind: Any) -> bool:
    return kind in TARGET_KINDS


# ---------------------------------------------------------------------------
# Overlay records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExternalRef:
    """Overlay-side external reference. ``scheme`` packs ``system[@scope]``."""
    scheme: str
    value: str

    def to_dict(self) -> dict:
        return {"scheme": self.scheme, "value": self.value}


@dataclass
class OverlayTarget:
    """What an overlay entry points at: a kind plus a set of external refs."""
    kind: str
    external_refs: list[ExternalRef] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "externalRefs": [r.to_dict() for r in self.external_refs],
        }


@dataclass
class OverlayStoreEntry:
    """
    One overlay record: a target description plus a tag map.

    Entries held by an ``OverlayStore`` are replaced on every mutation,
    so callers should treat instances returned by the store as read-only.
    """
    entry_id: str
    target: OverlayTarget
    tags: dict[str, TagValue] = field(default_factory=dict)
    meta: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        d: dict = {
            "entryId": self.entry_id,
            "target": self.target.to_dict(),
            "tags": dict(self.tags),
        }
        if self.meta is not None:
            d["meta"] = dict(self.meta)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "OverlayStoreEntry":
        """Build an entry from its JSON form (``entryId``/``target``/``tags``/``meta``).

        Malformed refs are skipped, and a non-list ``externalRefs`` or
        non-dict ``tags`` reads as empty; no further validation is done here.
        """
        target = data.get("target")
        if not isinstance(target, dict):
            target = {}
        raw_refs = target.get("externalRefs")
        refs = []
        for r in raw_refs if isinstance(raw_refs, list) else []:
            if isinstance(r, dict) and isinstance(r.get("scheme"), str) and isinstance(r.get("value"), str):
                refs.append(ExternalRef(r["scheme"], r["value"]))
        tags = data.get("tags")
        meta = data.get("meta")
        return cls(
            entry_id=str(data.get("entryId") or ""),
            target=OverlayTarget(kind=str(target.get("kind") or ""), external_refs=refs),
            tags=dict(tags) if isinstance(tags, dict) else {},
            meta=dict(meta) if isinstance(meta, dict) else None,
        )


@dataclass(frozen=True, order=True)
class ModelTargetRef:
    """A target inside the currently loaded model. Never persisted."""
    kind: str
    id: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.id}


# ---------------------------------------------------------------------------
# Primary model collaborators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExternalIdRef:
    """Model-side external id: a (system, scope, id) triple."""
    system: str
    id: str
    scope: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"system": self.system, "id": self.id}
        if self.scope:
            d["scope"] = self.scope
        return d


@dataclass
class TaggedValue:
    """A core tagged value as stored on a model object."""
    key: str
    value: str = ""
    type: Optional[str] = "string"
    ns: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"key": self.key, "value": self.value}
        if self.type:
            d["type"] = self.type
        if self.ns:
            d["ns"] = self.ns
        if self.id:
            d["id"] = self.id
        return d


@dataclass
class Element:
    id: str
    type: str = ""
    name: str = ""
    external_ids: list[ExternalIdRef] = field(default_factory=list)
    tagged_values: list[TaggedValue] = field(default_factory=list)


@dataclass
class Relationship:
    id: str
    type: str = ""
    name: str = ""
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    external_ids: list[ExternalIdRef] = field(default_factory=list)
    tagged_values: list[TaggedValue] = field(default_factory=list)


@dataclass
class Model:
    """Read-only view of the primary model as consumed by the overlay layer."""
    elements: dict[str, Element] = field(default_factory=dict)
    relationships: dict[str, Relationship] = field(default_factory=dict)
    name: str = ""

    def get_object(self, target: ModelTargetRef):
        """Look up the element or relationship a target refers to."""
        if target.kind == ELEMENT:
            return self.elements.get(target.id)
        if target.kind == RELATIONSHIP:
            return self.relationships.get(target.id)
        return None


def _pick(d: dict, *names: str, default=None):
    for n in names:
        if n in d and d[n] is not None:
            return d[n]
    return default


def _external_ids_from(raw) -> list[ExternalIdRef]:
    out = []
    for r in raw or []:
        if not isinstance(r, dict):
            continue
        scope = r.get("scope")
        out.append(ExternalIdRef(
            system=str(r.get("system") or ""),
            id=str(r.get("id") or ""),
            scope=str(scope) if scope is not None else None,
        ))
    return out


def _tagged_values_from(raw) -> list[TaggedValue]:
    out = []
    for t in raw or []:
        if not isinstance(t, dict):
            continue
        out.append(TaggedValue(
            key=str(t.get("key") or ""),
            value="" if t.get("value") is None else str(t.get("value")),
            type=t.get("type") or "string",
            ns=t.get("ns"),
            id=t.get("id"),
        ))
    return out


def _objects(raw) -> list[dict]:
    if isinstance(raw, dict):
        out = []
        for key, obj in raw.items():
            if isinstance(obj, dict):
                out.append({"id": key, **obj})
        return out
    if isinstance(raw, list):
        return [o for o in raw if isinstance(o, dict) and o.get("id")]
    return []


def model_from_dict(data: dict) -> Model:
    """
    Build a Model from a JSON document.

    Accepts ``elements``/``relationships`` either as id-keyed objects or
    as lists, with camelCase (``externalIds``, ``taggedValues``) or
    snake_case field names.
    """
    model = Model(name=str(_pick(data.get("metadata") or {}, "name", default="") or data.get("name") or ""))
    for e in _objects(data.get("elements")):
        el = Element(
            id=str(e["id"]),
            type=str(e.get("type") or ""),
            name=str(e.get("name") or ""),
            external_ids=_external_ids_from(_pick(e, "externalIds", "external_ids")),
            tagged_values=_tagged_values_from(_pick(e, "taggedValues", "tagged_values")),
        )
        model.elements[el.id] = el
    for r in _objects(data.get("relationships")):
        rel = Relationship(
            id=str(r["id"]),
            type=str(r.get("type") or ""),
            name=str(r.get("name") or ""),
            source_id=_pick(r, "sourceElementId", "source_id", "source"),
            target_id=_pick(r, "targetElementId", "target_id", "target"),
            external_ids=_external_ids_from(_pick(r, "externalIds", "external_ids")),
            tagged_values=_tagged_values_from(_pick(r, "taggedValues", "tagged_values")),
        )
        model.relationships[rel.id] = rel
    return model
