"""
Architecture Model Overlay

A secondary metadata layer that attaches key/value tags to elements and
relationships of an architecture model without touching the model itself.
Entries bind to model objects through external ids, not internal ids, so
they survive re-imports that renumber the model.

Quick Start:
    from archoverlay import ExternalRef, OverlayStore, build_index, resolve

    store = OverlayStore()
    store.upsert_entry("element", [ExternalRef("archimate-exchange", "id-1")],
                       tags={"owner": "team-a"})
    report = resolve(store.list_entries(), build_index(model))

CLI Usage:
    archoverlay resolve --model model.json
    archoverlay export --model model.json --format csv-long -o overlay.csv
    archoverlay import overlay.json --model model.json --strategy merge

Default Store:
    ~/.archoverlay/ (SQLite key/value file plus archoverlay.toml).
    Override with ARCHOVERLAY_STORE_PATH or --store.
"""

from .effective_tags import EffectiveTagsResult, get_effective_tags
from .model_index import ModelIndex, build_index
from .resolve import ResolveReport, build_attachment_index, resolve
from .signature import compute_signature
from .store import OverlayStore
from .types import (
    ELEMENT,
    RELATIONSHIP,
    Element,
    ExternalIdRef,
    ExternalRef,
    Model,
    ModelTargetRef,
    OverlayStoreEntry,
    OverlayTarget,
    Relationship,
    TaggedValue,
)

__version__ = "0.1.0"
__all__ = [
    "ELEMENT",
    "RELATIONSHIP",
    "EffectiveTagsResult",
    "Element",
    "ExternalIdRef",
    "ExternalRef",
    "Model",
    "ModelIndex",
    "ModelTargetRef",
    "OverlayStore",
    "OverlayStoreEntry",
    "OverlayTarget",
    "Relationship",
    "ResolveReport",
    "TaggedValue",
    "build_attachment_index",
    "build_index",
    "compute_signature",
    "get_effective_tags",
    "resolve",
]
