"""
JSON overlay files and the import strategies shared by every codec.

File format::

    {"format": "pwa-modeller-overlay@1", "schemaVersion": 1,
     "createdAt": "...", "modelHint": {"name": ..., "signature": ...},
     "entries": [{"entryId": ..., "target": {"kind": ...,
                  "externalRefs": [{"scheme": ..., "value": ...}]},
                  "tags": {...}, "meta": {...}}]}

Import strategies:
- ``merge`` (default): match imported entries to existing ones of the same
  kind by overlapping external keys. One match is updated in place (refs
  unioned, imported tag keys win); several matches are left alone and the
  imported entry is added as new, with a warning.
- ``replace``: clear the store first, then add every imported entry.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ..errors import OverlayParseError
from ..external_ids import normalize_overlay_refs, overlay_ref_keys
from ..model_index import ModelIndex, build_index
from ..persistence import OVERLAY_SCHEMA_VERSION
from ..resolve import ResolveReport, resolve
from ..signature import compute_signature
from ..store import OverlayStore
from ..types import Model, OverlayStoreEntry, is_target_kind, new_entry_id, utc_now

logger = logging.getLogger(__name__)

OVERLAY_FILE_FORMAT_V1 = "pwa-modeller-overlay@1"

IMPORT_STRATEGIES = ("merge", "replace")


@dataclass
class ImportStats:
    added: int = 0
    updated: int = 0
    replaced: int = 0
    dropped_invalid: int = 0
    conflicts_created_new: int = 0

    def to_dict(self) -> dict:
        return {
            "added": self.added,
            "updated": self.updated,
            "replaced": self.replaced,
            "dropped_invalid": self.dropped_invalid,
            "conflicts_created_new": self.conflicts_created_new,
        }


@dataclass
class ImportResult:
    file: dict
    warnings: list[dict] = field(default_factory=list)
    stats: ImportStats = field(default_factory=ImportStats)
    resolve_report: ResolveReport = field(default_factory=ResolveReport)


def warning_to_text(w: dict) -> str:
    """Human-readable form of an import warning."""
    if w["type"] == "signature-mismatch":
        return (
            f"signature mismatch (file={w.get('file_signature') or '?'}, "
            f"current={w.get('current_signature') or '?'})"
        )
    if w["type"] == "merge-conflict-multiple-existing":
        label = w.get("imported_entry_id") or f"#{w['imported_entry_index']}"
        return (
            f"merge conflict: imported entry {label} matched multiple existing entries "
            f"({', '.join(w['matched_entry_ids'])})"
        )
    return f"dropped invalid entry #{w['imported_entry_index']}: {w.get('reason', '')}"


# ---------------------------------------------------------------------------
# Serialize
# ---------------------------------------------------------------------------


def _entry_to_file(e: OverlayStoreEntry) -> dict:
    d = {
        "entryId": e.entry_id,
        "target": {
            "kind": e.target.kind,
            "externalRefs": [r.to_dict() for r in normalize_overlay_refs(e.target.external_refs)],
        },
        "tags": dict(e.tags),
    }
    if e.meta is not None:
        d["meta"] = dict(e.meta)
    return d


def serialize_store_to_file(
    store: OverlayStore,
    model: Optional[Model] = None,
    *,
    model_name: Optional[str] = None,
    created_at: Optional[str] = None,
) -> dict:
    """Build an overlay file dict from the store, entries sorted by id."""
    signature = compute_signature(model) if model is not None else None
    name = (model_name or "").strip() or (model.name if model is not None else "") or None

    data: dict[str, Any] = {
        "format": OVERLAY_FILE_FORMAT_V1,
        "schemaVersion": OVERLAY_SCHEMA_VERSION,
        "createdAt": created_at or utc_now(),
    }
    if name or signature:
        hint = {}
        if name:
            hint["name"] = name
        if signature:
            hint["signature"] = signature
        data["modelHint"] = hint
    data["entries"] = [_entry_to_file(e) for e in sorted(store.list_entries(), key=lambda e: e.entry_id)]
    return data


def serialize_store_to_json(
    store: OverlayStore,
    model: Optional[Model] = None,
    *,
    model_name: Optional[str] = None,
    created_at: Optional[str] = None,
) -> str:
    """Serialize to pretty JSON text (2-space indentation)."""
    data = serialize_store_to_file(store, model, model_name=model_name, created_at=created_at)
    return json.dumps(data, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


def is_overlay_file(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    if raw.get("format") != OVERLAY_FILE_FORMAT_V1:
        return False
    if not isinstance(raw.get("entries"), list):
        return False
    hint = raw.get("modelHint")
    if hint is not None and not isinstance(hint, dict):
        return False
    return True


def migrate_overlay_file(raw: dict) -> dict:
    """Bring an older overlay file to the current schema version."""
    out = dict(raw)
    schema_version = out.get("schemaVersion")
    if not isinstance(schema_version, int) or isinstance(schema_version, bool):
        out["schemaVersion"] = OVERLAY_SCHEMA_VERSION
    if not isinstance(out.get("createdAt"), str):
        out["createdAt"] = ""
    return out


def parse_overlay_json(text: str) -> dict:
    """
    Parse JSON text and validate it as an overlay file.

    Raises:
        OverlayParseError: Malformed JSON or not an overlay file
    """
    try:
        raw = json.loads(text)
    except ValueError as e:
        raise OverlayParseError(f"Overlay import failed: {e}") from e
    if not is_overlay_file(raw):
        raise OverlayParseError(
            "Overlay import failed: not a valid overlay file (format or structure mismatch)"
        )
    return migrate_overlay_file(raw)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _to_upsert_input(entry: Any) -> Optional[dict]:
    if not isinstance(entry, dict):
        return None
    target = entry.get("target")
    if not isinstance(target, dict):
        return None
    kind = target.get("kind")
    if not is_target_kind(kind):
        return None
    raw_refs = target.get("externalRefs")
    if not isinstance(raw_refs, list):
        return None
    refs = normalize_overlay_refs(r for r in raw_refs if isinstance(r, dict))
    if not refs:
        return None
    entry_id = entry.get("entryId")
    tags = entry.get("tags")
    meta = entry.get("meta")
    return {
        "entry_id": entry_id.strip() if isinstance(entry_id, str) and entry_id.strip() else None,
        "kind": kind,
        "external_refs": refs,
        "tags": dict(tags) if isinstance(tags, dict) else {},
        "meta": dict(meta) if isinstance(meta, dict) else None,
    }


def ensure_unique_entry_id(store: OverlayStore, desired: Optional[str]) -> str:
    """Use ``desired`` when free, otherwise allocate a fresh id."""
    d = (desired or "").strip()
    if d and not store.has_entry(d):
        return d
    return new_entry_id()


def find_overlapping_entries(store: OverlayStore, kind: str, refs) -> list[str]:
    """Existing entry ids of ``kind`` sharing at least one external key with ``refs``."""
    ids: set[str] = set()
    for k in overlay_ref_keys(refs):
        ids.update(store.find_entry_ids_by_external_key(k))
    out = []
    for id in sorted(ids):
        e = store.get_entry(id)
        if e is not None and e.target.kind == kind:
            out.append(id)
    return out


def _merge_meta(prev: Optional[dict], incoming: Optional[dict]) -> Optional[dict]:
    if not incoming:
        return prev
    return {**(prev or {}), **incoming}


def _add_new(store: OverlayStore, upsert: dict) -> str:
    return store.upsert_entry(
        upsert["kind"],
        upsert["external_refs"],
        entry_id=ensure_unique_entry_id(store, upsert["entry_id"]),
        tags=upsert["tags"],
        meta=upsert["meta"],
    )


def _drop(warnings: list[dict], stats: ImportStats, index: int) -> None:
    stats.dropped_invalid += 1
    warnings.append({
        "type": "dropped-invalid-entry",
        "imported_entry_index": index,
        "reason": "missing kind/refs",
    })
    logger.debug("Dropped invalid overlay entry #%d", index)


def import_overlay_file(
    store: OverlayStore,
    overlay_file: dict,
    model: Model,
    *,
    strategy: str = "merge",
    warn_on_signature_mismatch: bool = True,
    model_index: Optional[ModelIndex] = None,
) -> ImportResult:
    """
    Import an overlay file dict into the store.

    Args:
        store: Target overlay store
        overlay_file: Parsed overlay file (see ``parse_overlay_json``)
        model: Currently loaded model, for signature check and resolve report
        strategy: "merge" or "replace"
        warn_on_signature_mismatch: Report a file signature differing from the model's
        model_index: Prebuilt index for ``model``, if the caller has one

    Returns:
        ImportResult with warnings, stats and a resolve report of the store
    """
    if strategy not in IMPORT_STRATEGIES:
        raise ValueError(f"Unknown import strategy: {strategy!r}")

    warnings: list[dict] = []
    stats = ImportStats()

    current_signature = compute_signature(model)
    file_signature = (overlay_file.get("modelHint") or {}).get("signature")
    if warn_on_signature_mismatch and file_signature and file_signature != current_signature:
        warnings.append({
            "type": "signature-mismatch",
            "file_signature": file_signature,
            "current_signature": current_signature,
        })

    entries = overlay_file.get("entries") or []

    if strategy == "replace":
        store.clear()
        for i, imported in enumerate(entries):
            upsert = _to_upsert_input(imported)
            if upsert is None:
                _drop(warnings, stats, i)
                continue
            _add_new(store, upsert)
            stats.replaced += 1
    else:
        for i, imported in enumerate(entries):
            upsert = _to_upsert_input(imported)
            if upsert is None:
                _drop(warnings, stats, i)
                continue

            matches = find_overlapping_entries(store, upsert["kind"], upsert["external_refs"])

            if not matches:
                _add_new(store, upsert)
                stats.added += 1
                continue

            if len(matches) == 1:
                existing = store.get_entry(matches[0])
                store.upsert_entry(
                    existing.target.kind,
                    list(existing.target.external_refs) + list(upsert["external_refs"]),
                    entry_id=existing.entry_id,
                    tags={**existing.tags, **upsert["tags"]},
                    meta=_merge_meta(existing.meta, upsert["meta"]),
                )
                stats.updated += 1
                continue

            # Several existing entries overlap: merging would conflate them
            warnings.append({
                "type": "merge-conflict-multiple-existing",
                "imported_entry_index": i,
                "imported_entry_id": upsert["entry_id"],
                "kind": upsert["kind"],
                "matched_entry_ids": matches,
            })
            logger.debug("Merge conflict for imported entry #%d: %s", i, ", ".join(matches))
            _add_new(store, upsert)
            stats.conflicts_created_new += 1

    report = resolve(store.list_entries(), model_index if model_index is not None else build_index(model))
    logger.info(
        "Overlay import (%s): %d added, %d updated, %d replaced, %d dropped, %d conflicts",
        strategy, stats.added, stats.updated, stats.replaced,
        stats.dropped_invalid, stats.conflicts_created_new,
    )
    return ImportResult(file=overlay_file, warnings=warnings, stats=stats, resolve_report=report)


def import_overlay_json(
    store: OverlayStore,
    text: str,
    model: Model,
    **options,
) -> ImportResult:
    """Parse and import JSON text. Raises OverlayParseError on bad input."""
    return import_overlay_file(store, parse_overlay_json(text), model, **options)
