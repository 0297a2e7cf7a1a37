"""
Survey CSV (wide): one row per model target, one column per tag key.

Meant for handing out to people who fill in tag values in a spreadsheet
and send the file back. Columns::

    kind, target_id, ref_scheme, ref_scope, ref_value, name, type, <tag keys...>

The second row is a ``#model_signature`` marker so that importing into a
different model can be detected.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..effective_tags import get_effective_tags
from ..external_ids import external_key, external_keys, to_overlay_ref
from ..model_index import build_index, get_external_refs, get_unique_external_refs, resolve_targets_by_key
from ..resolve import ResolveReport, resolve
from ..signature import compute_signature
from ..store import OverlayStore
from ..types import (
    ELEMENT,
    RELATIONSHIP,
    ExternalRef,
    Model,
    ModelTargetRef,
    TaggedValue,
    is_target_kind,
    normalize_tag_key,
)
from .csv_utils import parse_csv, to_csv

logger = logging.getLogger(__name__)

FIXED_COLUMNS = ("kind", "target_id", "ref_scheme", "ref_scope", "ref_value", "name", "type")
SIGNATURE_MARKER = "#model_signature"

TARGET_SETS = ("elements", "relationships", "both")
BLANK_MODES = ("ignore", "clear")


@dataclass
class SurveyExportOptions:
    tag_keys: list[str]
    target_set: str = "elements"
    element_types: list[str] = field(default_factory=list)
    relationship_types: list[str] = field(default_factory=list)
    # Prefill values from effective tags (overlay if present, else core)
    prefill_from_effective_tags: bool = True


@dataclass
class SurveyImportStats:
    rows_processed: int = 0
    rows_skipped: int = 0
    entries_touched: int = 0

    def to_dict(self) -> dict:
        return {
            "rows_processed": self.rows_processed,
            "rows_skipped": self.rows_skipped,
            "entries_touched": self.entries_touched,
        }


@dataclass
class SurveyImportResult:
    warnings: list[str]
    resolve_report: ResolveReport
    stats: SurveyImportStats


def normalize_tag_keys(keys) -> list[str]:
    return sorted({k for k in (normalize_tag_key(k0) for k0 in keys or []) if k})


def _find_tagged_value(tagged: Optional[list[TaggedValue]], key: str) -> str:
    for tv in tagged or []:
        if normalize_tag_key(tv.key) == key:
            return "" if tv.value is None else str(tv.value)
    return ""


def _survey_targets(model: Model, options: SurveyExportOptions) -> list[tuple[str, object]]:
    out = []
    el_types = [t for t in options.element_types if t]
    rel_types = [t for t in options.relationship_types if t]
    if options.target_set in ("elements", "both"):
        for el in model.elements.values():
            if el_types and el.type not in el_types:
                continue
            out.append((ELEMENT, el))
    if options.target_set in ("relationships", "both"):
        for rel in model.relationships.values():
            if rel_types and rel.type not in rel_types:
                continue
            out.append((RELATIONSHIP, rel))
    return out


def serialize_survey_csv(model: Model, store: OverlayStore, options: SurveyExportOptions) -> str:
    if options.target_set not in TARGET_SETS:
        raise ValueError(f"Unknown survey target set: {options.target_set!r}")
    tag_keys = normalize_tag_keys(options.tag_keys)

    rows: list[list[str]] = [list(FIXED_COLUMNS) + tag_keys]
    rows.append([SIGNATURE_MARKER, compute_signature(model)] + [""] * (len(FIXED_COLUMNS) - 2 + len(tag_keys)))

    for kind, obj in _survey_targets(model, options):
        refs = get_external_refs(obj)
        primary = refs[0] if refs else None
        tagged = get_effective_tags(obj, kind, store).effective_tagged_values if options.prefill_from_effective_tags else None

        row = [
            kind,
            obj.id,
            primary.system if primary else "",
            (primary.scope or "") if primary else "",
            primary.id if primary else "",
            obj.name or "",
            obj.type or "",
        ]
        row.extend(_find_tagged_value(tagged, k) for k in tag_keys)
        rows.append(row)

    return to_csv(rows)


def _find_target(model: Model, index, kind: str, m: dict[str, str], line_no: int, warnings: list[str]):
    target_id = m.get("target_id", "").strip()
    by_id = model.elements.get(target_id) if kind == ELEMENT else model.relationships.get(target_id)
    if by_id is not None:
        return by_id

    scheme = m.get("ref_scheme", "").strip()
    value = m.get("ref_value", "").strip()
    if not scheme or not value:
        return None
    key = external_key({"system": scheme, "scope": m.get("ref_scope", ""), "id": value})
    candidates = resolve_targets_by_key(index, key, kind)
    if len(candidates) == 1:
        return model.get_object(candidates[0])
    if len(candidates) > 1:
        warnings.append(f"row {line_no}: ambiguous match for external key {key} ({len(candidates)} candidates)")
    return None


def import_survey_csv(
    model: Model,
    store: OverlayStore,
    csv_text: str,
    *,
    blank_mode: str = "ignore",
) -> SurveyImportResult:
    """
    Apply a filled-in survey CSV to the overlay store.

    Rows are matched to model targets by ``target_id``, falling back to the
    row's external ref. Matched rows update the target's overlay entry, or
    create one from the refs that identify the target alone (all of its
    refs when none do). Unmatched rows with at least one tag value and a
    usable ref become new, unattached entries.

    Args:
        blank_mode: "ignore" leaves keys with blank cells untouched,
            "clear" removes them from the overlay entry
    """
    if blank_mode not in BLANK_MODES:
        raise ValueError(f"Unknown blank mode: {blank_mode!r}")

    index = build_index(model)
    warnings: list[str] = []
    stats = SurveyImportStats()

    rows = parse_csv(csv_text)
    if not rows:
        return SurveyImportResult(["empty csv"], resolve(store.list_entries(), index), stats)

    header = [h.strip() for h in rows[0]]
    missing = [c for c in FIXED_COLUMNS if c not in header]
    if missing:
        warnings.append(f"missing required columns: {', '.join(missing)}")
    tag_keys = normalize_tag_keys(h for h in header if h not in FIXED_COLUMNS)

    current_signature = compute_signature(model)
    file_signature: Optional[str] = None

    for r, row in enumerate(rows[1:], start=2):
        m = {h: (row[i] if i < len(row) else "") for i, h in enumerate(header)}
        kind = m.get("kind", "").strip()

        if kind == SIGNATURE_MARKER:
            file_signature = m.get("target_id", "").strip() or None
            continue
        if not is_target_kind(kind):
            stats.rows_skipped += 1
            continue

        target = _find_target(model, index, kind, m, r, warnings)
        filled = {k: m[k] for k in tag_keys if m.get(k, "").strip()}

        if target is None:
            scheme = m.get("ref_scheme", "").strip()
            value = m.get("ref_value", "").strip()
            scope = m.get("ref_scope", "").strip()
            if not filled or not scheme or not value:
                stats.rows_skipped += 1
                continue
            store.upsert_entry(kind, [ExternalRef(f"{scheme}@{scope}" if scope else scheme, value)], tags=filled)
            stats.entries_touched += 1
            stats.rows_processed += 1
            continue

        entry_ids = set()
        for k in external_keys(target.external_ids):
            entry_ids.update(store.find_entry_ids_by_external_key(k))
        matches = sorted(id for id in entry_ids if store.get_entry(id).target.kind == kind)

        if matches:
            entry_id = matches[0]
            if len(matches) > 1:
                warnings.append(f"row {r}: multiple overlay entries matched target; updated {entry_id}")
        elif not filled:
            stats.rows_processed += 1
            continue
        else:
            chosen = get_unique_external_refs(model, index, ModelTargetRef(kind, target.id)) or get_external_refs(target)
            refs = [to_overlay_ref(x) for x in chosen]
            if not refs:
                warnings.append(f"row {r}: target {target.id} has no external ids; skipped")
                stats.rows_skipped += 1
                continue
            entry_id = store.upsert_entry(kind, refs, tags={})

        entry = store.get_entry(entry_id)
        merged = dict(entry.tags)
        changed = False
        for k in tag_keys:
            raw = m.get(k, "")
            if not raw.strip():
                if blank_mode == "clear" and k in merged:
                    del merged[k]
                    changed = True
                continue
            if merged.get(k) != raw:
                merged[k] = raw
                changed = True

        if changed:
            store.set_tags(entry_id, merged)
            stats.entries_touched += 1
        stats.rows_processed += 1

    if file_signature and file_signature != current_signature:
        warnings.append(f"signature mismatch (file={file_signature}, current={current_signature})")

    logger.info(
        "Survey import: %d rows processed, %d skipped, %d entries touched",
        stats.rows_processed, stats.rows_skipped, stats.entries_touched,
    )
    return SurveyImportResult(warnings, resolve(store.list_entries(), index), stats)
