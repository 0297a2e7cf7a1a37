"""
CSV-long overlay codec: one row per (entry, tag key).

Columns::

    kind, entry_id, primary_ref_scheme, primary_ref_value, refs_json,
    tag_key, tag_value, tag_value_json

Entries without tags still get one row (empty tag columns) so their refs
survive a round-trip. When a model is given, a trailing ``#model_signature``
row carries its signature in the ``tag_value`` column.
"""

import json
from dataclasses import dataclass, field
from typing import Optional

from ..external_ids import normalize_overlay_refs
from ..persistence import OVERLAY_SCHEMA_VERSION
from ..resolve import ResolveReport
from ..signature import compute_signature
from ..store import OverlayStore
from ..types import ExternalRef, Model, is_target_kind, utc_now
from .csv_utils import parse_csv, to_csv
from .json_overlay import (
    OVERLAY_FILE_FORMAT_V1,
    ImportStats,
    import_overlay_file,
    warning_to_text,
)

OVERLAY_CSV_LONG_FORMAT_V1 = "pwa-modeller-overlay-csv-long@1"

CSV_LONG_COLUMNS = (
    "kind",
    "entry_id",
    "primary_ref_scheme",
    "primary_ref_value",
    "refs_json",
    "tag_key",
    "tag_value",
    "tag_value_json",
)

SIGNATURE_MARKER = "#model_signature"


@dataclass
class CsvLongRow:
    kind: str
    tag_key: str = ""
    entry_id: Optional[str] = None
    primary_ref_scheme: Optional[str] = None
    primary_ref_value: Optional[str] = None
    refs_json: Optional[str] = None
    tag_value: Optional[str] = None
    tag_value_json: Optional[str] = None


@dataclass
class CsvLongImportResult:
    file: dict
    warnings: list[str] = field(default_factory=list)
    stats: ImportStats = field(default_factory=ImportStats)
    report: ResolveReport = field(default_factory=ResolveReport)


def serialize_store_to_csv_long(store: OverlayStore, model: Optional[Model] = None) -> str:
    rows: list[list[str]] = [list(CSV_LONG_COLUMNS)]

    for e in sorted(store.list_entries(), key=lambda e: e.entry_id):
        refs = normalize_overlay_refs(e.target.external_refs)
        primary = refs[0] if refs else ExternalRef("", "")
        refs_json = json.dumps([r.to_dict() for r in refs], ensure_ascii=False, separators=(",", ":"))
        prefix = [e.target.kind, e.entry_id, primary.scheme, primary.value, refs_json]

        if not e.tags:
            rows.append(prefix + ["", "", ""])
            continue

        for k in sorted(e.tags):
            v = e.tags[k]
            v_json = json.dumps(v, ensure_ascii=False, separators=(",", ":"))
            v_text = v if isinstance(v, str) else v_json
            rows.append(prefix + [k, v_text, v_json])

    if model is not None:
        rows.append([SIGNATURE_MARKER, "", "", "", "", "", compute_signature(model), ""])

    return to_csv(rows)


def parse_csv_long(text: str) -> tuple[list[CsvLongRow], list[str]]:
    """
    Parse CSV-long text into rows.

    Headers are matched case-insensitively; ``kind`` and ``tag_key`` are
    required. Rows with an unknown kind are skipped with a warning.

    Returns:
        (rows, warnings)
    """
    grid = parse_csv(text, delimiter=",")
    if not grid:
        return [], ["empty csv"]

    header = [h.strip().lower() for h in grid[0]]

    def col(name: str) -> int:
        return header.index(name) if name in header else -1

    i_kind = col("kind")
    i_tag_key = col("tag_key")
    if i_kind < 0 or i_tag_key < 0:
        return [], ["missing required headers (need at least: kind, tag_key)"]
    idx = {name: col(name) for name in CSV_LONG_COLUMNS}

    def cell(line: list[str], name: str) -> str:
        i = idx[name]
        return line[i].strip() if 0 <= i < len(line) else ""

    rows: list[CsvLongRow] = []
    warnings: list[str] = []
    for r, line in enumerate(grid[1:], start=2):
        kind = cell(line, "kind")
        if kind == SIGNATURE_MARKER:
            continue
        if not is_target_kind(kind):
            warnings.append(f"row {r}: invalid kind '{kind}'")
            continue
        rows.append(CsvLongRow(
            kind=kind,
            tag_key=cell(line, "tag_key"),
            entry_id=cell(line, "entry_id") or None,
            primary_ref_scheme=cell(line, "primary_ref_scheme") or None,
            primary_ref_value=cell(line, "primary_ref_value") or None,
            refs_json=cell(line, "refs_json") or None,
            tag_value=cell(line, "tag_value") or None,
            tag_value_json=cell(line, "tag_value_json") or None,
        ))
    return rows, warnings


def _refs_from_json(text: str) -> list[ExternalRef]:
    parsed = json.loads(text)
    out = []
    if isinstance(parsed, list):
        for x in parsed:
            if not isinstance(x, dict):
                continue
            scheme, value = x.get("scheme"), x.get("value")
            if isinstance(scheme, str) and isinstance(value, str) and scheme.strip() and value.strip():
                out.append(ExternalRef(scheme.strip(), value.strip()))
    return out


def csv_long_rows_to_file(
    rows: list[CsvLongRow],
    *,
    model: Optional[Model] = None,
    created_at: Optional[str] = None,
) -> tuple[dict, list[str]]:
    """
    Group rows into overlay entries.

    Rows group by ``entry_id`` when present, else by kind and primary ref.
    ``refs_json`` takes precedence over the primary ref columns. Tag values
    come from ``tag_value_json`` when it parses, else the raw ``tag_value``.

    Returns:
        (overlay file dict, warnings)
    """
    warnings: list[str] = []
    groups: dict[str, dict] = {}

    for i, r in enumerate(rows):
        line_no = i + 2
        entry_id = (r.entry_id or "").strip()
        scheme = (r.primary_ref_scheme or "").strip()
        value = (r.primary_ref_value or "").strip()
        refs_json = (r.refs_json or "").strip()

        if not entry_id and (not scheme or not value) and not refs_json:
            warnings.append(f"row {line_no}: missing entry_id and missing primary_ref_scheme/value")
            continue

        group_key = f"id:{entry_id}" if entry_id else f"ref:{r.kind}:{scheme}::{value}"
        acc = groups.get(group_key)
        if acc is None:
            acc = {"kind": r.kind, "entry_id": entry_id or None, "refs": [], "tags": {}}
            groups[group_key] = acc
        if acc["kind"] != r.kind:
            warnings.append(f"row {line_no}: inconsistent kind for entry '{acc['entry_id'] or group_key}'")

        if refs_json:
            try:
                acc["refs"].extend(_refs_from_json(refs_json))
            except ValueError:
                warnings.append(f"row {line_no}: invalid refs_json")
        elif scheme and value:
            acc["refs"].append(ExternalRef(scheme, value))

        tag_key = (r.tag_key or "").strip()
        if not tag_key:
            continue
        v_json = (r.tag_value_json or "").strip()
        if v_json:
            try:
                acc["tags"][tag_key] = json.loads(v_json)
            except ValueError:
                acc["tags"][tag_key] = r.tag_value or ""
        else:
            acc["tags"][tag_key] = r.tag_value or ""

    entries = []
    for acc in groups.values():
        refs = normalize_overlay_refs(acc["refs"])
        if not refs:
            warnings.append(f"entry '{acc['entry_id'] or '(no-id)'}' dropped: no refs")
            continue
        entry = {
            "target": {"kind": acc["kind"], "externalRefs": [x.to_dict() for x in refs]},
            "tags": acc["tags"],
        }
        if acc["entry_id"]:
            entry["entryId"] = acc["entry_id"]
        entries.append(entry)

    file: dict = {
        "format": OVERLAY_FILE_FORMAT_V1,
        "schemaVersion": OVERLAY_SCHEMA_VERSION,
        "createdAt": created_at or utc_now(),
        "entries": entries,
    }
    if model is not None:
        file["modelHint"] = {"name": model.name or None, "signature": compute_signature(model)}
    return file, warnings


def import_csv_long(
    store: OverlayStore,
    model: Model,
    csv_text: str,
    *,
    strategy: str = "merge",
    warn_on_signature_mismatch: bool = True,
) -> CsvLongImportResult:
    """
    Parse CSV-long text and import it with the usual merge/replace rules.

    The built file carries the current model's signature, so the CSV path
    never reports a signature mismatch; the footer row is informational.
    """
    rows, parse_warnings = parse_csv_long(csv_text)
    file, build_warnings = csv_long_rows_to_file(rows, model=model)
    result = import_overlay_file(
        store, file, model,
        strategy=strategy,
        warn_on_signature_mismatch=warn_on_signature_mismatch,
    )
    return CsvLongImportResult(
        file=file,
        warnings=parse_warnings + build_warnings + [warning_to_text(w) for w in result.warnings],
        stats=result.stats,
        report=result.resolve_report,
    )
