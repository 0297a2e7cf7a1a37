"""
CLI interface for the model overlay.

Usage:
    archoverlay signature --model model.json
    archoverlay resolve --model model.json
    archoverlay export --model model.json --format csv-long -o overlay.csv
    archoverlay import overlay.json --model model.json --strategy merge
"""

import json
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from typing_extensions import Annotated

from .config import BLANK_MODES, IMPORT_STRATEGIES, OverlayConfig, get_store_path, load_or_create_config
from .diagnostics import compute_coverage, find_model_collisions
from .errors import OverlayParseError
from .external_ids import normalize_overlay_refs
from .io.csv_long import import_csv_long, serialize_store_to_csv_long
from .io.json_overlay import import_overlay_json, serialize_store_to_json, warning_to_text
from .io.survey_csv import SurveyExportOptions, import_survey_csv, serialize_survey_csv
from .kv_store import SqliteKeyValueStore
from .logging_config import configure_ops_log, enable_debug_mode
from .model_index import build_index
from .persistence import (
    OverlayPersistenceBinding,
    load_export_marker,
    load_persisted_meta,
    persisted_since_export,
    set_export_marker,
)
from .rebind import rebind_entry
from .resolve import ResolveReport, resolve
from .signature import compute_signature
from .store import OverlayStore
from .types import TARGET_KINDS, ExternalRef, Model, ModelTargetRef, model_from_dict

FORMATS = ("json", "csv-long", "survey")


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


app = typer.Typer(
    name="archoverlay",
    help="Overlay tags on architecture models, bound by external ids.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
):
    """Overlay tags on architecture models, bound by external ids."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="ARCHOVERLAY_STORE_PATH",
        help="Path to the store directory (default: ~/.archoverlay/)"
    )
]

ModelOption = Annotated[
    Path,
    typer.Option(
        "--model", "-m",
        envvar="ARCHOVERLAY_MODEL",
        help="Model JSON file (elements and relationships with externalIds)"
    )
]

JsonOption = Annotated[
    bool,
    typer.Option("--json", "-j", help="Output as JSON")
]


# -----------------------------------------------------------------------------
# Session helpers
# -----------------------------------------------------------------------------


class Session:
    """A loaded model plus its overlay store, bound to persistent storage."""

    def __init__(self, config: OverlayConfig, model: Model, kv: SqliteKeyValueStore):
        self.config = config
        self.model = model
        self.kv = kv
        self.signature = compute_signature(model)
        self.store = OverlayStore()
        # Writes are flushed explicitly when the session closes
        self.binding = OverlayPersistenceBinding(
            self.store, kv, self.signature, debounce_seconds=config.debounce_seconds,
        )
        self.binding.restore()

    def close(self) -> None:
        self.binding.close()
        self.store.close()
        self.kv.close()


def _load_model(path: Path) -> Model:
    if not path.exists():
        typer.echo(f"Error: model file not found: {path}", err=True)
        raise typer.Exit(1)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        typer.echo(f"Error: model file is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(data, dict):
        typer.echo("Error: model file must contain a JSON object", err=True)
        raise typer.Exit(1)
    return model_from_dict(data)


@contextmanager
def _session(store: Optional[Path], model_path: Path) -> Iterator[Session]:
    store_path = get_store_path(store)
    config = load_or_create_config(store_path)
    model = _load_model(model_path)
    handler = configure_ops_log(store_path)
    session = Session(config, model, SqliteKeyValueStore(config.db_path))
    try:
        yield session
    finally:
        session.close()
        logging.getLogger("archoverlay").removeHandler(handler)
        handler.close()


def _format_report(report: ResolveReport) -> str:
    lines = [
        f"attached: {report.counts['attached']}  "
        f"orphan: {report.counts['orphan']}  "
        f"ambiguous: {report.counts['ambiguous']}"
    ]
    for a in report.attached:
        lines.append(f"  attached   {a.entry_id} -> {a.target.kind} {a.target.id}")
    for o in report.orphan:
        lines.append(f"  orphan     {o.entry_id} ({o.kind}; tried {', '.join(o.keys) or '-'})")
    for a in report.ambiguous:
        ids = ", ".join(c.id for c in a.candidates)
        lines.append(f"  ambiguous  {a.entry_id} -> {a.kind} [{ids}]")
    return "\n".join(lines)


def _parse_key_value(text: str) -> tuple[str, str]:
    if "=" not in text:
        typer.echo(f"Error: expected key=value, got {text!r}", err=True)
        raise typer.Exit(1)
    k, v = text.split("=", 1)
    return k.strip(), v


def _detect_format(path: Path, fmt: Optional[str]) -> str:
    if fmt:
        return fmt
    if path.suffix.lower() == ".json":
        return "json"
    return "csv-long"


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@app.command()
def signature(model: ModelOption):
    """Print the model signature used to scope stored overlays."""
    typer.echo(compute_signature(_load_model(model)))


@app.command("resolve")
def resolve_cmd(
    model: ModelOption,
    store: StoreOption = None,
    output_json: JsonOption = False,
):
    """Classify overlay entries as attached, orphan or ambiguous."""
    with _session(store, model) as s:
        report = resolve(s.store.list_entries(), build_index(s.model))
    if output_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        typer.echo(_format_report(report))


@app.command("list")
def list_cmd(
    model: ModelOption,
    store: StoreOption = None,
):
    """List overlay entries stored for the model, as JSON lines."""
    with _session(store, model) as s:
        for e in sorted(s.store.list_entries(), key=lambda e: e.entry_id):
            typer.echo(json.dumps(e.to_dict(), ensure_ascii=False))


@app.command()
def status(
    model: ModelOption,
    store: StoreOption = None,
):
    """Show persisted overlay state and whether it was exported since the last change."""
    with _session(store, model) as s:
        meta = load_persisted_meta(s.kv, s.signature)
        marker = load_export_marker(s.kv, s.signature)
        typer.echo(f"signature: {s.signature}")
        typer.echo(f"entries: {len(s.store)}")
        typer.echo(f"saved at: {meta['saved_at'] if meta else '-'}")
        typer.echo(f"last export: {marker['exported_at'] if marker else '-'}")
        if persisted_since_export(s.kv, s.signature):
            typer.echo("unexported changes: yes")
        else:
            typer.echo("unexported changes: no")


@app.command()
def diagnostics(
    model: ModelOption,
    store: StoreOption = None,
):
    """Report model-side external id collisions and ambiguous overlay entries."""
    with _session(store, model) as s:
        index = build_index(s.model)
        collisions = find_model_collisions(index)
        report = resolve(s.store.list_entries(), index)
    typer.echo(f"model collisions: {len(collisions)}")
    for c in collisions:
        typer.echo(f"  {c.kind} {c.external_key}: {', '.join(c.target_ids)}")
    typer.echo(f"ambiguous overlay entries: {len(report.ambiguous)}")
    for a in report.ambiguous:
        typer.echo(f"  {a.entry_id}: {', '.join(c.id for c in a.candidates)}")


@app.command()
def coverage(
    model: ModelOption,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Required tag key (repeatable; default from config)"
    )] = None,
    store: StoreOption = None,
    output_json: JsonOption = False,
):
    """Count model objects carrying each required tag (core or overlay)."""
    with _session(store, model) as s:
        keys = tag or s.config.required_tags
        if not keys:
            typer.echo("Error: no required tags (use --tag or set coverage.required_tags)", err=True)
            raise typer.Exit(1)
        report = compute_coverage(s.model, s.store, keys)
    if output_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    for t in report.per_tag:
        typer.echo(
            f"{t.key}: elements {t.elements}/{report.total_elements}, "
            f"relationships {t.relationships}/{report.total_relationships}"
        )


@app.command()
def add(
    model: ModelOption,
    kind: Annotated[str, typer.Option("--kind", "-k", help="element or relationship")] = "element",
    ref: Annotated[Optional[list[str]], typer.Option(
        "--ref", "-r", help="External ref as scheme=value (scheme may be system@scope)"
    )] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Tag as key=value (repeatable)"
    )] = None,
    store: StoreOption = None,
):
    """Add an overlay entry."""
    if kind not in TARGET_KINDS:
        typer.echo(f"Error: --kind must be one of {', '.join(TARGET_KINDS)}", err=True)
        raise typer.Exit(1)
    refs = [ExternalRef(*_parse_key_value(r)) for r in ref or []]
    tags = dict(_parse_key_value(t) for t in tag or [])
    if not normalize_overlay_refs(refs):
        typer.echo("Error: at least one valid --ref is required", err=True)
        raise typer.Exit(1)
    with _session(store, model) as s:
        entry_id = s.store.upsert_entry(kind, refs, tags=tags)
    typer.echo(entry_id)


@app.command("tag")
def tag_cmd(
    entry_id: Annotated[str, typer.Argument(help="Overlay entry id")],
    key: Annotated[str, typer.Argument(help="Tag key")],
    value: Annotated[str, typer.Argument(help="Tag value")],
    model: ModelOption,
    json_value: Annotated[bool, typer.Option(
        "--json-value", help="Parse VALUE as JSON (numbers, booleans, lists)"
    )] = False,
    store: StoreOption = None,
):
    """Set one tag on an overlay entry."""
    parsed = value
    if json_value:
        try:
            parsed = json.loads(value)
        except ValueError as e:
            typer.echo(f"Error: invalid JSON value: {e}", err=True)
            raise typer.Exit(1)
    with _session(store, model) as s:
        if s.store.get_entry(entry_id) is None:
            typer.echo(f"Error: entry not found: {entry_id}", err=True)
            raise typer.Exit(1)
        s.store.set_tag(entry_id, key, parsed)


@app.command()
def untag(
    entry_id: Annotated[str, typer.Argument(help="Overlay entry id")],
    key: Annotated[str, typer.Argument(help="Tag key")],
    model: ModelOption,
    store: StoreOption = None,
):
    """Remove one tag from an overlay entry."""
    with _session(store, model) as s:
        s.store.remove_tag(entry_id, key)


@app.command()
def delete(
    entry_id: Annotated[str, typer.Argument(help="Overlay entry id")],
    model: ModelOption,
    store: StoreOption = None,
):
    """Delete an overlay entry."""
    with _session(store, model) as s:
        s.store.delete_entry(entry_id)


@app.command()
def rebind(
    entry_id: Annotated[str, typer.Argument(help="Overlay entry id")],
    target_id: Annotated[str, typer.Argument(help="Element or relationship id in the model")],
    model: ModelOption,
    kind: Annotated[str, typer.Option("--kind", "-k", help="element or relationship")] = "element",
    all_refs: Annotated[bool, typer.Option(
        "--all-refs", help="Use all of the target's refs, not only the unique ones"
    )] = False,
    append: Annotated[bool, typer.Option(
        "--append", help="Add the target's refs instead of replacing the entry's refs"
    )] = False,
    store: StoreOption = None,
):
    """Point an overlay entry at a chosen model target."""
    with _session(store, model) as s:
        result = rebind_entry(
            s.store, s.model, entry_id, ModelTargetRef(kind, target_id),
            prefer_unique_refs=not all_refs,
            replace_refs=not append,
        )
    if not result.ok:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(1)
    refs = ", ".join(f"{r.scheme}={r.value}" for r in result.used_refs)
    typer.echo(f"Rebound {entry_id} to {kind} {target_id} ({refs})")


@app.command()
def export(
    model: ModelOption,
    fmt: Annotated[str, typer.Option("--format", "-f", help="json, csv-long or survey")] = "json",
    output: Annotated[str, typer.Option("--output", "-o", help="Output file (- for stdout)")] = "-",
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Survey tag column (repeatable)"
    )] = None,
    targets: Annotated[str, typer.Option(
        "--targets", help="Survey rows: elements, relationships or both"
    )] = "elements",
    store: StoreOption = None,
):
    """Export the overlay for the model."""
    if fmt not in FORMATS:
        typer.echo(f"Error: --format must be one of {', '.join(FORMATS)}", err=True)
        raise typer.Exit(1)
    with _session(store, model) as s:
        if fmt == "json":
            text = serialize_store_to_json(s.store, s.model) + "\n"
        elif fmt == "csv-long":
            text = serialize_store_to_csv_long(s.store, s.model)
        else:
            options = SurveyExportOptions(tag_keys=list(tag or s.config.required_tags), target_set=targets)
            try:
                text = serialize_survey_csv(s.model, s.store, options)
            except ValueError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(1)
        if fmt != "survey":
            set_export_marker(s.kv, s.signature, s.store.get_version())
        count = len(s.store)

    if output == "-":
        sys.stdout.write(text)
    else:
        Path(output).write_text(text, encoding="utf-8")
        typer.echo(f"Exported {count} overlay entries to {output}", err=True)


@app.command("import")
def import_cmd(
    file: Annotated[Path, typer.Argument(help="Overlay file to import")],
    model: ModelOption,
    fmt: Annotated[Optional[str], typer.Option(
        "--format", "-f", help="json, csv-long or survey (default: by extension)"
    )] = None,
    strategy: Annotated[Optional[str], typer.Option(
        "--strategy", help="merge or replace (default from config)"
    )] = None,
    blank_mode: Annotated[Optional[str], typer.Option(
        "--blank-mode", help="Survey blank cells: ignore or clear (default from config)"
    )] = None,
    store: StoreOption = None,
):
    """Import an overlay file into the model's overlay."""
    fmt = _detect_format(file, fmt)
    if fmt not in FORMATS:
        typer.echo(f"Error: --format must be one of {', '.join(FORMATS)}", err=True)
        raise typer.Exit(1)
    if strategy is not None and strategy not in IMPORT_STRATEGIES:
        typer.echo(f"Error: --strategy must be 'merge' or 'replace', got '{strategy}'", err=True)
        raise typer.Exit(1)
    if blank_mode is not None and blank_mode not in BLANK_MODES:
        typer.echo(f"Error: --blank-mode must be 'ignore' or 'clear', got '{blank_mode}'", err=True)
        raise typer.Exit(1)
    if not file.exists():
        typer.echo(f"Error: file not found: {file}", err=True)
        raise typer.Exit(1)
    text = file.read_text(encoding="utf-8")

    with _session(store, model) as s:
        chosen = strategy or s.config.import_strategy
        if fmt == "json":
            try:
                result = import_overlay_json(
                    s.store, text, s.model,
                    strategy=chosen,
                    warn_on_signature_mismatch=s.config.warn_on_signature_mismatch,
                )
            except OverlayParseError as e:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(1)
            warnings = [warning_to_text(w) for w in result.warnings]
            stats = result.stats.to_dict()
            report = result.resolve_report
        elif fmt == "csv-long":
            result = import_csv_long(
                s.store, s.model, text,
                strategy=chosen,
                warn_on_signature_mismatch=s.config.warn_on_signature_mismatch,
            )
            warnings, stats, report = result.warnings, result.stats.to_dict(), result.report
        else:
            result = import_survey_csv(s.model, s.store, text, blank_mode=blank_mode or s.config.blank_mode)
            warnings, stats, report = result.warnings, result.stats.to_dict(), result.resolve_report

    for w in warnings:
        typer.echo(f"warning: {w}", err=True)
    typer.echo(", ".join(f"{k} {v}" for k, v in stats.items()), err=True)
    typer.echo(_format_report(report).splitlines()[0])


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="archoverlay CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
