"""
External reference normalization.

Model objects carry ``ExternalIdRef(system, id, scope)``; overlay entries
carry ``ExternalRef(scheme, value)`` where ``scheme`` packs ``system[@scope]``.
Both canonicalize to the same key, ``system|scope|id``, which is what every
index in the overlay layer is keyed by.
"""

from typing import Any, Iterable, Optional

from .types import ExternalIdRef, ExternalRef


def _text(v: Any) -> str:
    return "" if v is None else str(v).strip()


def _field(ref: Any, name: str) -> Any:
    if isinstance(ref, dict):
        return ref.get(name)
    return getattr(ref, name, None)


def normalize_external_id_ref(ref: Any) -> Optional[ExternalIdRef]:
    """Trim a model-side ref. Returns None when ``system`` or ``id`` is missing."""
    if ref is None:
        return None
    system = _text(_field(ref, "system"))
    id = _text(_field(ref, "id"))
    scope = _text(_field(ref, "scope")) or None
    if not system or not id:
        return None
    return ExternalIdRef(system=system, id=id, scope=scope)


def external_key(ref: Any) -> str:
    """Canonical key ``system|scope|id`` (scope empty when absent)."""
    system = _text(_field(ref, "system"))
    id = _text(_field(ref, "id"))
    scope = _text(_field(ref, "scope"))
    return f"{system}|{scope}|{id}"


def dedupe_external_ids(refs: Optional[Iterable[Any]]) -> list[ExternalIdRef]:
    """
    Normalize and dedupe a list of model-side refs.

    Invalid refs are dropped. For duplicated keys the *last* occurrence is
    kept, and the result preserves the order of those last occurrences.
    """
    normalized = [n for n in (normalize_external_id_ref(r) for r in refs or []) if n]
    seen: set[str] = set()
    out: list[ExternalIdRef] = []
    for ref in reversed(normalized):
        k = external_key(ref)
        if k in seen:
            continue
        seen.add(k)
        out.append(ref)
    out.reverse()
    return out


def external_keys(refs: Optional[Iterable[Any]]) -> list[str]:
    """Sorted canonical keys for a list of model-side refs."""
    return sorted(external_key(r) for r in dedupe_external_ids(refs))


# ---------------------------------------------------------------------------
# Overlay-side refs
# ---------------------------------------------------------------------------


def to_external_id_ref(ref: Any) -> ExternalIdRef:
    """Split an overlay ref's ``system[@scope]`` scheme into a model-side ref."""
    scheme = _text(_field(ref, "scheme"))
    value = _text(_field(ref, "value"))
    system, sep, scope = scheme.partition("@")
    return ExternalIdRef(system=system.strip(), id=value, scope=(scope.strip() or None) if sep else None)


def to_overlay_ref(ref: ExternalIdRef) -> ExternalRef:
    scheme = f"{ref.system}@{ref.scope}" if ref.scope else ref.system
    return ExternalRef(scheme=scheme, value=ref.id)


def overlay_ref_key(ref: Any) -> str:
    """Canonical key for an overlay ref, or empty string when it is invalid."""
    norm = normalize_external_id_ref(to_external_id_ref(ref))
    return external_key(norm) if norm else ""


def normalize_overlay_refs(refs: Optional[Iterable[Any]]) -> list[ExternalRef]:
    """Normalize and dedupe overlay refs (last occurrence of each key wins)."""
    converted = []
    for r in refs or []:
        if r is None:
            continue
        converted.append(to_external_id_ref(r))
    return [to_overlay_ref(r) for r in dedupe_external_ids(converted)]


def overlay_ref_keys(refs: Optional[Iterable[Any]]) -> list[str]:
    """Sorted, deduplicated canonical keys for a list of overlay refs."""
    return sorted({external_key(to_external_id_ref(r)) for r in normalize_overlay_refs(refs)})
