"""
Model signature: a stable hash identifying "the same model" across reloads.

Based on the set of external keys in the model, so it survives re-imports
that assign new internal ids. Models without any external ids fall back to
hashing internal ids. This is a change detector, not a security primitive.
"""

from .external_ids import external_key
from .model_index import get_external_refs
from .types import Model

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def fnv1a32(text: str) -> str:
    """FNV-1a 32-bit hash as 8 lowercase hex digits.

    Hashes UTF-16 code units so signatures match those computed by
    browser-side tooling for the same input.
    """
    data = text.encode("utf-16-le")
    h = _FNV_OFFSET
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def collect_external_keys(model: Model) -> list[str]:
    """Sorted, deduplicated external keys across all elements and relationships."""
    keys: set[str] = set()
    for obj in list(model.elements.values()) + list(model.relationships.values()):
        for ref in get_external_refs(obj):
            keys.add(external_key(ref))
    return sorted(keys)


def compute_signature(model: Model) -> str:
    keys = collect_external_keys(model)
    if keys:
        return "ext-" + fnv1a32("\n".join(keys))
    parts = ["e:" + id for id in sorted(model.elements)]
    parts += ["r:" + id for id in sorted(model.relationships)]
    return "int-" + fnv1a32("\n".join(parts))
