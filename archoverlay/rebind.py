"""
Rebind: manually point an overlay entry at a chosen model target.

Used to repair orphan or ambiguous entries. The entry's refs are replaced
with refs taken from the target, preferring the ones that identify the
target alone so the entry does not become ambiguous again.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .external_ids import to_overlay_ref
from .model_index import ModelIndex, build_index, get_external_refs, get_unique_external_refs
from .store import OverlayStore
from .types import ExternalRef, Model, ModelTargetRef

logger = logging.getLogger(__name__)

ENTRY_NOT_FOUND = "entry-not-found"
TARGET_NOT_FOUND = "target-not-found"
TARGET_HAS_NO_EXTERNAL_IDS = "target-has-no-external-ids"


@dataclass
class RebindResult:
    ok: bool
    entry_id: str
    target: ModelTargetRef
    error: Optional[str] = None
    used_refs: list[ExternalRef] = field(default_factory=list)
    used_unique_refs: bool = False


def rebind_entry(
    store: OverlayStore,
    model: Model,
    entry_id: str,
    target: ModelTargetRef,
    *,
    prefer_unique_refs: bool = True,
    replace_refs: bool = True,
    model_index: Optional[ModelIndex] = None,
) -> RebindResult:
    """
    Rewrite an entry's refs and kind from ``target``.

    Args:
        prefer_unique_refs: Use only the target's refs that no other target
            of the same kind shares, when there are any
        replace_refs: Replace the entry's refs (default) instead of adding to them
    """
    entry = store.get_entry(entry_id)
    if entry is None:
        return RebindResult(False, entry_id, target, error=ENTRY_NOT_FOUND)

    obj = model.get_object(target)
    if obj is None:
        return RebindResult(False, entry_id, target, error=TARGET_NOT_FOUND)

    all_refs = get_external_refs(obj)
    if not all_refs:
        return RebindResult(False, entry_id, target, error=TARGET_HAS_NO_EXTERNAL_IDS)

    chosen = all_refs
    used_unique = False
    if prefer_unique_refs:
        index = model_index if model_index is not None else build_index(model)
        unique = get_unique_external_refs(model, index, target)
        if unique:
            chosen = unique
            used_unique = True

    refs = [to_overlay_ref(r) for r in chosen]
    next_refs = refs if replace_refs else list(entry.target.external_refs) + refs
    store.upsert_entry(target.kind, next_refs, entry_id=entry_id)

    logger.info("Rebound overlay entry %s to %s %s (%d refs)", entry_id, target.kind, target.id, len(refs))
    return RebindResult(True, entry_id, target, used_refs=refs, used_unique_refs=used_unique)
