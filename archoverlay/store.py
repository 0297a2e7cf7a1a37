"""
In-memory overlay store.

The store is the source of truth for overlay entries:
- Entries keyed by ``entry_id``
- A ``ref_index`` mapping external key -> entry ids, derived from entries
- A monotonic version counter bumped once per visible mutation

It is a mechanical index, not a policy layer: invalid input is ignored
rather than rejected, and nothing here raises. Validation belongs to the
import codecs and editors that feed it.
"""

import logging
from typing import Any, Callable, Iterable, Optional

from .external_ids import normalize_overlay_refs, overlay_ref_keys
from .types import (
    ExternalRef,
    OverlayStoreEntry,
    OverlayTarget,
    TagValue,
    new_entry_id,
    normalize_tag_key,
)

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


def _normalize_tags(tags: Optional[dict]) -> dict[str, TagValue]:
    out: dict[str, TagValue] = {}
    for k0, v in (tags or {}).items():
        k = normalize_tag_key(k0)
        if not k:
            continue
        out[k] = v
    return out


class OverlayStore:
    """
    Overlay entries plus their derived external-key index.

    Lifecycle: create -> hydrate (optional) -> mutate* -> close.

    Every mutation computes the entry's new key set, diffs it against the
    previous one, and applies only the delta to ``ref_index``, so the index
    always equals what a full rescan of the entries would produce.
    """

    def __init__(self):
        self._entries: dict[str, OverlayStoreEntry] = {}
        self._entry_keys: dict[str, frozenset[str]] = {}
        self._ref_index: dict[str, set[str]] = {}
        self._version = 0
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Change notification
    # -------------------------------------------------------------------------

    def get_version(self) -> int:
        """Monotonic counter, incremented once per externally visible change."""
        return self._version

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called synchronously after every version bump.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Overlay store listener failed")

    def close(self) -> None:
        """Drop all listeners. Entries stay readable."""
        self._listeners.clear()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def list_entries(self) -> list[OverlayStoreEntry]:
        return list(self._entries.values())

    def get_entry(self, entry_id: str) -> Optional[OverlayStoreEntry]:
        return self._entries.get(entry_id)

    def has_entry(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def get_ref_index(self) -> dict[str, set[str]]:
        """Copy of the external key -> entry ids index."""
        return {k: set(v) for k, v in self._ref_index.items()}

    def find_entry_ids_by_external_key(self, key: str) -> list[str]:
        return sorted(self._ref_index.get(key, ()))

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def upsert_entry(
        self,
        kind: str,
        external_refs: Iterable[Any],
        *,
        entry_id: Optional[str] = None,
        tags: Optional[dict[str, TagValue]] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Insert or replace an entry's target.

        ``tags`` and ``meta`` replace the existing values unless omitted, in
        which case the previous values are kept. A blank ``entry_id``
        allocates a fresh one; a provided id is used as-is even when
        already taken (callers importing files avoid collisions themselves).

        Returns:
            The entry id written.
        """
        eid = (entry_id or "").strip() or new_entry_id()
        refs = normalize_overlay_refs(external_refs)
        prev = self._entries.get(eid)

        if tags is not None:
            next_tags = _normalize_tags(tags)
        else:
            next_tags = dict(prev.tags) if prev else {}
        if meta is not None:
            next_meta = dict(meta)
        else:
            next_meta = prev.meta if prev else None

        self._entries[eid] = OverlayStoreEntry(
            entry_id=eid,
            target=OverlayTarget(kind=kind, external_refs=refs),
            tags=next_tags,
            meta=next_meta,
        )
        self._reindex_entry(eid, refs)
        self._emit()
        return eid

    def set_tag(self, entry_id: str, key: str, value: TagValue) -> None:
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        k = normalize_tag_key(key)
        if not k:
            return
        self._replace_tags(entry, {**entry.tags, k: value})
        self._emit()

    def set_tags(self, entry_id: str, tags: dict[str, TagValue]) -> None:
        """Replace all tags for an entry at once (bulk editors, survey import)."""
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        self._replace_tags(entry, _normalize_tags(tags))
        self._emit()

    def remove_tag(self, entry_id: str, key: str) -> None:
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        k = normalize_tag_key(key)
        if not k or k not in entry.tags:
            return
        next_tags = dict(entry.tags)
        del next_tags[k]
        self._replace_tags(entry, next_tags)
        self._emit()

    def delete_entry(self, entry_id: str) -> None:
        if entry_id not in self._entries:
            return
        del self._entries[entry_id]
        self._apply_key_delta(entry_id, frozenset())
        self._emit()

    def clear(self) -> None:
        self._entries.clear()
        self._entry_keys.clear()
        self._ref_index.clear()
        self._emit()

    def hydrate(self, entries: Iterable[OverlayStoreEntry]) -> None:
        """Replace all entries at once (persistence restore). One version bump."""
        self._entries.clear()
        self._entry_keys.clear()
        self._ref_index.clear()
        count = 0
        for e in entries:
            if e is None or not e.entry_id:
                continue
            refs = normalize_overlay_refs(e.target.external_refs)
            self._entries[e.entry_id] = OverlayStoreEntry(
                entry_id=e.entry_id,
                target=OverlayTarget(kind=e.target.kind, external_refs=refs),
                tags=_normalize_tags(e.tags),
                meta=dict(e.meta) if e.meta is not None else None,
            )
            self._reindex_entry(e.entry_id, refs)
            count += 1
        logger.debug("Hydrated overlay store with %d entries", count)
        self._emit()

    # -------------------------------------------------------------------------
    # Index maintenance
    # -------------------------------------------------------------------------

    def _replace_tags(self, entry: OverlayStoreEntry, tags: dict[str, TagValue]) -> None:
        self._entries[entry.entry_id] = OverlayStoreEntry(
            entry_id=entry.entry_id,
            target=entry.target,
            tags=tags,
            meta=entry.meta,
        )

    def _reindex_entry(self, entry_id: str, refs: list[ExternalRef]) -> None:
        self._apply_key_delta(entry_id, frozenset(overlay_ref_keys(refs)))

    def _apply_key_delta(self, entry_id: str, new_keys: frozenset[str]) -> None:
        old_keys = self._entry_keys.get(entry_id, frozenset())
        for k in old_keys - new_keys:
            bucket = self._ref_index.get(k)
            if bucket is None:
                continue
            bucket.discard(entry_id)
            if not bucket:
                del self._ref_index[k]
        for k in new_keys - old_keys:
            self._ref_index.setdefault(k, set()).add(entry_id)
        if new_keys:
            self._entry_keys[entry_id] = new_keys
        else:
            self._entry_keys.pop(entry_id, None)
