"""
Persistence of overlay entries in a key/value store.

Entries are written as a versioned JSON envelope under a key derived from
the model signature::

    overlay:v2:<signature> -> {"v": 2, "signature": ..., "savedAt": ...,
                               "schemaVersion": 1, "entries": [...]}

Envelopes found under the legacy ``overlay:v1:`` key are migrated forward
on read. Storage failures never propagate: the in-memory store stays
authoritative and the data simply may not survive a reload.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Optional

from .protocol import KeyValueStoreProtocol
from .store import OverlayStore
from .types import OverlayStoreEntry, utc_now

logger = logging.getLogger(__name__)

OVERLAY_SCHEMA_VERSION = 1
ENVELOPE_VERSION = 2

STORAGE_PREFIX_V1 = "overlay:v1:"
STORAGE_PREFIX_V2 = "overlay:v2:"
EXPORT_MARKER_PREFIX = "overlayExportMarker:"

# Failures a backend may raise on read/write; all are swallowed here
_STORAGE_ERRORS = (OSError, sqlite3.Error, ValueError, TypeError)


def storage_key(signature: str) -> str:
    return f"{STORAGE_PREFIX_V2}{signature}"


def legacy_storage_key(signature: str) -> str:
    return f"{STORAGE_PREFIX_V1}{signature}"


def export_marker_key(signature: str) -> str:
    return f"{EXPORT_MARKER_PREFIX}{signature}"


def _safe_get(kv: KeyValueStoreProtocol, key: str) -> Optional[str]:
    try:
        return kv.get(key)
    except _STORAGE_ERRORS as e:
        logger.warning("Overlay storage read failed for %s: %s", key, e)
        return None


def _safe_remove(kv: KeyValueStoreProtocol, key: str) -> None:
    try:
        kv.remove(key)
    except _STORAGE_ERRORS as e:
        logger.warning("Overlay storage remove failed for %s: %s", key, e)


def _safe_parse(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return None


@dataclass
class Envelope:
    v: int
    signature: str
    saved_at: str
    schema_version: int
    entries: list


def _coerce_envelope(parsed, signature: str) -> Optional[Envelope]:
    if not isinstance(parsed, dict):
        return None
    if parsed.get("signature") != signature:
        return None
    entries = parsed.get("entries")
    if not isinstance(entries, list):
        return None
    saved_at = parsed.get("savedAt") if isinstance(parsed.get("savedAt"), str) else ""

    v = parsed.get("v")
    if v == 2:
        schema_version = parsed.get("schemaVersion")
        if not isinstance(schema_version, int) or isinstance(schema_version, bool):
            schema_version = 1
        return Envelope(2, signature, saved_at, schema_version, entries)
    if v == 1:
        return Envelope(1, signature, saved_at, 1, entries)
    return None


def _load_envelope(kv: KeyValueStoreProtocol, signature: str) -> Optional[Envelope]:
    """Read the current envelope, falling back to (and migrating) the legacy one."""
    for key in (storage_key(signature), legacy_storage_key(signature)):
        raw = _safe_get(kv, key)
        if not raw:
            continue
        env = _coerce_envelope(_safe_parse(raw), signature)
        if env is None:
            continue
        if env.v == 1:
            logger.info("Migrating overlay envelope v1 -> v2 for %s (%d entries)", signature, len(env.entries))
            if _write_envelope(kv, signature, env.entries):
                # Keep the legacy key if the rewrite failed
                _safe_remove(kv, key)
        return env
    return None


def _write_envelope(kv: KeyValueStoreProtocol, signature: str, entries: list) -> bool:
    envelope = {
        "v": ENVELOPE_VERSION,
        "signature": signature,
        "savedAt": utc_now(),
        "schemaVersion": OVERLAY_SCHEMA_VERSION,
        "entries": entries,
    }
    try:
        kv.set(storage_key(signature), json.dumps(envelope, ensure_ascii=False))
    except _STORAGE_ERRORS as e:
        logger.warning("Overlay persistence write failed for %s: %s", signature, e)
        return False
    return True


def _entry_from_persisted(e) -> Optional[OverlayStoreEntry]:
    if not isinstance(e, dict):
        return None
    entry_id = e.get("entryId")
    if not isinstance(entry_id, str) or not entry_id:
        return None
    if not isinstance(e.get("target"), dict) or not isinstance(e.get("tags"), dict):
        return None
    if not isinstance(e["target"].get("externalRefs", []), list):
        return None
    return OverlayStoreEntry.from_dict(e)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_persisted_entries(kv: KeyValueStoreProtocol, signature: str) -> Optional[list[OverlayStoreEntry]]:
    """
    Load persisted entries for a model signature.

    Returns None when nothing usable is stored (missing, malformed JSON,
    signature mismatch, missing fields). Individual malformed entries are
    skipped.
    """
    env = _load_envelope(kv, signature)
    if env is None:
        return None
    out = []
    for e in env.entries:
        entry = _entry_from_persisted(e)
        if entry is not None:
            out.append(entry)
    return out


def load_persisted_meta(kv: KeyValueStoreProtocol, signature: str) -> Optional[dict]:
    """Envelope metadata (saved_at, schema_version, entry_count) for status displays."""
    env = _load_envelope(kv, signature)
    if env is None:
        return None
    return {
        "signature": signature,
        "saved_at": env.saved_at,
        "schema_version": env.schema_version,
        "entry_count": len(env.entries),
    }


def persist_entries(kv: KeyValueStoreProtocol, signature: str, entries: list[OverlayStoreEntry]) -> bool:
    """Write entries under the current envelope version. Returns False on failure."""
    return _write_envelope(kv, signature, [e.to_dict() for e in entries])


def clear_persisted(kv: KeyValueStoreProtocol, signature: str) -> None:
    _safe_remove(kv, storage_key(signature))
    _safe_remove(kv, legacy_storage_key(signature))


# ---------------------------------------------------------------------------
# Export marker
# ---------------------------------------------------------------------------


def set_export_marker(kv: KeyValueStoreProtocol, signature: str, version: int) -> None:
    """Record that the store was exported at ``version``."""
    marker = {"exportedAt": utc_now(), "version": version}
    try:
        kv.set(export_marker_key(signature), json.dumps(marker))
    except _STORAGE_ERRORS as e:
        logger.warning("Overlay export marker write failed for %s: %s", signature, e)


def load_export_marker(kv: KeyValueStoreProtocol, signature: str) -> Optional[dict]:
    raw = _safe_get(kv, export_marker_key(signature))
    if not raw:
        return None
    parsed = _safe_parse(raw)
    if not isinstance(parsed, dict):
        return None
    version = parsed.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        return None
    exported_at = parsed.get("exportedAt")
    return {"exported_at": exported_at if isinstance(exported_at, str) else "", "version": version}


def clear_export_marker(kv: KeyValueStoreProtocol, signature: str) -> None:
    _safe_remove(kv, export_marker_key(signature))


def has_unexported_changes(kv: KeyValueStoreProtocol, signature: str, store: OverlayStore) -> bool:
    """True when a non-empty store changed since its last recorded export."""
    if len(store) == 0:
        return False
    marker = load_export_marker(kv, signature)
    if marker is None:
        return True
    return marker["version"] != store.get_version()


def persisted_since_export(kv: KeyValueStoreProtocol, signature: str) -> bool:
    """
    True when the stored envelope was saved after the last export.

    Store versions restart on every restore, so separate processes sharing
    one KV store compare timestamps instead.
    """
    meta = load_persisted_meta(kv, signature)
    if meta is None or meta["entry_count"] == 0:
        return False
    marker = load_export_marker(kv, signature)
    if marker is None:
        return True
    return meta["saved_at"] > marker["exported_at"]


# ---------------------------------------------------------------------------
# Debounced binding between a store and its storage
# ---------------------------------------------------------------------------


class OverlayPersistenceBinding:
    """
    Keeps a KV store in sync with an ``OverlayStore`` for one model signature.

    Store changes schedule a write after ``debounce_seconds`` of quiet, so a
    burst of mutations produces one write. With ``debounce_seconds <= 0``
    every change is written synchronously. Writes are fire-and-forget.
    """

    def __init__(
        self,
        store: OverlayStore,
        kv: KeyValueStoreProtocol,
        signature: str,
        *,
        debounce_seconds: float = 0.5,
    ):
        self._store = store
        self._kv = kv
        self._signature = signature
        self._debounce = debounce_seconds
        self._lock = threading.Lock()
        # Taken before _lock, never while holding it
        self._write_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._dirty = False
        self._suspended = False
        self.write_count = 0
        self._unsubscribe = store.subscribe(self._on_change)

    @property
    def signature(self) -> str:
        return self._signature

    def restore(self) -> int:
        """Hydrate the store from storage for the current signature. Returns entry count."""
        entries = load_persisted_entries(self._kv, self._signature) or []
        self._suspended = True
        try:
            self._store.hydrate(entries)
        finally:
            self._suspended = False
        logger.info("Restored %d overlay entries for %s", len(entries), self._signature)
        return len(entries)

    def switch_model(self, signature: str) -> int:
        """Flush pending writes, then clear and rehydrate for another model."""
        self.flush()
        with self._write_lock:
            self._signature = signature
            return self.restore()

    def _on_change(self) -> None:
        if self._suspended:
            return
        if self._debounce <= 0:
            self._write()
            return
        with self._lock:
            self._dirty = True
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Write now if a debounced write is pending.

        Waits for a write already in progress, so on return storage holds
        the latest entries.
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        with self._write_lock:
            with self._lock:
                dirty = self._dirty
                self._dirty = False
            if dirty:
                self._persist()

    def _write(self) -> None:
        with self._write_lock:
            self._persist()

    def _persist(self) -> None:
        persist_entries(self._kv, self._signature, self._store.list_entries())
        self.write_count += 1

    def close(self) -> None:
        """Flush and stop listening to the store."""
        self.flush()
        self._unsubscribe()
