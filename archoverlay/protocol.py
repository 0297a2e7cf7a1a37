"""
Protocol definitions for storage backends used by the overlay layer.

Persistence only needs a minimal string key/value capability, so it runs
the same against an in-memory dict (tests), SQLite (CLI) or any other
native store.
"""

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class KeyValueStoreProtocol(Protocol):
    """
    String key/value storage.

    Implemented by:
    - MemoryKeyValueStore (dict, tests and embedding)
    - SqliteKeyValueStore (local file)

    Implementations may raise on write (quota, disk, locking); callers in
    the persistence layer catch and ignore those failures.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...
