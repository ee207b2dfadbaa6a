"""Change tracking for the sync engine.

``ChangeTracker`` remembers, per logical unit, the content hash that was
last applied successfully. Keys are composed as ``{category}:{host}``,
e.g. ``config:pihole-2.lan`` or ``snapshot:pihole-main.lan``.

Key design choices:

* **In-memory only** -- state lives for the process run; after a restart
  the first cycle applies everything once.
* **Canonical hashing** -- ``hash_value()`` serialises JSON with sorted
  keys and compact separators before SHA-256, so equal documents hash
  equal regardless of key order. The first 8 bytes form the 64-bit hash.
* **Update after success only** -- callers update a key only after the
  apply succeeded, so a failed apply is retried next cycle.
"""

from __future__ import annotations

import hashlib
import json
import threading
from typing import Any

from ..errors import SerializationError


def hash_bytes(data: bytes) -> int:
    """64-bit content hash of raw bytes."""
    return int.from_bytes(hashlib.sha256(data).digest()[:8], "big")


def hash_value(value: Any) -> int:
    """64-bit content hash of a JSON-serialisable value.

    Pydantic models are dumped (by alias) first.

    Raises:
        SerializationError: If *value* is not JSON-serialisable.
    """
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True)
    elif isinstance(value, (list, tuple)):
        value = [
            v.model_dump(mode="json", by_alias=True)
            if hasattr(v, "model_dump")
            else v
            for v in value
        ]
    try:
        encoded = json.dumps(
            value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot hash value: {e}") from e
    return hash_bytes(encoded.encode("utf-8"))


class ChangeTracker:
    """Thread-safe map of key to last successfully applied hash."""

    def __init__(self) -> None:
        self._hashes: dict[str, int] = {}
        self._lock = threading.Lock()

    def has_changed(self, key: str, current_hash: int) -> bool:
        """True if *key* was never recorded or its hash differs."""
        with self._lock:
            previous = self._hashes.get(key)
        return previous is None or previous != current_hash

    def update(self, key: str, current_hash: int) -> None:
        with self._lock:
            self._hashes[key] = current_hash
