"""Process-local cart storage.

Records are kept as JSON text so that anything that would not survive a real
key-value store fails here too. Expired records read back as missing.
"""

import json
import time

from storefront.integrations.storage_port import CartStorage, StorageError


class InMemoryCartStorage(CartStorage):
    def __init__(self) -> None:
        self._records: dict[str, tuple[str, float | None]] = {}
        self.should_fail: bool = False
        self.writes: list[str] = []

    def configure(self, should_fail: bool) -> None:
        self.should_fail = should_fail

    async def load(self, key: str) -> dict | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._records[key]
            return None
        return json.loads(payload)

    async def save(self, key: str, record: dict, ttl_seconds: int | None = None) -> None:
        if self.should_fail:
            raise StorageError(f"Write rejected for {key}")
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._records[key] = (json.dumps(record), expires_at)
        self.writes.append(key)

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._records)
