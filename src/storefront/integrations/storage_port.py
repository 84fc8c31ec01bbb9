"""Cart storage port — one JSON record per key."""

from abc import ABC, abstractmethod


class StorageError(Exception):
    pass


class CartStorage(ABC):
    @abstractmethod
    async def load(self, key: str) -> dict | None: ...

    @abstractmethod
    async def save(self, key: str, record: dict, ttl_seconds: int | None = None) -> None:
        """Write the record. Raises StorageError when the write did not happen."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...
