from abc import ABC, abstractmethod
from functools import lru_cache

from visionstudio.core.config import get_settings


def durable_key(account_id: str, local_key: str) -> str:
    """Storage keys are always namespaced under the owning account."""
    local_key = local_key.lstrip("/")
    if not local_key or ".." in local_key.split("/"):
        raise ValueError(f"Invalid storage key: {local_key!r}")
    return f"accounts/{account_id}/{local_key}"


class StorageBackend(ABC):
    @abstractmethod
    async def put(self, account_id: str, local_key: str, body: bytes, content_type: str | None = None) -> str:
        """Store bytes under the account's namespace; return the durable key. StorageFailure if unreachable."""
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Retrieve file bytes; FileNotFoundError if missing."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete file; missing keys are ignored."""
        ...

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """Time-limited read URL. Pure: nothing is written."""
        ...


@lru_cache
def get_storage() -> StorageBackend:
    settings = get_settings()
    if settings.storage_backend == "gcs":
        from visionstudio.storage.gcs import GCSStorage
        return GCSStorage()
    from visionstudio.storage.local import LocalStorage
    return LocalStorage()
