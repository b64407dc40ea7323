import asyncio
from pathlib import Path

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import StorageFailure
from visionstudio.core.logging import get_logger
from visionstudio.core.security import sign_asset_key
from visionstudio.storage.base import StorageBackend, durable_key

logger = get_logger(__name__)


class LocalStorage(StorageBackend):
    """Filesystem store; read URLs point at the signed `/v1/assets/{token}` route."""

    def __init__(self, root: str | Path | None = None, public_base_url: str | None = None) -> None:
        settings = get_settings()
        self.root = Path(root or settings.storage_local_path)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise FileNotFoundError(key)
        return path

    async def put(self, account_id: str, local_key: str, body: bytes, content_type: str | None = None) -> str:
        key = durable_key(account_id, local_key)
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, body)
        except OSError as exc:
            logger.warning("storage_put_failed", key=key, error=str(exc))
            raise StorageFailure() from exc
        return key

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageFailure() from exc

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        return f"{self.public_base_url}/v1/assets/{sign_asset_key(key, ttl_seconds)}"
