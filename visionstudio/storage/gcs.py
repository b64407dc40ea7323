import asyncio
from datetime import timedelta

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from visionstudio.core.config import get_settings
from visionstudio.core.exceptions import StorageFailure
from visionstudio.core.logging import get_logger
from visionstudio.storage.base import StorageBackend, durable_key

logger = get_logger(__name__)

MAX_SIGNED_URL_TTL = 7 * 24 * 3600


class GCSStorage(StorageBackend):
    def __init__(self) -> None:
        settings = get_settings()
        self.bucket_name = settings.gcs_bucket_name or "visionstudio-assets"
        self._client = storage.Client()
        self._bucket = self._client.bucket(self.bucket_name)

    async def put(self, account_id: str, local_key: str, body: bytes, content_type: str | None = None) -> str:
        key = durable_key(account_id, local_key)
        blob = self._bucket.blob(key)
        try:
            await asyncio.to_thread(
                blob.upload_from_string, body, content_type=content_type or "application/octet-stream"
            )
        except gcs_exceptions.GoogleAPIError as exc:
            logger.warning("storage_put_failed", key=key, error=str(exc))
            raise StorageFailure() from exc
        return key

    async def get(self, key: str) -> bytes:
        blob = self._bucket.blob(key)
        try:
            return await asyncio.to_thread(blob.download_as_bytes)
        except gcs_exceptions.NotFound as exc:
            raise FileNotFoundError(key) from exc
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageFailure() from exc

    async def delete(self, key: str) -> None:
        blob = self._bucket.blob(key)
        try:
            await asyncio.to_thread(blob.delete)
        except gcs_exceptions.NotFound:
            return
        except gcs_exceptions.GoogleAPIError as exc:
            raise StorageFailure() from exc

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        ttl = max(1, min(int(ttl_seconds), MAX_SIGNED_URL_TTL))
        return self._bucket.blob(key).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl),
            method="GET",
        )
