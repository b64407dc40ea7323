import certifi
from beanie import init_beanie
from pymongo import AsyncMongoClient

from visionstudio.core.config import get_settings
from visionstudio.core.logging import get_logger
from visionstudio.models.account import Account
from visionstudio.models.artifact import Artifact
from visionstudio.models.chat_message import ChatMessage
from visionstudio.models.chat_session import ChatSession
from visionstudio.models.failed_job import FailedJob
from visionstudio.models.usage_entry import UsageEntry

logger = get_logger(__name__)

DOCUMENT_MODELS = [
    Account,
    UsageEntry,
    Artifact,
    ChatSession,
    ChatMessage,
    FailedJob,
]

_client: AsyncMongoClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client() -> AsyncMongoClient:
    """Client shared by beanie and by the stores that open multi-document transactions."""
    if _client is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _client


async def init_db() -> None:
    global _client
    settings = get_settings()
    if settings.store_backend == "memory":
        logger.info("db_skipped", store_backend="memory")
        return
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    _client = AsyncMongoClient(settings.mongodb_uri, tz_aware=False, **kwargs)
    database = _client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    logger.info("db_ready", db=settings.mongodb_db_name)


async def close_db() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
