from functools import lru_cache
from typing import Any, List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]
_MAX_SIGNED_URL_TTL = 7 * 24 * 3600


def _parse_cors_origins(v: Any) -> List[str]:
    if v is None or v == "":
        return _DEFAULT_CORS.copy()
    if isinstance(v, list):
        return [x for x in v if isinstance(x, str) and x.strip()]
    s = str(v).strip()
    if s.startswith("["):
        import json
        try:
            out = json.loads(s)
        except ValueError:
            return _DEFAULT_CORS.copy()
        return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
    return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Persistence: "mongo" or "memory" (tests / degraded mode)
    store_backend: Literal["mongo", "memory"] = Field(default="mongo", alias="STORE_BACKEND")
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="visionstudio", alias="MONGODB_DB_NAME")

    # Redis (worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Gemini
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    research_model: str = Field(default="gemini-3-pro-preview", alias="RESEARCH_MODEL")
    image_model: str = Field(default="gemini-3-pro-image-preview", alias="IMAGE_MODEL")
    smart_image_model: str = Field(default="gemini-2.5-flash-image", alias="SMART_IMAGE_MODEL")
    chat_light_model: str = Field(default="gemini-2.5-flash", alias="CHAT_LIGHT_MODEL")
    chat_pro_model: str = Field(default="gemini-3-pro-preview", alias="CHAT_PRO_MODEL")
    title_model: str = Field(default="gemini-2.5-flash", alias="TITLE_MODEL")
    stage_timeout_seconds: float = Field(default=120.0, alias="STAGE_TIMEOUT_SECONDS")

    # Storage
    storage_backend: Literal["local", "gcs"] = Field(default="local", alias="STORAGE_BACKEND")
    storage_local_path: str = Field(default="./uploads", alias="STORAGE_LOCAL_PATH")
    gcs_bucket_name: str | None = Field(default=None, alias="GCS_BUCKET_NAME")
    fresh_url_ttl_seconds: int = Field(default=3600, alias="FRESH_URL_TTL_SECONDS")
    history_url_ttl_seconds: int = Field(default=_MAX_SIGNED_URL_TTL, alias="HISTORY_URL_TTL_SECONDS")

    # Ledger policy
    balance_policy: Literal["allow_negative", "reject"] = Field(default="allow_negative", alias="BALANCE_POLICY")
    adjustment_logging: Literal["both", "credits_only"] = Field(default="both", alias="ADJUSTMENT_LOGGING")
    initial_token_grant: int = Field(default=100000, alias="INITIAL_TOKEN_GRANT")
    reconcile_grace_seconds: int = Field(default=600, alias="RECONCILE_GRACE_SECONDS")

    # History
    history_page_size: int = Field(default=50, alias="HISTORY_PAGE_SIZE")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @field_validator("fresh_url_ttl_seconds", "history_url_ttl_seconds")
    @classmethod
    def clamp_ttl(cls, v: int) -> int:
        # V4 signed URLs cannot outlive seven days
        return max(60, min(v, _MAX_SIGNED_URL_TTL))

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))


@lru_cache
def get_settings() -> Settings:
    return Settings()
