import hashlib
import time
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from visionstudio.core.config import get_settings

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def _serializer(salt: str) -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt=salt,
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def get_session_serializer() -> URLSafeTimedSerializer:
    return _serializer("visionstudio-session")


def create_session_token(payload: dict[str, Any]) -> str:
    return get_session_serializer().dumps(payload)


def load_session_token(token: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(token, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def sign_asset_key(key: str, ttl_seconds: int, now: float | None = None) -> str:
    """Return an opaque read token for a storage key, valid for ttl_seconds from now."""
    issued = time.time() if now is None else now
    return _serializer("visionstudio-asset").dumps({"k": key, "exp": issued + ttl_seconds})


def verify_asset_token(token: str, now: float | None = None) -> str | None:
    """Return the storage key if the token is authentic and unexpired."""
    try:
        payload = _serializer("visionstudio-asset").loads(token)
    except BadSignature:
        return None
    # expiry is carried in the payload at full precision; the signer stamp is whole seconds
    expires_at = payload.get("exp") if isinstance(payload, dict) else None
    if not isinstance(expires_at, (int, float)):
        return None
    current = time.time() if now is None else now
    if current > expires_at:
        return None
    return payload.get("k")
