"""Role-based feature gating, evaluated before any gateway call."""

ROLES = ("user", "vip", "admin")

FEATURE_ROLES: dict[str, frozenset[str]] = {
    "visual_engine": frozenset(ROLES),
    "smart_image": frozenset(ROLES),
    "chat_light": frozenset(ROLES),
    "chat_pro": frozenset({"vip", "admin"}),
    "admin": frozenset({"admin"}),
}

_MAX_ATTACHMENTS = {"user": 1, "vip": 3, "admin": 3}


def is_allowed(role: str, feature: str) -> bool:
    """Pure capability check: unknown roles and unknown features are denied."""
    allowed = FEATURE_ROLES.get(feature)
    return bool(allowed) and role in allowed


def max_attachments(role: str) -> int:
    return _MAX_ATTACHMENTS.get(role, 0)
