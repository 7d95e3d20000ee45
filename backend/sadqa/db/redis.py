"""Redis client for caller session lookup"""
import json
import logging
from typing import Optional, Dict

import redis

from sadqa.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

# Session TTL (30 days), matches the auth service that writes the keys
SESSION_TTL = 30 * 24 * 60 * 60


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_session(session_id: str, user_id: str, role: str = "donor") -> None:
    """Store a caller session in Redis"""
    key = f"session:{session_id}"
    get_redis_client().setex(key, SESSION_TTL, json.dumps({"user_id": str(user_id), "role": role}))


def get_session(session_id: str) -> Optional[Dict[str, str]]:
    """Get {"user_id", "role"} for a session, or None when missing or unreadable"""
    key = f"session:{session_id}"
    raw = get_redis_client().get(key)
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Discarding malformed session payload for key {key}")
        return None
    if not isinstance(data, dict) or not data.get("user_id"):
        return None
    return {"user_id": str(data["user_id"]), "role": str(data.get("role") or "donor")}


def ping() -> bool:
    """Check the Redis connection"""
    return bool(get_redis_client().ping())
