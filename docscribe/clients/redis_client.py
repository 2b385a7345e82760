import redis
import json
import logging
from typing import Optional, Any
from docscribe.config import config

logger = logging.getLogger(__name__)

_redis_client = None

SESSION_KEY_PREFIX = "session:"

def get_redis_client() -> Optional[redis.Redis]:
    """Get or create singleton Redis client"""
    global _redis_client

    if not config.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.Redis(
                host=config.REDIS_HOST,
                port=config.REDIS_PORT,
                password=config.REDIS_PASSWORD,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2
            )
            _redis_client.ping()
            logger.info("Connected to Redis at %s:%s", config.REDIS_HOST, config.REDIS_PORT)
        except Exception as e:
            logger.warning("Failed to connect to Redis: %s", e)
            _redis_client = None

    return _redis_client

def cache_get(key: str) -> Optional[Any]:
    """Get value from cache"""
    try:
        client = get_redis_client()
        if not client:
            return None

        value = client.get(key)
        if value:
            return json.loads(value)
        return None
    except Exception as e:
        logger.warning("Cache get error: %s", e)
        return None

def cache_set(key: str, value: Any, ttl: int = None) -> bool:
    """Set value in cache with optional TTL"""
    try:
        client = get_redis_client()
        if not client:
            return False

        if ttl is None:
            ttl = config.SESSION_TTL

        client.setex(key, ttl, json.dumps(value))
        return True
    except Exception as e:
        logger.warning("Cache set error: %s", e)
        return False

def cache_delete(key: str) -> bool:
    """Delete value from cache"""
    try:
        client = get_redis_client()
        if not client:
            return False

        client.delete(key)
        return True
    except Exception as e:
        logger.warning("Cache delete error: %s", e)
        return False

def save_session_snapshot(session_id: str, snapshot: dict) -> bool:
    """Publish the step/progress snapshot of a processing session"""
    return cache_set(f"{SESSION_KEY_PREFIX}{session_id}", snapshot)

def load_session_snapshot(session_id: str) -> Optional[dict]:
    """Read back the last published snapshot of a processing session"""
    return cache_get(f"{SESSION_KEY_PREFIX}{session_id}")

def drop_session_snapshot(session_id: str) -> bool:
    return cache_delete(f"{SESSION_KEY_PREFIX}{session_id}")
