import json
import redis
import structlog
from typing import Optional, Any
from ..config import settings

logger = structlog.get_logger()

_redis_client: Optional[redis.Redis] = None

def get_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True
        )
    return _redis_client

# Course structure is shared by every learner; per-learner flags are never cached.
def courses_key(limit: int, offset: int) -> str:
    return f"courses:list:{limit}:{offset}"

def chapters_key(course_id: str) -> str:
    return f"course:{course_id}:chapters"

def contents_key(course_id: str, chapter_id: str) -> str:
    return f"course:{course_id}:chapter:{chapter_id}:contents"

def get_cache(key: str) -> Optional[Any]:
    """Cached JSON value, or None on a miss or when Redis is down."""
    try:
        value = get_redis().get(key)
        if value:
            return json.loads(value)
    except Exception as e:
        logger.warning("cache_get_failed", key=key, error=str(e))
    return None

def set_cache(key: str, value: Any, ttl: int = None) -> bool:
    try:
        get_redis().setex(key, ttl or settings.CACHE_TTL, json.dumps(value, ensure_ascii=False))
        return True
    except Exception as e:
        logger.warning("cache_set_failed", key=key, error=str(e))
        return False

def delete_cache_pattern(pattern: str) -> int:
    try:
        client = get_redis()
        keys = client.keys(pattern)
        if keys:
            return client.delete(*keys)
        return 0
    except Exception as e:
        logger.warning("cache_delete_failed", pattern=pattern, error=str(e))
        return 0

def invalidate_course(course_id: str) -> int:
    """Drop every cached listing under one course, plus the course list."""
    return delete_cache_pattern(f"course:{course_id}:*") + delete_cache_pattern("courses:list:*")
