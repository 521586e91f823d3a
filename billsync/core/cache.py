import json
import logging
from typing import Any, Optional

import redis

from billsync.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_client() -> Optional[redis.Redis]:
    global _client
    if _client is not None:
        return _client
    if not settings.REDIS_URL:
        return None
    _client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True, socket_timeout=2)
    return _client


def cache_get(key: str) -> Optional[Any]:
    client = get_client()
    if client is None:
        return None
    try:
        data = client.get(key)
    except redis.RedisError as e:
        # The catalog is rebuilt from the database on a miss
        logger.warning(f"Cache read failed for {key}: {e}")
        return None
    if data is None:
        return None
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        return None


def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> None:
    client = get_client()
    if client is None:
        return
    payload = json.dumps(value, ensure_ascii=False, default=str)
    try:
        client.setex(key, ttl or settings.CACHE_TTL_SECONDS, payload)
    except redis.RedisError as e:
        logger.warning(f"Cache write failed for {key}: {e}")
