from __future__ import annotations

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import REDIS_URL

redis_conn = Redis.from_url(REDIS_URL)


async def check_redis_connection() -> bool:
    try:
        return bool(await redis_conn.ping())
    except (RedisError, OSError):
        return False
