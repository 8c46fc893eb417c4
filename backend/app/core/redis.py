"""Redis 接続

- 非同期プール: セッション参照 (routers.deps) とヘルスチェック
- 同期プール: PLAN_CACHE_BACKEND=redis のときだけ生成 (プランキャッシュ)
"""
from typing import Optional

import redis as sync_redis
import redis.asyncio as aioredis

from app.core.config import settings

session_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI依存関数: セッション参照用クライアント"""
    return aioredis.Redis(connection_pool=session_pool)


_cache_pool: Optional[sync_redis.ConnectionPool] = None


def get_cache_redis() -> sync_redis.Redis:
    """プランキャッシュ用の同期クライアント (プールは初回呼び出しで生成)"""
    global _cache_pool
    if _cache_pool is None:
        _cache_pool = sync_redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=10,
            decode_responses=True,
        )
    return sync_redis.Redis(connection_pool=_cache_pool)


async def check_redis_connection() -> bool:
    """セッションストアへの疎通確認"""
    try:
        r = await get_redis()
        await r.ping()
        return True
    except sync_redis.RedisError:
        return False
    except OSError:
        return False
