"""組織ごとの「有効プラン + 上限」キャッシュ

購読ストアを変更した処理は、呼び出し元に戻る前に必ず invalidate する。

読み込み側は DB を読む前に generation() を取得し、set() に渡す。
その間に invalidate が走っていれば set() は何もしない
(無効化より前に読んだ行で古いビューを書き戻さないため)。
"""
import json
import threading
import time
from typing import Optional

import redis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

CACHE_PREFIX = "plan_cache:"
GENERATION_PREFIX = "plan_cache_gen:"


class MemoryPlanCache:
    """プロセス内キャッシュ (TTL付き、スレッドセーフ)"""

    def __init__(self, ttl_seconds: int):
        self._ttl = ttl_seconds
        self._entries: dict[str, tuple[float, dict]] = {}
        # 無効化のたびに増える。組織ごとには持たない
        self._generation = 0
        self._lock = threading.Lock()

    def generation(self, organization_id: str) -> int:
        with self._lock:
            return self._generation

    def get(self, organization_id: str) -> Optional[dict]:
        with self._lock:
            entry = self._entries.get(organization_id)
            if entry is None:
                return None
            stored_at, data = entry
            if time.monotonic() - stored_at >= self._ttl:
                del self._entries[organization_id]
                return None
            return data

    def set(self, organization_id: str, data: dict, generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[organization_id] = (time.monotonic(), data)
            return True

    def invalidate(self, organization_id: str) -> None:
        with self._lock:
            self._generation += 1
            self._entries.pop(organization_id, None)
        logger.debug(f"プランキャッシュ無効化: org={organization_id}")

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()


class RedisPlanCache:
    """Redis共有キャッシュ (複数ワーカー構成用)"""

    def __init__(self, ttl_seconds: int, client: Optional[redis.Redis] = None):
        if client is None:
            from app.core.redis import get_cache_redis

            client = get_cache_redis()
        self._ttl = ttl_seconds
        self._redis = client

    def generation(self, organization_id: str) -> int:
        return int(self._redis.get(f"{GENERATION_PREFIX}{organization_id}") or 0)

    def get(self, organization_id: str) -> Optional[dict]:
        raw = self._redis.get(f"{CACHE_PREFIX}{organization_id}")
        return json.loads(raw) if raw else None

    def set(self, organization_id: str, data: dict, generation: Optional[int] = None) -> bool:
        key = f"{CACHE_PREFIX}{organization_id}"
        payload = json.dumps(data, default=str)
        if generation is None:
            self._redis.set(key, payload, ex=self._ttl)
            return True

        gen_key = f"{GENERATION_PREFIX}{organization_id}"
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(gen_key)
                if int(pipe.get(gen_key) or 0) != generation:
                    return False
                pipe.multi()
                pipe.set(key, payload, ex=self._ttl)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def invalidate(self, organization_id: str) -> None:
        with self._redis.pipeline() as pipe:
            pipe.incr(f"{GENERATION_PREFIX}{organization_id}")
            pipe.delete(f"{CACHE_PREFIX}{organization_id}")
            pipe.execute()
        logger.debug(f"プランキャッシュ無効化: org={organization_id}")

    def clear(self) -> None:
        cursor = 0
        while True:
            cursor, keys = self._redis.scan(cursor, match=f"{CACHE_PREFIX}*", count=100)
            if keys:
                self._redis.delete(*keys)
            if cursor == 0:
                break


def _build_cache():
    if settings.PLAN_CACHE_BACKEND == "redis":
        return RedisPlanCache(settings.PLAN_CACHE_TTL_SECONDS)
    return MemoryPlanCache(settings.PLAN_CACHE_TTL_SECONDS)


plan_cache = _build_cache()


def invalidate(organization_id: str) -> None:
    plan_cache.invalidate(organization_id)
