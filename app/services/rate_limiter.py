"""
滑动窗口限流

按客户端地址记录最近一个窗口内的请求时间戳：
- Redis 可用时使用有序集合（多进程共享）
- 否则使用进程内的 deque
"""
import time
import uuid
import logging
from collections import deque
from typing import Callable, Deque, Dict, Optional

import redis

from app.config import settings
from app.utils.cache import CacheManager, cache_manager

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:

    def __init__(self, name: str, limit: int, window_seconds: float,
                 cache: Optional[CacheManager] = None, clock: Callable[[], float] = time.time):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._cache = cache
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def _redis_key(self, identifier: str) -> str:
        return f"filerocket:ratelimit:{self.name}:{identifier}"

    def _redis(self):
        return self._cache.redis_client if self._cache is not None else None

    def allow(self, identifier: str) -> bool:
        """记录一次请求；窗口内请求数超过上限时返回 False（被拒绝的请求不计数）"""
        now = self._clock()
        client = self._redis()
        if client is not None:
            try:
                return self._allow_redis(client, identifier, now)
            except redis.RedisError as e:
                logger.warning(f"Redis 限流失败，回退到内存计数: {e}")

        hits = self._prune(identifier, now)
        count = len(hits) if hits else 0
        if count >= self.limit:
            logger.warning(f"限流[{self.name}] 拒绝 {identifier}: {count}/{self.limit}")
            return False
        self._hits.setdefault(identifier, deque()).append(now)
        return True

    def _prune(self, identifier: str, now: float) -> Optional[Deque[float]]:
        """丢弃窗口外的时间戳，空记录直接移除"""
        hits = self._hits.get(identifier)
        if hits is None:
            return None
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()
        if not hits:
            del self._hits[identifier]
            return None
        return hits

    def cleanup(self) -> int:
        """清理所有已滑出窗口的内存记录，返回移除的客户端数（Redis 键由过期时间回收）"""
        now = self._clock()
        before = len(self._hits)
        for identifier in list(self._hits):
            self._prune(identifier, now)
        removed = before - len(self._hits)
        if removed:
            logger.debug(f"限流[{self.name}] 清理 {removed} 个过期记录")
        return removed

    def _allow_redis(self, client, identifier: str, now: float) -> bool:
        key = self._redis_key(identifier)
        member = f"{now}:{uuid.uuid4().hex}"
        pipe = client.pipeline()
        pipe.zremrangebyscore(key, 0, now - self.window_seconds)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, int(self.window_seconds) + 1)
        _, _, count, _ = pipe.execute()
        if count > self.limit:
            client.zrem(key, member)
            logger.warning(f"限流[{self.name}] 拒绝 {identifier}: {count - 1}/{self.limit}")
            return False
        return True

    def reset(self, identifier: Optional[str] = None):
        """清空某个客户端（或全部客户端）的计数"""
        client = self._redis()
        if client is not None:
            try:
                if identifier is None:
                    keys = list(client.scan_iter(match=self._redis_key("*")))
                    if keys:
                        client.delete(*keys)
                else:
                    client.delete(self._redis_key(identifier))
            except redis.RedisError as e:
                logger.warning(f"Redis 限流重置失败: {e}")

        if identifier is None:
            self._hits.clear()
        else:
            self._hits.pop(identifier, None)


# 创建会话 / 上传文件
create_limiter = SlidingWindowRateLimiter(
    "create", settings.CODE_CREATE_LIMIT, settings.CODE_CREATE_WINDOW_SECONDS, cache_manager
)
# 加入会话（尝试取件码）
join_limiter = SlidingWindowRateLimiter(
    "join", settings.CODE_ATTEMPT_LIMIT, settings.CODE_ATTEMPT_WINDOW_SECONDS, cache_manager
)
