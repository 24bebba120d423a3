"""
缓存工具模块
支持 Redis 和内存字典两种缓存方案
优先使用 Redis，如果 Redis 不可用则回退到内存字典

用于传输统计计数和限流窗口，会话本身只保存在进程内存中
"""

from datetime import datetime, timezone
from typing import Any, Optional, Dict
import logging

import redis

from app.config import settings

logger = logging.getLogger(__name__)


def ensure_aware_datetime(dt: datetime) -> datetime:
    """确保 datetime 是 offset-aware 的（UTC）"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class CacheManager:
    """
    缓存管理器
    优先使用 Redis，如果 Redis 不可用则回退到内存字典
    """

    def __init__(self, use_redis: Optional[bool] = None):
        self._redis_client = None
        self._use_redis = False
        self._fallback_cache: Dict[str, Dict[str, dict]] = {}  # 回退缓存（内存字典）

        enabled = settings.REDIS_ENABLED if use_redis is None else use_redis
        if enabled:
            try:
                self._redis_client = redis.Redis(
                    host=settings.REDIS_HOST,
                    port=settings.REDIS_PORT,
                    db=settings.REDIS_DB,
                    password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2
                )
                # 测试连接
                self._redis_client.ping()
                self._use_redis = True
                logger.info("✓ Redis 缓存已启用")
            except redis.RedisError as e:
                logger.warning(f"Redis 连接失败，使用内存字典缓存: {e}")
                self._redis_client = None
                self._use_redis = False
        else:
            logger.info("Redis 未启用，使用内存字典缓存")

    @property
    def redis_client(self):
        """可用时返回 Redis 客户端，否则返回 None（限流器据此选择实现）"""
        return self._redis_client if self._use_redis else None

    def _get_key(self, prefix: str, key: str) -> str:
        """生成 Redis 键名"""
        return f"filerocket:{prefix}:{key}"

    def _disable_redis(self, action: str, e: Exception):
        logger.warning(f"Redis {action}失败，回退到内存字典: {e}")
        self._use_redis = False

    def _live_entry(self, prefix: str, key: str) -> Optional[dict]:
        """取内存条目，已过期的顺便删除"""
        entries = self._fallback_cache.get(prefix)
        if not entries or key not in entries:
            return None
        entry = entries[key]
        expire_at = entry.get('expire_at')
        if expire_at and datetime.now(timezone.utc) > expire_at:
            del entries[key]
            return None
        return entry

    def set(self, prefix: str, key: str, value: Any, expire_at: Optional[datetime] = None) -> bool:
        """
        设置缓存值

        参数:
        - prefix: 缓存前缀（如 'stats'）
        - key: 缓存键
        - value: 缓存值（字符串或数字）
        - expire_at: 过期时间（绝对时间）
        """
        if expire_at:
            expire_at = ensure_aware_datetime(expire_at)

        if self._use_redis and self._redis_client:
            cache_key = self._get_key(prefix, key)
            try:
                if expire_at:
                    ttl = int((expire_at - datetime.now(timezone.utc)).total_seconds())
                    if ttl <= 0:
                        return False
                    self._redis_client.setex(cache_key, ttl, value)
                else:
                    self._redis_client.set(cache_key, value)
                return True
            except redis.RedisError as e:
                self._disable_redis("设置", e)

        self._fallback_cache.setdefault(prefix, {})[key] = {
            'value': value,
            'expire_at': expire_at
        }
        return True

    def get(self, prefix: str, key: str) -> Optional[Any]:
        """获取缓存值，不存在或已过期时返回 None"""
        if self._use_redis and self._redis_client:
            try:
                return self._redis_client.get(self._get_key(prefix, key))
            except redis.RedisError as e:
                self._disable_redis("获取", e)

        entry = self._live_entry(prefix, key)
        return entry['value'] if entry else None

    def incr(self, prefix: str, key: str, amount: int = 1, expire_at: Optional[datetime] = None) -> int:
        """
        计数器自增，返回自增后的值

        expire_at 只在计数器首次创建时生效（按日计数用）
        """
        if expire_at:
            expire_at = ensure_aware_datetime(expire_at)

        if self._use_redis and self._redis_client:
            cache_key = self._get_key(prefix, key)
            try:
                value = self._redis_client.incrby(cache_key, amount)
                if expire_at and value == amount:
                    self._redis_client.expireat(cache_key, expire_at)
                return int(value)
            except redis.RedisError as e:
                self._disable_redis("自增", e)

        entry = self._live_entry(prefix, key)
        if entry is None:
            entry = {'value': 0, 'expire_at': expire_at}
            self._fallback_cache.setdefault(prefix, {})[key] = entry
        entry['value'] = int(entry['value']) + amount
        return entry['value']

    def delete(self, prefix: str, key: str) -> bool:
        """删除缓存值"""
        if self._use_redis and self._redis_client:
            try:
                self._redis_client.delete(self._get_key(prefix, key))
                return True
            except redis.RedisError as e:
                self._disable_redis("删除", e)

        if prefix in self._fallback_cache and key in self._fallback_cache[prefix]:
            del self._fallback_cache[prefix][key]
            return True
        return False

    def clear_prefix(self, prefix: str) -> int:
        """
        清除指定前缀的所有缓存

        返回:
        - 删除的键数量
        """
        count = 0

        if self._use_redis and self._redis_client:
            try:
                keys = list(self._redis_client.scan_iter(match=self._get_key(prefix, "*")))
                if keys:
                    count = self._redis_client.delete(*keys)
                return count
            except redis.RedisError as e:
                self._disable_redis("清除", e)

        if prefix in self._fallback_cache:
            count = len(self._fallback_cache[prefix])
            del self._fallback_cache[prefix]
        return count


# 创建全局缓存管理器实例
cache_manager = CacheManager()
