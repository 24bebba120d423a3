"""
传输统计：今日完成数 / 累计完成数

计数保存在缓存层（Redis 启用时跨进程共享，否则在内存中），今日计数按日期分键。
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.utils.cache import CacheManager, cache_manager

STATS_PREFIX = "stats"


class StatsService:

    def __init__(self, cache: CacheManager):
        self.cache = cache

    @staticmethod
    def _today(now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return now.strftime("%Y-%m-%d")

    def record_transfer(self, now: Optional[datetime] = None):
        """完成一次传输（每个会话只调用一次）"""
        now = now or datetime.now(timezone.utc)
        # 今日计数保留到次日结束，避免时区边界上提前消失
        expire_at = (now + timedelta(days=2)).replace(hour=0, minute=0, second=0, microsecond=0)
        self.cache.incr(STATS_PREFIX, f"today:{self._today(now)}", expire_at=expire_at)
        self.cache.incr(STATS_PREFIX, "total")

    def get_stats(self, now: Optional[datetime] = None) -> dict:
        today = self.cache.get(STATS_PREFIX, f"today:{self._today(now)}")
        total = self.cache.get(STATS_PREFIX, "total")
        return {
            "todayTransfers": int(today or 0),
            "totalTransfers": int(total or 0),
        }

    def reset(self):
        self.cache.clear_prefix(STATS_PREFIX)


stats_service = StatsService(cache_manager)
