"""
滑动窗口限流、缓存与传输统计测试（内存实现）
"""

import sys
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from test_utils import *

from app.services.rate_limiter import SlidingWindowRateLimiter
from app.services.stats_service import StatsService
from app.utils.cache import CacheManager

logger = logging.getLogger(__name__)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_limit_within_window():
    log_test_start("窗口内超过上限被拒绝")
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter("t", 3, 60, clock=clock)
    assert [limiter.allow("1.2.3.4") for _ in range(4)] == [True, True, True, False]
    # 被拒绝的请求不计数，其他地址互不影响
    assert limiter.allow("5.6.7.8") is True
    log_success("第 4 次请求被拒绝")


def test_window_slides():
    log_test_start("窗口滑动后恢复")
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter("t", 2, 60, clock=clock)
    assert limiter.allow("ip")
    clock.now += 30
    assert limiter.allow("ip")
    assert not limiter.allow("ip")

    clock.now += 31  # 第一条记录滑出窗口
    assert limiter.allow("ip")
    assert not limiter.allow("ip")
    log_success("最早的记录滑出窗口后可以继续请求")


def test_reset():
    log_test_start("重置计数")
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter("t", 1, 60, clock=clock)
    assert limiter.allow("a") and limiter.allow("b")
    assert not limiter.allow("a")
    limiter.reset("a")
    assert limiter.allow("a")
    assert not limiter.allow("b")
    limiter.reset()
    assert limiter.allow("b")
    log_success("reset 生效")


def test_memory_cache_without_redis():
    log_test_start("未启用 Redis 时使用内存计数")
    cache = CacheManager(use_redis=False)
    assert cache.redis_client is None
    limiter = SlidingWindowRateLimiter("t", 1, 60, cache=cache)
    assert limiter.allow("ip")
    assert not limiter.allow("ip")
    log_success("回退到内存实现")


def test_stats_counters():
    log_test_start("传输统计计数")
    stats = StatsService(CacheManager(use_redis=False))
    assert stats.get_stats() == {"todayTransfers": 0, "totalTransfers": 0}
    stats.record_transfer()
    stats.record_transfer()
    assert stats.get_stats() == {"todayTransfers": 2, "totalTransfers": 2}
    stats.reset()
    assert stats.get_stats()["totalTransfers"] == 0
    log_success("今日与累计计数正确")


def test_memory_cache_entries():
    log_test_start("内存缓存读写与过期")
    cache = CacheManager(use_redis=False)
    assert cache.set("demo", "a", "1") is True
    assert cache.get("demo", "a") == "1"
    assert cache.delete("demo", "a") is True
    assert cache.get("demo", "a") is None
    assert cache.delete("demo", "a") is False

    cache.set("demo", "old", "x", expire_at=datetime.now(timezone.utc) - timedelta(seconds=1))
    assert cache.get("demo", "old") is None
    assert cache.incr("demo", "n", 5) == 5
    assert cache.incr("demo", "n") == 6
    assert cache.clear_prefix("demo") == 1
    log_success("过期条目读取时被移除")


def test_stale_entries_are_evicted():
    log_test_start("过期的客户端记录被移除")
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter("t", 1, 60, clock=clock)
    for i in range(1000):
        assert limiter.allow(f"10.0.{i // 256}.{i % 256}")
    assert len(limiter._hits) == 1000

    # 被拒绝的请求不新建记录
    assert not limiter.allow("10.0.0.0")
    assert len(limiter._hits) == 1000

    clock.now += 61
    assert limiter.cleanup() == 1000
    assert limiter._hits == {}

    # 访问时发现记录已过期也会移除
    assert limiter.allow("a")
    clock.now += 61
    assert limiter.allow("b")
    assert limiter.allow("a")
    assert sorted(limiter._hits) == ["a", "b"]
    clock.now += 61
    assert limiter.cleanup() == 2

    zero = SlidingWindowRateLimiter("zero", 0, 60, clock=clock)
    assert not zero.allow("x")
    assert zero._hits == {}
    log_success("内存记录不会无限增长")


def main():
    return run_test_sections("限流与统计测试", [
        ("滑动窗口", [
            test_limit_within_window,
            test_window_slides,
            test_reset,
            test_stale_entries_are_evicted,
            test_memory_cache_without_redis,
        ]),
        ("缓存与统计", [test_memory_cache_entries, test_stats_counters]),
    ])


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
