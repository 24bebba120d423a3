"""
进度/速度聚合测试

- 每个会话 100ms 内最多一次更新
- 100% 立即发出且只发一次
- 速度按相邻两次已发出更新计算
"""

import sys
import logging
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from test_utils import *

from app.services.progress_service import ProgressAggregator

logger = logging.getLogger(__name__)


def _aggregator():
    updates = []
    aggregator = ProgressAggregator(throttle_seconds=0.1, clock=lambda: 0.0)
    aggregator.subscribe(updates.append)
    return aggregator, updates


def test_throttle_window():
    log_test_start("100ms 节流窗口")
    aggregator, updates = _aggregator()
    aggregator.start("A1B2", now=0.0)

    emitted = []
    # 每 10ms 上报一次，持续 1 秒
    for i in range(1, 100):
        now = i * 0.01
        if aggregator.report("A1B2", i, i * 1000, now=now) is not None:
            emitted.append(now)

    assert len(emitted) == len(updates)
    for earlier, later in zip(emitted, emitted[1:]):
        assert later - earlier >= 0.1 - 1e-9, (earlier, later)
    assert 8 <= len(emitted) <= 11
    log_success(f"99 次上报发出 {len(emitted)} 次更新")


def test_final_update_is_immediate_and_once():
    log_test_start("100% 更新立即发出且只发一次")
    aggregator, updates = _aggregator()
    aggregator.start("A1B2", now=0.0)

    assert aggregator.report("A1B2", 50, 500, now=0.05) is not None
    # 仍在窗口内，但 100% 不受节流
    final = aggregator.report("A1B2", 100, 1000, now=0.06)
    assert final is not None and final.progress == 100
    assert aggregator.report("A1B2", 100, 1000, now=0.5) is None
    assert aggregator.report("A1B2", 60, 1000, now=0.9) is None
    assert [u.progress for u in updates] == [50, 100]
    log_success("100% 只发出一次")


def test_speed_between_emitted_updates():
    log_test_start("速度基于已发出更新计算")
    aggregator, updates = _aggregator()
    aggregator.start("A1B2", now=10.0)

    first = aggregator.report("A1B2", 10, 1000, now=10.5)
    assert first.speed == 2000.0

    # 被节流的上报不改变速度基线
    assert aggregator.report("A1B2", 15, 1500, now=10.55) is None

    second = aggregator.report("A1B2", 30, 3000, now=11.5)
    assert second.speed == 2000.0
    assert second.to_dict()["bytesTransferred"] == 3000
    log_success("速度 = 字节差 / 时间差")


def test_sessions_are_independent():
    log_test_start("会话之间互不影响")
    aggregator, updates = _aggregator()
    aggregator.start("AAAA", now=0.0)
    aggregator.start("BBBB", now=0.0)

    assert aggregator.report("AAAA", 10, 10, now=0.01) is not None
    assert aggregator.report("BBBB", 10, 10, now=0.02) is not None
    assert aggregator.report("AAAA", 20, 20, now=0.03) is None
    assert [u.code for u in updates] == ["AAAA", "BBBB"]
    log_success("节流按会话独立计算")


def test_restart_resets_completion():
    log_test_start("重新开始传输后可以再次到达 100%")
    aggregator, updates = _aggregator()
    aggregator.start("A1B2", now=0.0)
    aggregator.report("A1B2", 100, 10, now=0.01)
    aggregator.start("A1B2", now=1.0)
    assert aggregator.report("A1B2", 100, 10, now=1.01) is not None
    log_success("start() 重置了完成标记")


def test_subscriber_errors_are_isolated():
    log_test_start("订阅者异常不影响其他订阅者")
    aggregator = ProgressAggregator(throttle_seconds=0.1)
    received = []

    def broken(update):
        raise RuntimeError("boom")

    aggregator.subscribe(broken)
    unsubscribe = aggregator.subscribe(received.append)
    aggregator.report("A1B2", 100, 1, now=1.0)
    assert len(received) == 1

    unsubscribe()
    aggregator.start("A1B2", now=2.0)
    aggregator.report("A1B2", 100, 1, now=2.5)
    assert len(received) == 1
    log_success("异常被隔离，取消订阅生效")


def main():
    return run_test_sections("进度聚合测试", [
        ("节流", [
            test_throttle_window,
            test_final_update_is_immediate_and_once,
            test_sessions_are_independent,
            test_restart_resets_completion,
        ]),
        ("速度与订阅", [
            test_speed_between_emitted_updates,
            test_subscriber_errors_are_isolated,
        ]),
    ])


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
