"""
进度/速度聚合

中转模式的分块进度和 P2P 模式接收端上报的进度都经过这里节流：
每个会话每 100ms 最多发出一次进度更新，100% 的更新总是立即发出且只发一次。
速度按相邻两次“已发出”更新之间的字节差 / 时间差计算，避免小分块造成的瞬时尖峰。

本模块不直接推送消息，订阅者通过回调接收 ProgressUpdate。
"""
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    code: str
    progress: float
    bytes_transferred: int
    speed: float

    def to_dict(self) -> dict:
        return {
            "pickupCode": self.code,
            "progress": round(self.progress, 2),
            "bytesTransferred": self.bytes_transferred,
            "speed": round(self.speed, 2),
        }


@dataclass
class _Tracker:
    base_time: float
    base_bytes: int = 0
    last_emit_at: Optional[float] = None
    completed: bool = False


class ProgressAggregator:

    def __init__(self, throttle_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.throttle_seconds = settings.PROGRESS_THROTTLE_SECONDS if throttle_seconds is None else throttle_seconds
        self._clock = clock
        self._trackers: Dict[str, _Tracker] = {}
        self._subscribers: List[Callable[[ProgressUpdate], None]] = []

    def subscribe(self, callback: Callable[[ProgressUpdate], None]) -> Callable[[], None]:
        """注册订阅者，返回取消订阅函数"""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def start(self, code: str, now: Optional[float] = None):
        """开始（或重新开始）一次传输，重置速度基线"""
        now = self._clock() if now is None else now
        self._trackers[code] = _Tracker(base_time=now)

    def discard(self, code: str):
        self._trackers.pop(code, None)

    def report(self, code: str, percent: float, bytes_transferred: int,
               now: Optional[float] = None) -> Optional[ProgressUpdate]:
        """
        上报一次进度

        返回：
        - 实际发出的 ProgressUpdate；被节流吞掉时返回 None
        """
        now = self._clock() if now is None else now
        tracker = self._trackers.get(code)
        if tracker is None:
            tracker = _Tracker(base_time=now)
            self._trackers[code] = tracker

        percent = max(0.0, min(100.0, float(percent)))
        if tracker.completed:
            return None

        is_final = percent >= 100.0
        if not is_final and tracker.last_emit_at is not None \
                and now - tracker.last_emit_at < self.throttle_seconds:
            return None

        elapsed = now - tracker.base_time
        delta = bytes_transferred - tracker.base_bytes
        speed = delta / elapsed if elapsed > 0 and delta > 0 else 0.0

        tracker.base_time = now
        tracker.base_bytes = bytes_transferred
        tracker.last_emit_at = now
        tracker.completed = is_final

        update = ProgressUpdate(code, percent, bytes_transferred, speed)
        self._publish(update)
        return update

    def _publish(self, update: ProgressUpdate):
        for callback in list(self._subscribers):
            try:
                callback(update)
            except Exception as e:
                # 某个订阅者出错不能影响其他会话的进度推送
                logger.error(f"[{update.code}] 进度订阅回调失败: {e}", exc_info=True)
