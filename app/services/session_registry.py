"""
会话注册表

维护 取件码 → 传输会话 的内存映射，负责创建、查找、删除和过期筛选。
所有会话状态只存在于进程内存中，服务器重启后会话全部失效。

事件循环是单线程的，处理函数在修改会话期间不会让出控制权，所以这里不加锁；
若改为多线程/多进程部署，需要给 _sessions 加互斥锁或按取件码分片。
"""
import asyncio
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.utils.pickup_code import generate_unique_pickup_code

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    AWAITING_RECEIVER = "awaiting_receiver"
    FILE_INFO_KNOWN = "file_info_known"
    MODE_COMMITTED = "mode_committed"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATES = (SessionState.COMPLETED, SessionState.ABORTED)


class TransferMode(str, Enum):
    RELAY = "relay"
    P2P = "p2p"
    STORAGE = "storage"


@dataclass(frozen=True)
class FileInfo:
    """发送方声明的文件元数据，声明后不可修改"""
    name: str
    size: int
    mime_type: str = "application/octet-stream"
    hash: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"name": self.name, "size": self.size, "type": self.mime_type}
        if self.hash:
            data["hash"] = self.hash
        return data


@dataclass
class PendingAck:
    """
    一个尚未确认的分块

    waiter 在输出缓冲排空时完成，其完成回调是该分块确认的唯一出口
    """
    chunk_index: int
    is_last: bool = False
    waiter: Optional[asyncio.Future] = None

    def cancel(self):
        if self.waiter is not None and not self.waiter.done():
            self.waiter.cancel()


@dataclass(eq=False)
class TransferSession:
    """
    一次文件传输的服务端记录

    sender / receiver 是两端控制通道的不透明句柄，只做身份比较
    """
    code: str
    sender: Any
    receiver: Any = None
    file_info: Optional[FileInfo] = None
    mode: Optional[TransferMode] = None
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.AWAITING_RECEIVER

    # 中转模式计数器（每条下载流内单调递增）
    bytes_transferred: int = 0
    last_chunk_index: int = -1
    output_sink: Any = None
    pending_ack: Optional[PendingAck] = None
    receiver_gone_notified: bool = False
    stream_complete: bool = False

    # P2P 相关
    sender_nat: Optional[Any] = None
    receiver_nat: Optional[Any] = None
    receiver_ready: bool = False

    def role_of(self, peer) -> Optional[str]:
        """返回 peer 在会话中的角色：'sender' / 'receiver' / None"""
        if peer is None:
            return None
        if peer is self.sender:
            return "sender"
        if peer is self.receiver:
            return "receiver"
        return None

    def other_peer(self, peer):
        """返回会话中的另一端（可能为 None）"""
        if peer is self.sender:
            return self.receiver
        if peer is self.receiver:
            return self.sender
        return None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: SessionState):
        if self.state != new_state:
            logger.info(f"[{self.code}] 状态变更: {self.state.value} -> {new_state.value}")
            self.state = new_state


class SessionRegistry:
    """取件码 → 会话 的内存映射"""

    def __init__(self, extra_code_check: Optional[Callable[[str], bool]] = None):
        self._sessions: Dict[str, TransferSession] = {}
        # 额外的占用检查（服务器存储模式的取件码与会话共享命名空间）
        self.extra_code_check = extra_code_check

    def is_code_taken(self, code: str) -> bool:
        if code in self._sessions:
            return True
        return bool(self.extra_code_check and self.extra_code_check(code))

    def create(self, sender, max_attempts: int = 100) -> TransferSession:
        """
        为发送方创建新会话

        异常：
        - CodeSpaceExhaustedError: 多次重试仍无可用取件码（不会插入任何会话）
        """
        code = generate_unique_pickup_code(self.is_code_taken, max_attempts)
        session = TransferSession(code=code, sender=sender)
        self._sessions[code] = session
        logger.info(f"[{code}] 会话已创建，当前活跃会话数: {len(self._sessions)}")
        return session

    def get(self, code: Optional[str]) -> Optional[TransferSession]:
        if not code:
            return None
        return self._sessions.get(code)

    def remove(self, code: str) -> Optional[TransferSession]:
        session = self._sessions.pop(code, None)
        if session is not None:
            logger.info(f"[{code}] 会话已移除，当前活跃会话数: {len(self._sessions)}")
        return session

    def sessions_for_peer(self, peer) -> List[TransferSession]:
        """peer 作为发送方或接收方参与的所有会话"""
        return [s for s in self._sessions.values() if s.role_of(peer) is not None]

    def expired(self, max_age_seconds: float, now: Optional[float] = None) -> List[TransferSession]:
        """创建时间超过 max_age_seconds 的会话"""
        now = time.time() if now is None else now
        return [s for s in self._sessions.values() if now - s.created_at > max_age_seconds]

    def clear(self):
        self._sessions.clear()

    def __contains__(self, code) -> bool:
        return code in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
