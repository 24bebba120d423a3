"""
传输会话协调器

所有会话状态的修改都经过这里：
- 校验调用方是否为会话记录中的发送方/接收方
- 驱动状态机 AWAITING_RECEIVER → FILE_INFO_KNOWN → MODE_COMMITTED → TRANSFERRING → COMPLETED
  （任意状态下发送方断开 → ABORTED）
- 把具体工作分派给中转引擎、信令中转、进度聚合器

peer 是控制通道的不透明句柄，只要求提供 emit(event, data)；协调器只比较身份。
所有处理函数都是同步的，执行期间不会让出事件循环。
"""
import asyncio
import logging
from typing import Optional

from app.config import settings
from app.errors import (
    CodeInUseError, InvalidCodeError, ProtocolViolationError, RateLimitedError, ReceiverGoneError,
    SizeMismatchError, UnauthorizedError
)
from app.schemas.request import (
    ChunkHeader, FileInfoBody, NatInfoPayload, P2PCompletePayload, P2PProgressPayload
)
from app.services.nat_classifier import classify_candidates
from app.services.progress_service import ProgressAggregator, ProgressUpdate
from app.services.rate_limiter import SlidingWindowRateLimiter, create_limiter, join_limiter
from app.services.relay_service import ChunkRelayEngine, OutputSink
from app.services.session_registry import (
    FileInfo, SessionRegistry, SessionState, TransferMode, TransferSession
)
from app.services.signaling_service import SignalingRelay
from app.services.stats_service import StatsService, stats_service
from app.services.storage_service import blob_store

logger = logging.getLogger(__name__)


def enabled_modes() -> set:
    """当前允许选择的传输模式"""
    modes = set()
    if settings.FEATURE_MEMORY_STREAMING:
        modes.add(TransferMode.RELAY)
    if settings.FEATURE_P2P_DIRECT:
        modes.add(TransferMode.P2P)
    if settings.FEATURE_SERVER_STORAGE:
        modes.add(TransferMode.STORAGE)
    return modes


class SessionCoordinator:

    def __init__(self, registry: Optional[SessionRegistry] = None,
                 stats: Optional[StatsService] = None,
                 create_rate: Optional[SlidingWindowRateLimiter] = None,
                 join_rate: Optional[SlidingWindowRateLimiter] = None,
                 progress: Optional[ProgressAggregator] = None):
        self.registry = registry or SessionRegistry()
        self.stats = stats or stats_service
        self.create_limiter = create_rate or create_limiter
        self.join_limiter = join_rate or join_limiter
        self.progress = progress or ProgressAggregator()
        self.relay = ChunkRelayEngine(self.progress, self._notify_receiver_gone)
        self.signaling = SignalingRelay()
        self.progress.subscribe(self._broadcast_progress)

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _require_session(self, code: str) -> TransferSession:
        session = self.registry.get(code)
        if session is None or session.is_terminal:
            raise InvalidCodeError(code)
        return session

    def _require_role(self, session: TransferSession, peer, role: str):
        if session.role_of(peer) != role:
            raise UnauthorizedError(session.code, f"只有{'发送方' if role == 'sender' else '接收方'}可以执行该操作")

    def _require_mode(self, session: TransferSession, mode: TransferMode):
        if session.mode != mode:
            raise ProtocolViolationError(f"当前会话不是 {mode.value} 模式", session.code)

    def _broadcast_progress(self, update: ProgressUpdate):
        session = self.registry.get(update.code)
        if session is None:
            return
        data = update.to_dict()
        for peer in (session.sender, session.receiver):
            if peer is not None:
                peer.emit("transfer-progress", data)

    def _notify_receiver_gone(self, session: TransferSession):
        """每次接收端断开只通知发送方一次"""
        if session.receiver_gone_notified or session.is_terminal:
            return
        session.receiver_gone_notified = True
        if session.state == SessionState.TRANSFERRING and session.mode == TransferMode.RELAY:
            session.transition(SessionState.MODE_COMMITTED)
        gone = ReceiverGoneError(session.code)
        session.sender.emit("receiver-disconnected", {**gone.to_dict(), "bytesTransferred": session.bytes_transferred})
        logger.info(f"[{session.code}] 已通知发送方：{gone.msg}")

    def _schedule_removal(self, session: TransferSession, delay: float):
        loop = asyncio.get_running_loop()
        loop.call_later(delay, self._remove_if_same, session.code, session)

    def _remove_if_same(self, code: str, session: TransferSession):
        # 宽限期内取件码可能已被回收给新会话
        if self.registry.get(code) is session:
            self.registry.remove(code)

    def _complete(self, session: TransferSession, grace_seconds: float):
        session.transition(SessionState.COMPLETED)
        self.progress.discard(session.code)
        self.stats.record_transfer()
        self._schedule_removal(session, grace_seconds)

    # ------------------------------------------------------------------
    # 会话生命周期
    # ------------------------------------------------------------------

    def create_session(self, peer, client_id: str) -> dict:
        if not self.create_limiter.allow(client_id):
            raise RateLimitedError("创建会话过于频繁，请稍后再试")
        session = self.registry.create(peer)
        return {"pickupCode": session.code}

    def join_session(self, peer, client_id: str, code: str) -> dict:
        if not self.join_limiter.allow(client_id):
            raise RateLimitedError()

        session = self._require_session(code)
        if peer is session.sender:
            raise CodeInUseError(code, "不能加入自己创建的会话")

        if peer is session.receiver:
            # 重复加入：幂等，重新下发文件信息
            logger.info(f"[{code}] 接收方重复加入")
            if session.file_info is not None:
                peer.emit("file-info", self._file_info_message(session))
            return self._join_result(session)

        if session.receiver is not None:
            raise CodeInUseError(code)

        session.receiver = peer
        session.receiver_gone_notified = False
        session.receiver_ready = False
        logger.info(f"[{code}] 接收方已加入")
        session.sender.emit("receiver-connected", {"pickupCode": code})
        if session.file_info is not None:
            peer.emit("file-info", self._file_info_message(session))
        return self._join_result(session)

    @staticmethod
    def _file_info_message(session: TransferSession) -> dict:
        return {
            "pickupCode": session.code,
            "fileInfo": session.file_info.to_dict(),
            "mode": session.mode.value if session.mode else None,
        }

    @staticmethod
    def _join_result(session: TransferSession) -> dict:
        result = {"pickupCode": session.code}
        if session.file_info is not None:
            result["fileInfo"] = session.file_info.to_dict()
            result["mode"] = session.mode.value
        return result

    def announce_file_info(self, peer, code: str, body: FileInfoBody) -> dict:
        session = self._require_session(code)
        self._require_role(session, peer, "sender")

        if session.file_info is not None:
            raise ProtocolViolationError("文件信息已声明，不能修改", code)

        mode = TransferMode(body.mode)
        if mode not in enabled_modes():
            raise ProtocolViolationError(f"传输模式 {mode.value} 未启用", code)

        session.file_info = FileInfo(name=body.name, size=body.size, mime_type=body.type, hash=body.hash)
        session.transition(SessionState.FILE_INFO_KNOWN)
        session.mode = mode
        session.transition(SessionState.MODE_COMMITTED)
        logger.info(f"[{code}] 文件信息: {body.name} ({body.size} 字节)，模式 {mode.value}")

        if session.receiver is not None:
            session.receiver.emit("file-info", self._file_info_message(session))
        return {"pickupCode": code}

    def accept_transfer(self, peer, code: str) -> dict:
        """
        接收方确认接收

        P2P 模式下标记接收方就绪并通知发送方开始握手；
        中转模式由接收方打开下载流驱动，这里不改变状态
        """
        session = self._require_session(code)
        self._require_role(session, peer, "receiver")
        if session.mode is None:
            raise ProtocolViolationError("文件信息尚未就绪", code)

        if session.mode == TransferMode.P2P:
            session.receiver_ready = True
            session.transition(SessionState.TRANSFERRING)
            self.progress.start(code)
            session.sender.emit("receiver-ready-p2p", {"pickupCode": code})
            logger.info(f"[{code}] 接收方 P2P 就绪")
        return {"pickupCode": code, "mode": session.mode.value}

    def disconnect(self, peer):
        """控制通道断开：发送方离开终止会话，接收方离开只清空接收方槽位"""
        for session in self.registry.sessions_for_peer(peer):
            role = session.role_of(peer)
            if role == "sender":
                self._sender_left(session)
            else:
                self._receiver_left(session)

    def _sender_left(self, session: TransferSession):
        completed = session.state == SessionState.COMPLETED
        session.transition(SessionState.ABORTED)
        self.registry.remove(session.code)
        self.relay.abort(session, "发送方断开")
        self.progress.discard(session.code)
        if session.receiver is not None and not completed:
            session.receiver.emit("connection-lost", {
                "pickupCode": session.code,
                "message": "发送方已断开连接",
            })
        logger.info(f"[{session.code}] 发送方断开，会话终止")

    def _receiver_left(self, session: TransferSession):
        session.receiver = None
        session.receiver_ready = False
        self.relay.abort(session, "接收方断开")
        if session.state == SessionState.COMPLETED:
            return
        if session.state == SessionState.TRANSFERRING:
            session.transition(SessionState.MODE_COMMITTED)
        self._notify_receiver_gone(session)

    def expire_idle(self, now: Optional[float] = None) -> int:
        """移除创建时间超过 SESSION_MAX_AGE_SECONDS 的会话，返回移除数量"""
        expired = self.registry.expired(settings.SESSION_MAX_AGE_SECONDS, now)
        for session in expired:
            was_completed = session.state == SessionState.COMPLETED
            session.transition(SessionState.ABORTED)
            self.registry.remove(session.code)
            self.relay.abort(session, "会话过期")
            self.progress.discard(session.code)
            if was_completed:
                continue
            for peer in (session.sender, session.receiver):
                if peer is not None:
                    peer.emit("session-expired", {"pickupCode": session.code})
        if expired:
            logger.info(f"清理过期会话 {len(expired)} 个")
        return len(expired)

    @property
    def active_session_count(self) -> int:
        return len(self.registry)

    # ------------------------------------------------------------------
    # 中转模式
    # ------------------------------------------------------------------

    def open_download(self, code: str) -> "tuple[TransferSession, OutputSink]":
        """接收方打开 HTTP 下载流（中转模式进入 TRANSFERRING）"""
        session = self._require_session(code)
        if session.mode != TransferMode.RELAY:
            raise InvalidCodeError(code)
        if session.file_info is None or session.receiver is None:
            raise CodeInUseError(code, "会话尚未就绪，接收方需先通过取件码加入")

        sink = self.relay.open_stream(session)
        session.transition(SessionState.TRANSFERRING)
        session.sender.emit("start-transfer", {"pickupCode": code})
        return session, sink

    def submit_chunk(self, peer, header: ChunkHeader, data: bytes) -> bool:
        session = self._require_session(header.pickupCode)
        self._require_role(session, peer, "sender")
        self._require_mode(session, TransferMode.RELAY)

        if session.state != SessionState.TRANSFERRING:
            logger.warning(f"[{session.code}] 会话不在传输状态，丢弃分块 {header.chunkIndex}")
            self._notify_receiver_gone(session)
            return False

        return self.relay.submit_chunk(
            session, header.chunkIndex, header.totalChunks, header.isLast, data
        )

    def complete_download(self, peer, code: str) -> dict:
        session = self.registry.get(code)
        if session is None:
            raise InvalidCodeError(code)
        self._require_role(session, peer, "receiver")
        self._require_mode(session, TransferMode.RELAY)
        if session.state == SessionState.COMPLETED:
            return {"pickupCode": code}
        if session.state == SessionState.ABORTED:
            raise InvalidCodeError(code)
        if session.state != SessionState.TRANSFERRING:
            raise ProtocolViolationError("传输尚未开始，不能报告完成", code)

        session.sender.emit("transfer-complete", {"pickupCode": code})
        self._complete(session, settings.RELAY_COMPLETE_GRACE_SECONDS)
        logger.info(f"[{code}] 中转传输完成")
        return {"pickupCode": code}

    def forward_speed(self, peer, code: str, speed: float) -> dict:
        session = self._require_session(code)
        self._require_role(session, peer, "receiver")
        session.sender.emit("transfer-speed", {"pickupCode": code, "speed": speed})
        return {}

    # ------------------------------------------------------------------
    # P2P 模式
    # ------------------------------------------------------------------

    def relay_signal(self, peer, event: str, code: str, payload: dict) -> dict:
        session = self._require_session(code)
        delivered = self.signaling.relay(session, peer, event, payload)
        return {"delivered": delivered}

    def report_nat(self, peer, payload: NatInfoPayload) -> dict:
        session = self._require_session(payload.pickupCode)
        candidates = [] if payload.probeFailed else payload.candidates
        classification = classify_candidates(candidates)
        return self.signaling.record_nat(session, peer, classification)

    def request_nat(self, peer, code: str) -> dict:
        session = self._require_session(code)
        message = self.signaling.pull_nat(session, peer)
        if message is None:
            return {"available": False}
        peer.emit("p2p-nat-info", message)
        return {"available": True, **message}

    def report_p2p_progress(self, peer, payload: P2PProgressPayload) -> dict:
        session = self._require_session(payload.pickupCode)
        self._require_role(session, peer, "receiver")
        self._require_mode(session, TransferMode.P2P)
        self.progress.report(session.code, payload.progress, payload.bytesReceived)
        return {}

    def complete_p2p(self, peer, payload: P2PCompletePayload) -> dict:
        """
        接收方报告 P2P 传输完成

        字节数与声明大小不一致时仍按完成处理，只给接收方发 transfer-warning，由其决定是否重传
        """
        code = payload.pickupCode
        session = self.registry.get(code)
        if session is None:
            raise InvalidCodeError(code)
        self._require_role(session, peer, "receiver")
        self._require_mode(session, TransferMode.P2P)
        if session.state == SessionState.COMPLETED:
            return {"pickupCode": code}
        if session.state == SessionState.ABORTED:
            raise InvalidCodeError(code)
        if session.state != SessionState.TRANSFERRING:
            raise ProtocolViolationError("传输尚未开始，不能报告完成", code)

        expected = session.file_info.size
        if payload.totalBytes != expected:
            mismatch = SizeMismatchError(code, expected, payload.totalBytes)
            logger.warning(f"[{code}] {mismatch.msg}")
            peer.emit("transfer-warning", {
                **mismatch.to_dict(),
                "expected": expected,
                "actual": payload.totalBytes,
            })

        self.progress.report(code, 100, payload.totalBytes)
        session.sender.emit("p2p-complete", {"pickupCode": code, "totalBytes": payload.totalBytes})
        self._complete(session, settings.P2P_COMPLETE_GRACE_SECONDS)
        logger.info(f"[{code}] P2P 传输完成，{payload.totalBytes} 字节")
        return {"pickupCode": code}


def _stored_code_taken(code: str) -> bool:
    return settings.FEATURE_SERVER_STORAGE and blob_store.exists(code)


coordinator = SessionCoordinator(SessionRegistry(extra_code_check=_stored_code_taken))
