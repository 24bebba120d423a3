"""
内存流式中转（relay 模式）

发送方通过控制通道逐块提交数据，服务器把数据写进接收方当前打开的 HTTP 下载流。
流控只有一条规则：发送方收到第 N 块的 chunk-ack 之前不得发送第 N+1 块。
输出缓冲超过高水位时推迟确认，直到 HTTP 响应把缓冲消费掉为止，
因此每个会话在服务器上最多只占用一个分块的内存。
"""
import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Callable, Optional

from app.config import settings
from app.errors import CodeInUseError, ProtocolViolationError
from app.services.progress_service import ProgressAggregator
from app.services.session_registry import PendingAck, TransferSession

logger = logging.getLogger(__name__)


class SinkClosedError(Exception):
    """输出流已关闭或已中断，不能再写入"""


class OutputSink:
    """
    一次 HTTP 下载的输出端

    - write() 把数据放进缓冲，缓冲达到高水位时返回 False
    - wait_drained() 等待缓冲回落到高水位以下；流被中断时抛 SinkClosedError
    - close() 正常结束（缓冲内容仍会被读完）
    - abort() 强制中断，丢弃缓冲并触发 on_abort 回调
    - iter_chunks() 供 StreamingResponse 消费
    """

    def __init__(self, code: str, high_water_mark: Optional[int] = None,
                 on_abort: Optional[Callable[["OutputSink"], None]] = None):
        self.code = code
        self.high_water_mark = high_water_mark or settings.RELAY_HIGH_WATER_MARK
        self.on_abort = on_abort
        self._chunks = deque()
        self._buffered = 0
        self._closed = False
        self._aborted = False
        self._finished = False
        self._data_ready = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def buffered(self) -> int:
        return self._buffered

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def finished(self) -> bool:
        """响应体已完整发出"""
        return self._finished

    @property
    def active(self) -> bool:
        return not (self._closed or self._aborted)

    def write(self, data: bytes) -> bool:
        if not self.active:
            raise SinkClosedError(f"[{self.code}] 输出流已关闭")

        if data:
            self._chunks.append(data)
            self._buffered += len(data)
            self._data_ready.set()

        if self._buffered >= self.high_water_mark:
            self._drained.clear()
            return False
        return True

    async def wait_drained(self):
        await self._drained.wait()
        if self._aborted:
            raise SinkClosedError(f"[{self.code}] 输出流已中断")

    def close(self):
        if not self.active:
            return
        self._closed = True
        self._data_ready.set()

    def abort(self, reason: str = ""):
        if self._aborted or self._finished:
            return
        self._aborted = True
        self._chunks.clear()
        self._buffered = 0
        self._data_ready.set()
        # 唤醒等待排空的一方，让它看到中断
        self._drained.set()
        logger.info(f"[{self.code}] 输出流中断{': ' + reason if reason else ''}")
        if self.on_abort is not None:
            self.on_abort(self)

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        while True:
            if self._aborted:
                return
            if self._chunks:
                chunk = self._chunks.popleft()
                self._buffered -= len(chunk)
                if self._buffered < self.high_water_mark:
                    self._drained.set()
                yield chunk
                continue
            if self._closed:
                self._finished = True
                return
            self._data_ready.clear()
            await self._data_ready.wait()


class ChunkRelayEngine:
    """
    分块中转引擎

    参数：
    - progress: 进度聚合器（分块进度经其节流后推送）
    - on_receiver_gone: 输出流丢失时的回调，由协调器负责去重通知发送方
    """

    def __init__(self, progress: ProgressAggregator,
                 on_receiver_gone: Callable[[TransferSession], None],
                 high_water_mark: Optional[int] = None):
        self.progress = progress
        self.on_receiver_gone = on_receiver_gone
        self.high_water_mark = high_water_mark

    def open_stream(self, session: TransferSession) -> OutputSink:
        """
        为接收方的下载请求创建输出流

        新的下载流意味着从头重新传输，计数器随之归零
        """
        if session.output_sink is not None and session.output_sink.active:
            raise CodeInUseError(session.code, "该取件码已有正在进行的下载")

        self._cancel_pending(session)
        sink = OutputSink(session.code, self.high_water_mark,
                          on_abort=lambda s: self._sink_lost(session, s))
        session.output_sink = sink
        session.bytes_transferred = 0
        session.last_chunk_index = -1
        session.receiver_gone_notified = False
        session.stream_complete = False
        self.progress.start(session.code)
        logger.info(f"[{session.code}] 下载流已打开")
        return sink

    def submit_chunk(self, session: TransferSession, chunk_index: int, total_chunks: int,
                     is_last: bool, data: bytes) -> bool:
        """
        写入一个分块

        返回：
        - True: 分块已写入（确认可能被推迟）
        - False: 分块被丢弃。没有可用的输出流时发送方会收到接收端断开通知；
          最后一块确认之后到达的迟到分块则静默丢弃

        异常：
        - ProtocolViolationError: 上一块尚未确认就提交下一块，或写入后超过声明的文件大小
        """
        if session.stream_complete:
            logger.debug(f"[{session.code}] 下载流已结束，丢弃迟到分块 {chunk_index}")
            return False

        if session.pending_ack is not None:
            raise ProtocolViolationError(
                f"分块 {chunk_index} 越窗：分块 {session.pending_ack.chunk_index} 尚未确认",
                session.code
            )

        sink = session.output_sink
        if sink is None or not sink.active:
            logger.warning(f"[{session.code}] 没有打开的下载流，丢弃分块 {chunk_index}")
            self.on_receiver_gone(session)
            return False

        if session.file_info is not None and session.bytes_transferred + len(data) > session.file_info.size:
            raise ProtocolViolationError(
                f"分块 {chunk_index} 超出声明的文件大小 {session.file_info.size}",
                session.code
            )

        try:
            ready = sink.write(data)
        except SinkClosedError:
            self._sink_lost(session, sink)
            return False

        session.bytes_transferred += len(data)
        session.last_chunk_index = max(session.last_chunk_index, chunk_index)
        logger.debug(f"[{session.code}] 写入分块 {chunk_index + 1}/{total_chunks}，{len(data)} 字节")

        self.progress.report(session.code, (chunk_index + 1) / total_chunks * 100, session.bytes_transferred)

        pending = PendingAck(chunk_index=chunk_index, is_last=is_last)
        if ready:
            self._acknowledge(session, sink, pending)
            return True

        # 缓冲已满：等排空后再确认
        session.pending_ack = pending
        pending.waiter = asyncio.ensure_future(sink.wait_drained())
        pending.waiter.add_done_callback(lambda fut: self._resolve(session, sink, pending, fut))
        logger.debug(f"[{session.code}] 输出缓冲已满，分块 {chunk_index} 的确认推迟")
        return True

    def _resolve(self, session: TransferSession, sink: OutputSink, pending: PendingAck, fut: asyncio.Future):
        if session.pending_ack is not pending:
            return
        session.pending_ack = None
        if fut.cancelled() or fut.exception() is not None:
            self._sink_lost(session, sink)
            return
        self._acknowledge(session, sink, pending)

    def _acknowledge(self, session: TransferSession, sink: OutputSink, pending: PendingAck):
        session.sender.emit("chunk-ack", {"pickupCode": session.code, "chunkIndex": pending.chunk_index})
        if pending.is_last:
            session.stream_complete = True
            sink.close()
            if session.output_sink is sink:
                session.output_sink = None
            logger.info(f"[{session.code}] 最后一块已确认，下载流关闭，共 {session.bytes_transferred} 字节")

    def _sink_lost(self, session: TransferSession, sink: OutputSink):
        """输出流被接收方断开或写入失败，等同于接收端离开"""
        if session.output_sink is not sink:
            return
        session.output_sink = None
        self._cancel_pending(session)
        logger.warning(f"[{session.code}] 下载流在传输中断开，已传 {session.bytes_transferred} 字节")
        self.on_receiver_gone(session)

    def _cancel_pending(self, session: TransferSession):
        pending = session.pending_ack
        session.pending_ack = None
        if pending is not None:
            pending.cancel()

    def abort(self, session: TransferSession, reason: str = ""):
        """强制关闭会话当前的输出流（发送方/接收方断开、会话过期）"""
        sink = session.output_sink
        session.output_sink = None
        self._cancel_pending(session)
        if sink is not None:
            sink.abort(reason)
