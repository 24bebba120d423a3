"""
控制通道（WebSocket）

文本帧：{"event": str, "data": object, "ackId": int?}
带 ackId 的事件会收到 {"event": "ack", "ackId": n, "data": {"success": bool, ...}}
二进制帧：文件分块，格式见 app/utils/frames.py

每个连接有独立的发送队列和写任务，向某一端推送消息不会阻塞其他连接的处理。
"""
import asyncio
import contextlib
import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.errors import ProtocolViolationError, TransferError, UnauthorizedError
from app.schemas.request import (
    AnswerPayload, ChunkHeader, CodePayload, FileInfoPayload, IceCandidatePayload,
    JoinSessionPayload, NatInfoPayload, OfferPayload, P2PCompletePayload,
    P2PProgressPayload, TransferSpeedPayload
)
from app.services.coordinator import coordinator
from app.utils.frames import decode_frame

logger = logging.getLogger(__name__)

router = APIRouter(tags=["控制通道"])


def client_address(headers, client) -> str:
    """客户端地址：优先取 X-Forwarded-For 的第一跳"""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return client.host if client else "unknown"


class WebSocketPeer:
    """一条控制通道连接，协调器只把它当作不透明句柄"""

    def __init__(self, websocket: WebSocket, client_id: str):
        self.websocket = websocket
        self.client_id = client_id
        self.peer_id = uuid.uuid4().hex[:8]
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def __repr__(self):
        return f"<WebSocketPeer {self.peer_id} {self.client_id}>"

    def emit(self, event: str, data: Optional[dict] = None):
        if self._closed:
            return
        self._outbox.put_nowait({"event": event, "data": data or {}})

    def send_ack(self, ack_id: Any, data: dict):
        if self._closed:
            return
        self._outbox.put_nowait({"event": "ack", "ackId": ack_id, "data": data})

    async def run_writer(self):
        while True:
            message = await self._outbox.get()
            if message is None:
                return
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"{self} 发送失败，写任务退出: {e}")
                self._closed = True
                return

    def close(self):
        self._closed = True
        self._outbox.put_nowait(None)


# ----------------------------------------------------------------------
# 事件处理
# ----------------------------------------------------------------------

def _on_create(peer: WebSocketPeer, data: dict):
    return coordinator.create_session(peer, peer.client_id)


def _on_join(peer: WebSocketPeer, data: dict):
    payload = JoinSessionPayload.model_validate(data)
    return coordinator.join_session(peer, peer.client_id, payload.pickupCode)


def _on_file_info(peer: WebSocketPeer, data: dict):
    payload = FileInfoPayload.model_validate(data)
    return coordinator.announce_file_info(peer, payload.pickupCode, payload.fileInfo)


def _on_accept(peer: WebSocketPeer, data: dict):
    payload = CodePayload.model_validate(data)
    return coordinator.accept_transfer(peer, payload.pickupCode)


def _on_download_complete(peer: WebSocketPeer, data: dict):
    payload = CodePayload.model_validate(data)
    return coordinator.complete_download(peer, payload.pickupCode)


def _on_speed(peer: WebSocketPeer, data: dict):
    payload = TransferSpeedPayload.model_validate(data)
    return coordinator.forward_speed(peer, payload.pickupCode, payload.speed)


def _signal_handler(event: str, model):
    def handler(peer: WebSocketPeer, data: dict):
        payload = model.model_validate(data)
        return coordinator.relay_signal(peer, event, payload.pickupCode, payload.model_dump())
    return handler


def _on_nat_info(peer: WebSocketPeer, data: dict):
    return coordinator.report_nat(peer, NatInfoPayload.model_validate(data))


def _on_request_nat(peer: WebSocketPeer, data: dict):
    payload = CodePayload.model_validate(data)
    return coordinator.request_nat(peer, payload.pickupCode)


def _on_p2p_progress(peer: WebSocketPeer, data: dict):
    return coordinator.report_p2p_progress(peer, P2PProgressPayload.model_validate(data))


def _on_p2p_complete(peer: WebSocketPeer, data: dict):
    return coordinator.complete_p2p(peer, P2PCompletePayload.model_validate(data))


EVENT_HANDLERS: Dict[str, Callable[[WebSocketPeer, dict], Optional[dict]]] = {
    "create-session": _on_create,
    "join-session": _on_join,
    "file-info": _on_file_info,
    "accept-transfer": _on_accept,
    "download-complete": _on_download_complete,
    "transfer-speed": _on_speed,
    "p2p-offer": _signal_handler("p2p-offer", OfferPayload),
    "p2p-answer": _signal_handler("p2p-answer", AnswerPayload),
    "p2p-ice-candidate": _signal_handler("p2p-ice-candidate", IceCandidatePayload),
    "p2p-nat-info": _on_nat_info,
    "request-nat-info": _on_request_nat,
    "p2p-progress": _on_p2p_progress,
    "p2p-complete": _on_p2p_complete,
}


def _failure(code: str, message: str) -> dict:
    return {"success": False, "code": code, "message": message}


def _reply(peer: WebSocketPeer, event: str, ack_id: Any, result: dict):
    if ack_id is not None:
        peer.send_ack(ack_id, result)
    elif not result.get("success"):
        peer.emit("error", {"event": event, **result})


def dispatch(peer: WebSocketPeer, event: str, data: Any, ack_id: Any = None):
    """
    处理一个控制事件

    错误在这里被翻译成失败原因返回给调用方，不会影响其他连接；
    非会话成员的操作只记录日志，不回复
    """
    try:
        handler = EVENT_HANDLERS.get(event)
        if handler is None:
            raise ProtocolViolationError(f"未知事件: {event}")
        result = handler(peer, data if isinstance(data, dict) else {}) or {}
        _reply(peer, event, ack_id, {"success": True, **result})
    except UnauthorizedError as e:
        logger.warning(f"[{e.pickup_code or '-'}] 忽略来自 {peer} 的越权操作 {event}: {e.msg}")
    except TransferError as e:
        logger.info(f"[{e.pickup_code or '-'}] {event} 失败: {e.code} {e.msg}")
        _reply(peer, event, ack_id, e.to_dict())
    except ValidationError as e:
        logger.info(f"{event} 参数错误: {e.errors()}")
        _reply(peer, event, ack_id, _failure("BAD_REQUEST", "请求参数错误"))
    except Exception as e:
        logger.error(f"处理事件 {event} 时发生异常: {e}", exc_info=True)
        _reply(peer, event, ack_id, _failure("INTERNAL_ERROR", "服务器内部错误"))


def handle_text(peer: WebSocketPeer, text: str):
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        peer.emit("error", _failure("BAD_REQUEST", "消息不是合法的 JSON"))
        return
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        peer.emit("error", _failure("BAD_REQUEST", "消息缺少事件名"))
        return
    dispatch(peer, message["event"], message.get("data") or {}, message.get("ackId"))


def handle_binary(peer: WebSocketPeer, frame: bytes):
    """二进制帧只承载 file-chunk，确认通过 chunk-ack 事件返回"""
    try:
        event, data, payload = decode_frame(frame)
        if event != "file-chunk":
            raise ProtocolViolationError(f"二进制帧不支持事件: {event}")
        header = ChunkHeader.model_validate(data)
        coordinator.submit_chunk(peer, header, payload)
    except UnauthorizedError as e:
        logger.warning(f"[{e.pickup_code or '-'}] 忽略来自 {peer} 的越权分块: {e.msg}")
    except TransferError as e:
        logger.info(f"[{e.pickup_code or '-'}] file-chunk 失败: {e.code} {e.msg}")
        peer.emit("error", {"event": "file-chunk", **e.to_dict()})
    except ValidationError as e:
        logger.info(f"file-chunk 参数错误: {e.errors()}")
        peer.emit("error", {"event": "file-chunk", **_failure("BAD_REQUEST", "分块头参数错误")})
    except Exception as e:
        logger.error(f"处理分块时发生异常: {e}", exc_info=True)
        peer.emit("error", {"event": "file-chunk", **_failure("INTERNAL_ERROR", "服务器内部错误")})


@router.websocket("/ws")
async def control_channel(websocket: WebSocket):
    await websocket.accept()
    peer = WebSocketPeer(websocket, client_address(websocket.headers, websocket.client))
    writer = asyncio.create_task(peer.run_writer())
    logger.info(f"控制通道已连接: {peer}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                handle_binary(peer, message["bytes"])
            elif message.get("text") is not None:
                handle_text(peer, message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        coordinator.disconnect(peer)
        peer.close()
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
        logger.info(f"控制通道已断开: {peer}")
