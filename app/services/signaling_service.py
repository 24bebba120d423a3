"""
P2P 信令中转

只做转发，不解析 offer / answer / candidate 的内容；转发前严格校验消息方向。
NAT 类型信息除了转发还会保存，晚加入的一方可以主动拉取对端最近一次的结果。
"""
import logging
from typing import Optional

from app.errors import ProtocolViolationError, UnauthorizedError
from app.services.nat_classifier import NatClassification, combined_success
from app.services.session_registry import TransferMode, TransferSession

logger = logging.getLogger(__name__)

# 事件 → 允许发出该事件的角色
SIGNAL_DIRECTIONS = {
    "p2p-offer": ("sender",),
    "p2p-answer": ("receiver",),
    "p2p-ice-candidate": ("sender", "receiver"),
}


class SignalingRelay:

    def relay(self, session: TransferSession, peer, event: str, payload: dict) -> bool:
        """
        把信令消息转发给会话另一端

        返回：
        - True 已转发；False 对端不在线（消息直接丢弃，不重传）
        """
        allowed = SIGNAL_DIRECTIONS.get(event)
        if allowed is None:
            raise ProtocolViolationError(f"不支持的信令事件: {event}", session.code)

        role = session.role_of(peer)
        if role is None or role not in allowed:
            raise UnauthorizedError(session.code, f"{role or '非会话成员'} 不能发送 {event}")

        if event == "p2p-offer" and session.mode == TransferMode.P2P and not session.receiver_ready:
            raise ProtocolViolationError("接收方尚未就绪，不能发送 offer", session.code)

        target = session.other_peer(peer)
        if target is None:
            logger.info(f"[{session.code}] {event} 的目标端不在线，消息丢弃")
            return False

        target.emit(event, payload)
        logger.debug(f"[{session.code}] 转发 {event}: {role} -> 对端")
        return True

    def nat_message(self, session: TransferSession, role: str) -> Optional[dict]:
        """构造某一端的 NAT 信息消息；该端尚未上报时返回 None"""
        record = session.sender_nat if role == "sender" else session.receiver_nat
        if record is None:
            return None

        message = {"pickupCode": session.code, "role": role, "natType": record.to_dict()}
        other = session.receiver_nat if role == "sender" else session.sender_nat
        if other is not None:
            message["combinedSuccess"] = combined_success(record.success, other.success)
        return message

    def record_nat(self, session: TransferSession, peer, classification: NatClassification) -> dict:
        """
        保存并转发本端的 NAT 类型（覆盖该端之前的值）

        角色由连接身份决定，载荷里的 role 字段不可信
        """
        role = session.role_of(peer)
        if role is None:
            raise UnauthorizedError(session.code)

        if role == "sender":
            session.sender_nat = classification
        else:
            session.receiver_nat = classification

        message = self.nat_message(session, role)
        logger.info(
            f"[{session.code}] {role} NAT 类型: {classification.nat_type.value} "
            f"({classification.success}%)"
        )

        target = session.other_peer(peer)
        if target is not None:
            target.emit("p2p-nat-info", message)
        return message

    def pull_nat(self, session: TransferSession, peer) -> Optional[dict]:
        """拉取对端最近一次的 NAT 信息"""
        role = session.role_of(peer)
        if role is None:
            raise UnauthorizedError(session.code)
        other_role = "receiver" if role == "sender" else "sender"
        return self.nat_message(session, other_role)
