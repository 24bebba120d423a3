"""
控制通道（WebSocket）事件载荷模型

字段名沿用浏览器端的 camelCase 约定
"""
from pydantic import BaseModel, Field, field_validator
from typing import Any, List, Optional, Union

from app.utils.validation import normalize_pickup_code


class CodePayload(BaseModel):
    """所有携带取件码的事件的公共部分"""
    pickupCode: str = Field(..., description="4位取件码（大小写不敏感）")

    @field_validator("pickupCode", mode="before")
    @classmethod
    def _normalize_code(cls, v):
        code = normalize_pickup_code(v)
        if code is None:
            raise ValueError("取件码格式错误，应为4位字母或数字")
        return code


class JoinSessionPayload(CodePayload):
    """接收方加入会话"""


class FileInfoBody(BaseModel):
    """发送方声明的文件元数据"""
    name: str = Field(..., min_length=1, max_length=255, description="文件名")
    size: int = Field(..., ge=0, description="文件大小（字节）")
    type: str = Field("application/octet-stream", description="文件MIME类型")
    mode: str = Field("relay", pattern="^(relay|p2p|storage)$", description="传输模式")
    hash: Optional[str] = Field(None, max_length=128, description="可选的内容哈希")

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, v):
        return v or "application/octet-stream"


class FileInfoPayload(CodePayload):
    fileInfo: FileInfoBody


class ChunkHeader(CodePayload):
    """二进制分块帧的 JSON 头"""
    chunkIndex: int = Field(..., ge=0)
    totalChunks: int = Field(..., ge=1)
    isLast: bool = False


class TransferSpeedPayload(CodePayload):
    speed: float = Field(..., ge=0, description="接收端测得的速度（字节/秒）")


class OfferPayload(CodePayload):
    offer: Any


class AnswerPayload(CodePayload):
    answer: Any


class IceCandidatePayload(CodePayload):
    candidate: Any


class NatInfoPayload(CodePayload):
    """
    本端收集到的连通性候选

    candidates 中每项可以是 ICE 候选字符串（含 "typ host" 等），
    也可以是 {"type": "srflx", "address": ..., "port": ...} 形式的字典
    """
    candidates: List[Union[str, dict]] = Field(default_factory=list)
    probeFailed: bool = False


class P2PProgressPayload(CodePayload):
    progress: float = Field(..., ge=0, le=100)
    bytesReceived: int = Field(0, ge=0)
    speed: Optional[float] = Field(None, ge=0)


class P2PCompletePayload(CodePayload):
    totalBytes: int = Field(..., ge=0)
