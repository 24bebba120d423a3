"""
二进制分块帧编解码

帧格式：
- 4 字节大端无符号整数 N：JSON 头长度
- N 字节 UTF-8 JSON：{"event": "file-chunk", "data": {...}}
- 剩余字节：分块原始数据
"""
import json
import struct
from typing import Tuple

from app.errors import ProtocolViolationError

HEADER_LENGTH_FORMAT = ">I"
HEADER_LENGTH_SIZE = struct.calcsize(HEADER_LENGTH_FORMAT)
MAX_HEADER_SIZE = 64 * 1024


def encode_frame(event: str, data: dict, payload: bytes = b"") -> bytes:
    """把事件头和数据打包成一个二进制帧（测试与客户端工具使用）"""
    header = json.dumps({"event": event, "data": data}, ensure_ascii=False).encode("utf-8")
    return struct.pack(HEADER_LENGTH_FORMAT, len(header)) + header + payload


def decode_frame(frame: bytes) -> Tuple[str, dict, bytes]:
    """
    解析二进制帧

    返回：
    - (事件名, 事件数据, 分块数据)

    异常：
    - ProtocolViolationError: 帧长度不足或头部不是合法 JSON
    """
    if len(frame) < HEADER_LENGTH_SIZE:
        raise ProtocolViolationError("二进制帧过短")

    (header_len,) = struct.unpack_from(HEADER_LENGTH_FORMAT, frame)
    if header_len > MAX_HEADER_SIZE or HEADER_LENGTH_SIZE + header_len > len(frame):
        raise ProtocolViolationError("二进制帧头长度非法")

    raw_header = frame[HEADER_LENGTH_SIZE:HEADER_LENGTH_SIZE + header_len]
    try:
        header = json.loads(raw_header.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolViolationError(f"二进制帧头解析失败: {e}")

    if not isinstance(header, dict) or not isinstance(header.get("event"), str):
        raise ProtocolViolationError("二进制帧头缺少事件名")

    data = header.get("data") or {}
    if not isinstance(data, dict):
        raise ProtocolViolationError("二进制帧头 data 必须是对象")

    return header["event"], data, frame[HEADER_LENGTH_SIZE + header_len:]
