from typing import Optional


class TransferError(Exception):
    """传输协调层的业务异常基类，在 WebSocket / HTTP 边界被翻译成失败原因"""

    code = "TRANSFER_ERROR"
    status_code = 400

    def __init__(self, msg: str = "请求错误", pickup_code: Optional[str] = None):
        super().__init__(msg)
        self.msg = msg
        self.pickup_code = pickup_code

    def to_dict(self) -> dict:
        data = {"success": False, "code": self.code, "message": self.msg}
        if self.pickup_code:
            data["pickupCode"] = self.pickup_code
        return data


class InvalidCodeError(TransferError):
    code = "INVALID_CODE"
    status_code = 404

    def __init__(self, pickup_code: Optional[str] = None):
        super().__init__("无效的取件码", pickup_code)


class CodeInUseError(TransferError):
    code = "CODE_IN_USE"
    status_code = 409

    def __init__(self, pickup_code: Optional[str] = None, msg: str = "该取件码已被使用"):
        super().__init__(msg, pickup_code)


class RateLimitedError(TransferError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, msg: str = "尝试次数过多，请稍后再试"):
        super().__init__(msg)


class UnauthorizedError(TransferError):
    code = "UNAUTHORIZED"
    status_code = 403

    def __init__(self, pickup_code: Optional[str] = None, msg: str = "非会话成员的操作"):
        super().__init__(msg, pickup_code)


class ReceiverGoneError(TransferError):
    code = "RECEIVER_GONE"
    status_code = 410

    def __init__(self, pickup_code: Optional[str] = None):
        super().__init__("接收端已断开连接", pickup_code)


class SizeMismatchError(TransferError):
    code = "SIZE_MISMATCH"

    def __init__(self, pickup_code: Optional[str], expected: int, actual: int):
        super().__init__(f"接收字节数 {actual} 与声明大小 {expected} 不一致", pickup_code)
        self.expected = expected
        self.actual = actual


class ProtocolViolationError(TransferError):
    code = "PROTOCOL_VIOLATION"

    def __init__(self, msg: str, pickup_code: Optional[str] = None):
        super().__init__(msg, pickup_code)


class CodeSpaceExhaustedError(TransferError):
    code = "CODE_SPACE_EXHAUSTED"
    status_code = 503

    def __init__(self, attempts: int):
        super().__init__(f"无法生成唯一取件码，已尝试 {attempts} 次")
