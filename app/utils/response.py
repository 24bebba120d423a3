from typing import Any


def success_response(data: Any = None, msg: str = "success") -> dict:
    """成功响应"""
    return {
        "code": 200,
        "msg": msg,
        "data": data
    }


def error_response(code: int = 400, msg: str = "请求错误", data: Any = None) -> dict:
    """错误响应"""
    return {
        "code": code,
        "msg": msg,
        "data": data
    }


def created_response(data: Any = None, msg: str = "创建成功") -> dict:
    """创建成功响应"""
    return {
        "code": 201,
        "msg": msg,
        "data": data
    }


def transfer_error_response(exc) -> dict:
    """把 TransferError 翻译成标准响应（状态码取异常自带的 status_code）"""
    return error_response(exc.status_code, exc.msg, {"code": exc.code})
