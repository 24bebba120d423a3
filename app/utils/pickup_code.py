"""
取件码生成工具
"""
import secrets
import string
from typing import Callable

from app.errors import CodeSpaceExhaustedError

PICKUP_CODE_LENGTH = 4
PICKUP_CODE_CHARS = string.digits + string.ascii_uppercase


def generate_pickup_code() -> str:
    """
    生成4位取件码（数字+大写字母）

    返回：
    - 4位大写字母和数字的组合，共 36^4 ≈ 168 万种
    """
    return ''.join(secrets.choice(PICKUP_CODE_CHARS) for _ in range(PICKUP_CODE_LENGTH))


def generate_unique_pickup_code(is_taken: Callable[[str], bool], max_attempts: int = 100) -> str:
    """
    生成唯一的取件码

    参数：
    - is_taken: 判断取件码是否已被占用（活跃会话、已存储文件）
    - max_attempts: 最大尝试次数（防止无限循环）

    返回：
    - 唯一的4位取件码

    异常：
    - CodeSpaceExhaustedError: 如果尝试多次后仍无法生成唯一取件码
    """
    for _ in range(max_attempts):
        code = generate_pickup_code()
        if not is_taken(code):
            return code

    raise CodeSpaceExhaustedError(max_attempts)
