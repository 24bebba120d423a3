import re
from typing import Optional

PICKUP_CODE_PATTERN = re.compile(r'^[0-9A-Z]{4}$')


def validate_pickup_code(code: str) -> bool:
    """
    验证取件码格式

    规则：4位大写字母或数字
    正则：^[0-9A-Z]{4}$

    示例：
    - A1B2 ✓
    - 7Q0Z ✓
    - a1b2 ✗ (小写，需先规范化)
    - A1B ✗ (3位)
    """
    return bool(isinstance(code, str) and PICKUP_CODE_PATTERN.fullmatch(code))


def normalize_pickup_code(raw: Optional[str]) -> Optional[str]:
    """
    规范化用户输入的取件码：去掉首尾空白并转为大写

    返回：
    - 合法的4位取件码；格式不合法时返回 None
    """
    if not isinstance(raw, str):
        return None
    code = raw.strip().upper()
    return code if validate_pickup_code(code) else None
