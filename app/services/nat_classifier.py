"""
NAT 类型判定

根据浏览器在探测窗口内收集到的连通性候选，推断 NAT 类型和 P2P 直连成功率。
纯函数，无共享状态。
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

CANDIDATE_TYPE_PATTERN = re.compile(r'\btyp\s+(\w+)', re.IGNORECASE)

# 各种写法统一到 host / srflx / relay 三类
CANDIDATE_TYPE_ALIASES = {
    "host": "host",
    "srflx": "srflx",
    "server-reflexive": "srflx",
    "serverreflexive": "srflx",
    "relay": "relay",
    "relayed": "relay",
}


class NatType(str, Enum):
    OPEN_INTERNET = "OpenInternet"
    FULL_CONE = "FullCone"
    RESTRICTED_CONE = "RestrictedCone"
    PORT_RESTRICTED = "PortRestricted"
    SYMMETRIC = "Symmetric"
    UNKNOWN = "Unknown"


NAT_SUCCESS_RATES = {
    NatType.OPEN_INTERNET: 95,
    NatType.FULL_CONE: 90,
    NatType.RESTRICTED_CONE: 75,
    NatType.PORT_RESTRICTED: 50,
    NatType.SYMMETRIC: 20,
    NatType.UNKNOWN: 50,
}


@dataclass(frozen=True)
class NatClassification:
    nat_type: NatType
    success: int

    def to_dict(self) -> dict:
        return {"type": self.nat_type.value, "success": self.success}


def _classification(nat_type: NatType) -> NatClassification:
    return NatClassification(nat_type, NAT_SUCCESS_RATES[nat_type])


def candidate_type(candidate: Union[str, dict]) -> Optional[str]:
    """
    提取候选类型

    支持两种输入：
    - ICE 候选字符串，如 "candidate:1 1 udp 2122 192.168.1.2 5000 typ host"
    - 字典，如 {"type": "srflx", "address": "203.0.113.5", "port": 5000}
    """
    if isinstance(candidate, dict):
        raw = candidate.get("type") or ""
        if not raw and isinstance(candidate.get("candidate"), str):
            return candidate_type(candidate["candidate"])
    elif isinstance(candidate, str):
        match = CANDIDATE_TYPE_PATTERN.search(candidate)
        raw = match.group(1) if match else ""
    else:
        return None
    return CANDIDATE_TYPE_ALIASES.get(str(raw).strip().lower())


def candidate_endpoint(candidate: Union[str, dict]) -> Optional[str]:
    """
    候选的对外地址:端口，用于统计不同的 srflx 映射

    取不到地址时返回 None，这类候选各自单独计数
    """
    if isinstance(candidate, dict):
        if isinstance(candidate.get("candidate"), str) and "address" not in candidate:
            return candidate_endpoint(candidate["candidate"])
        address = candidate.get("address") or candidate.get("ip")
        if not address:
            return None
        return f"{address}:{candidate.get('port', '')}"

    fields = candidate.split()
    # candidate:<foundation> <component> <protocol> <priority> <address> <port> typ ...
    if len(fields) >= 6:
        return f"{fields[4]}:{fields[5]}"
    return None


def classify_candidates(candidates: Iterable[Union[str, dict]]) -> NatClassification:
    """
    按顺序应用判定规则：
    1. 有 host 且没有 srflx → 开放网络
    2. 有 srflx：按不同的 srflx 映射数量区分 1 / 2 / 3+
    3. 只有 relay → 对称型
    4. 什么都没有 → 未知
    """
    has_host = False
    has_relay = False
    srflx_endpoints = set()
    anonymous_srflx = 0

    for candidate in candidates or []:
        kind = candidate_type(candidate)
        if kind == "host":
            has_host = True
        elif kind == "srflx":
            endpoint = candidate_endpoint(candidate)
            if endpoint is None:
                anonymous_srflx += 1
            else:
                srflx_endpoints.add(endpoint)
        elif kind == "relay":
            has_relay = True

    srflx_count = len(srflx_endpoints) + anonymous_srflx

    if has_host and not srflx_count:
        return _classification(NatType.OPEN_INTERNET)

    if srflx_count:
        if srflx_count == 1:
            return _classification(NatType.FULL_CONE)
        if srflx_count == 2:
            return _classification(NatType.RESTRICTED_CONE)
        return _classification(NatType.PORT_RESTRICTED)

    if has_relay:
        return _classification(NatType.SYMMETRIC)

    return _classification(NatType.UNKNOWN)


def combined_success(a: int, b: int) -> int:
    """
    两端合并后的直连成功率

    一般取两端较小值；两端都 ≥90 时取平均值并封顶 95
    """
    if a >= 90 and b >= 90:
        return min(95, (a + b) // 2)
    return min(a, b)
