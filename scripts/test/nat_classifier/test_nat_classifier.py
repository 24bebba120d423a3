"""
NAT 类型判定测试

- 候选类型解析（ICE 字符串 / 字典）
- 判定规则 1~4
- 两端合并成功率
"""

import sys
import logging
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from test_utils import *

from app.services.nat_classifier import (
    NatType, candidate_type, classify_candidates, combined_success
)

logger = logging.getLogger(__name__)

HOST = "candidate:1 1 udp 2122260223 192.168.1.20 54400 typ host generation 0"
SRFLX_A = "candidate:2 1 udp 1686052607 203.0.113.5 61000 typ srflx raddr 192.168.1.20 rport 54400"
SRFLX_B = "candidate:3 1 udp 1686052607 203.0.113.5 61001 typ srflx raddr 192.168.1.20 rport 54401"
SRFLX_C = "candidate:4 1 udp 1686052607 203.0.113.5 61002 typ srflx raddr 192.168.1.20 rport 54402"
RELAY = "candidate:5 1 udp 41885439 198.51.100.7 3478 typ relay raddr 203.0.113.5 rport 61000"


def test_candidate_type_parsing():
    log_test_start("候选类型解析")
    assert candidate_type(HOST) == "host"
    assert candidate_type(SRFLX_A) == "srflx"
    assert candidate_type(RELAY) == "relay"
    assert candidate_type({"type": "server-reflexive", "address": "1.2.3.4", "port": 1}) == "srflx"
    assert candidate_type({"type": "relayed"}) == "relay"
    assert candidate_type({"candidate": HOST}) == "host"
    assert candidate_type("garbage") is None
    assert candidate_type(42) is None
    log_success("候选类型解析正确")


def test_host_only_is_open_internet():
    log_test_start("只有 host 候选 → 开放网络")
    result = classify_candidates([HOST])
    assert result.nat_type == NatType.OPEN_INTERNET
    assert result.success == 95
    # host 与 relay 同时存在，没有 srflx，仍是开放网络
    assert classify_candidates([HOST, RELAY]).nat_type == NatType.OPEN_INTERNET
    log_success("OpenInternet / 95")


def test_srflx_counts():
    log_test_start("按不同的 srflx 映射数量判定")
    one = classify_candidates([HOST, SRFLX_A])
    assert (one.nat_type, one.success) == (NatType.FULL_CONE, 90)

    # 同一映射重复上报只算一个
    dup = classify_candidates([SRFLX_A, SRFLX_A])
    assert dup.nat_type == NatType.FULL_CONE

    two = classify_candidates([SRFLX_A, SRFLX_B])
    assert (two.nat_type, two.success) == (NatType.RESTRICTED_CONE, 75)

    three = classify_candidates([SRFLX_A, SRFLX_B, SRFLX_C, RELAY])
    assert (three.nat_type, three.success) == (NatType.PORT_RESTRICTED, 50)

    dicts = classify_candidates([
        {"type": "srflx", "address": "203.0.113.5", "port": 1},
        {"type": "srflx", "address": "203.0.113.5", "port": 2},
    ])
    assert dicts.nat_type == NatType.RESTRICTED_CONE

    # 取不到地址的 srflx 候选不合并，各算一个映射
    anonymous = classify_candidates([{"type": "server-reflexive"}, {"type": "server-reflexive"}])
    assert (anonymous.nat_type, anonymous.success) == (NatType.RESTRICTED_CONE, 75)
    mixed = classify_candidates([SRFLX_A, "typ srflx", {"type": "srflx"}])
    assert mixed.nat_type == NatType.PORT_RESTRICTED
    log_success("FullCone / RestrictedCone / PortRestricted 判定正确")


def test_relay_only_is_symmetric():
    log_test_start("只有 relay 候选 → 对称型")
    result = classify_candidates([RELAY])
    assert (result.nat_type, result.success) == (NatType.SYMMETRIC, 20)
    log_success("Symmetric / 20")


def test_no_candidates_is_unknown():
    log_test_start("没有候选 → 未知")
    for candidates in ([], None, ["nonsense"]):
        result = classify_candidates(candidates)
        assert (result.nat_type, result.success) == (NatType.UNKNOWN, 50)
    assert classify_candidates([]).to_dict() == {"type": "Unknown", "success": 50}
    log_success("Unknown / 50")


def test_combined_success():
    log_test_start("两端合并成功率")
    assert combined_success(90, 90) == 90
    assert combined_success(95, 20) == 20
    assert combined_success(95, 95) == 95
    assert combined_success(95, 90) == 92
    assert combined_success(75, 50) == 50
    assert combined_success(90, 75) == 75
    log_success("合并规则正确")


def main():
    return run_test_sections("NAT 类型判定测试", [
        ("候选解析", [test_candidate_type_parsing]),
        ("判定规则", [
            test_host_only_is_open_internet,
            test_srflx_counts,
            test_relay_only_is_symmetric,
            test_no_candidates_is_unknown,
        ]),
        ("合并成功率", [test_combined_success]),
    ])


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
