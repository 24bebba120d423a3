"""
会话注册表测试

- 创建会话：取件码唯一、与外部占用检查（服务器存储）共享命名空间
- 查找 / 删除 / 回收取件码
- 按连接查找会话、按创建时间筛选过期会话
"""

import sys
import logging
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from test_utils import *

from app.errors import CodeSpaceExhaustedError
from app.services.session_registry import (
    FileInfo, SessionRegistry, SessionState, TransferSession
)
from app.utils.validation import validate_pickup_code

logger = logging.getLogger(__name__)


def test_create_unique_codes():
    log_test_start("并发活跃会话的取件码唯一")
    registry = SessionRegistry()
    codes = set()
    for i in range(500):
        session = registry.create(RecordingPeer(f"sender-{i}"))
        assert validate_pickup_code(session.code)
        assert session.state == SessionState.AWAITING_RECEIVER
        assert session.receiver is None
        codes.add(session.code)
    assert len(codes) == 500
    assert len(registry) == 500
    log_success("500 个活跃会话取件码互不重复")


def test_extra_code_check_is_respected():
    log_test_start("外部占用的取件码不会分配给会话")
    checked = []

    def stored_code_taken(code):
        checked.append(code)
        # 前两次生成的取件码视为已被服务器存储占用
        return len(checked) <= 2

    registry = SessionRegistry(extra_code_check=stored_code_taken)
    session = registry.create(RecordingPeer())
    assert session.code == checked[-1]
    assert session.code not in checked[:2]
    log_success("跳过了已被存储文件占用的取件码")


def test_create_exhausted_leaves_no_session():
    log_test_start("取件码耗尽时不插入半成品会话")
    registry = SessionRegistry(extra_code_check=lambda code: True)
    try:
        registry.create(RecordingPeer(), max_attempts=3)
        raise AssertionError("应当抛出 CodeSpaceExhaustedError")
    except CodeSpaceExhaustedError:
        pass
    assert len(registry) == 0
    log_success("注册表保持为空")


def test_get_remove_and_recycle():
    log_test_start("查找、删除与取件码回收")
    registry = SessionRegistry()
    sender = RecordingPeer("sender")
    session = registry.create(sender)

    assert registry.get(session.code) is session
    assert session.code in registry
    assert registry.get("") is None
    assert registry.get(None) is None

    removed = registry.remove(session.code)
    assert removed is session
    assert registry.get(session.code) is None
    assert registry.remove(session.code) is None
    assert not registry.is_code_taken(session.code)
    log_success("删除后取件码可被回收")


def test_sessions_for_peer_and_roles():
    log_test_start("按连接查找会话与角色判断")
    registry = SessionRegistry()
    alice, bob, carol = RecordingPeer("alice"), RecordingPeer("bob"), RecordingPeer("carol")

    s1 = registry.create(alice)
    s2 = registry.create(bob)
    s2.receiver = alice

    assert set(s.code for s in registry.sessions_for_peer(alice)) == {s1.code, s2.code}
    assert registry.sessions_for_peer(carol) == []

    assert s1.role_of(alice) == "sender"
    assert s2.role_of(alice) == "receiver"
    assert s2.role_of(carol) is None
    assert s2.other_peer(alice) is bob
    assert s2.other_peer(bob) is alice
    assert s1.other_peer(alice) is None
    log_success("角色与对端判断正确")


def test_expired_sessions():
    log_test_start("按创建时间筛选过期会话")
    registry = SessionRegistry()
    old = registry.create(RecordingPeer("old"))
    fresh = registry.create(RecordingPeer("fresh"))
    old.created_at = 1000.0
    fresh.created_at = 1000.0 + 1700

    expired = registry.expired(1800, now=1000.0 + 1801)
    assert expired == [old]
    assert registry.expired(1800, now=1000.0 + 100) == []
    log_success("只有超过 30 分钟的会话被筛出")


def test_file_info_is_immutable():
    log_test_start("文件信息不可修改")
    info = FileInfo(name="x.pdf", size=1000, mime_type="application/pdf")
    try:
        info.size = 5
        raise AssertionError("FileInfo 应当不可修改")
    except AttributeError:
        pass
    assert info.to_dict() == {"name": "x.pdf", "size": 1000, "type": "application/pdf"}
    assert FileInfo("a", 1, hash="abc").to_dict()["hash"] == "abc"
    log_success("FileInfo 为只读值对象")


def test_transition_logs_and_updates():
    session = TransferSession(code="A1B2", sender=RecordingPeer())
    session.transition(SessionState.MODE_COMMITTED)
    assert session.state == SessionState.MODE_COMMITTED
    assert not session.is_terminal
    session.transition(SessionState.ABORTED)
    assert session.is_terminal


def main():
    return run_test_sections("会话注册表测试", [
        ("创建与唯一性", [
            test_create_unique_codes,
            test_extra_code_check_is_respected,
            test_create_exhausted_leaves_no_session,
        ]),
        ("查找与删除", [
            test_get_remove_and_recycle,
            test_sessions_for_peer_and_roles,
            test_expired_sessions,
        ]),
        ("会话记录", [
            test_file_info_is_immutable,
            test_transition_logs_and_updates,
        ]),
    ])


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
