import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.extensions import SessionLocal
from app.services.coordinator import SessionCoordinator, coordinator
from app.services.storage_service import BlobStore, blob_store

logger = logging.getLogger(__name__)


def run_cleanup_cycle(db: Optional[Session] = None,
                      session_coordinator: Optional[SessionCoordinator] = None,
                      store: Optional[BlobStore] = None) -> dict:
    """
    执行一轮清理

    清理范围：
    1. 创建超过 SESSION_MAX_AGE_SECONDS 的会话（接收方始终未加入或传输卡住）
    2. 超过保留时长的存储文件
    3. 没有元数据记录的孤立文件
    4. 限流器中已滑出窗口的客户端记录
    """
    session_coordinator = session_coordinator or coordinator
    store = store or blob_store

    expired_sessions = session_coordinator.expire_idle()
    rate_limit_entries = (
        session_coordinator.create_limiter.cleanup()
        + session_coordinator.join_limiter.cleanup()
    )

    own_db = db is None
    db = db or SessionLocal()
    try:
        expired_files = store.purge_expired(db)
        orphan_files = store.purge_orphans(db)
    finally:
        if own_db:
            db.close()

    return {
        "expiredSessions": expired_sessions,
        "expiredFiles": len(expired_files),
        "orphanFiles": len(orphan_files),
        "rateLimitEntries": rate_limit_entries,
    }


async def cleanup_loop(interval_seconds: Optional[float] = None):
    """
    定时清理任务，在应用生命周期内运行

    单轮失败只记录日志，不影响下一轮
    """
    interval = interval_seconds or settings.SESSION_SWEEP_INTERVAL_SECONDS
    logger.info(f"定时清理任务已启动，间隔 {interval} 秒")
    while True:
        await asyncio.sleep(interval)
        try:
            result = run_cleanup_cycle()
            logger.info(f"定时清理完成: {result}")
        except Exception as e:
            logger.error(f"定时清理失败: {e}", exc_info=True)
