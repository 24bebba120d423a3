from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from app.config import settings
from app.schemas.response import FeaturesResponse, HealthResponse, StatsResponse
from app.utils.response import success_response
from app.extensions import get_db
from app.services.coordinator import coordinator
from app.services.stats_service import stats_service

router = APIRouter(tags=["系统状态"])


@router.get("/health")
async def check_health(db: Session = Depends(get_db)):
    """
    服务健康检查
    """
    db_status = "unknown"

    try:
        # 使用text()包装SQL语句
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as e:
        error_msg = str(e)
        # 截断错误信息，避免太长
        if len(error_msg) > 50:
            error_msg = error_msg[:50] + "..."
        db_status = f"disconnected ({error_msg})"

    health = HealthResponse(
        status="healthy",
        activeSessions=coordinator.active_session_count,
        stats=StatsResponse(**stats_service.get_stats()),
        database=db_status,
        timestamp=datetime.now(timezone.utc),
    )
    return success_response(data=health.model_dump(mode="json"))


@router.get(f"{settings.API_PREFIX}/features")
async def get_features():
    """公开的功能开关和存储策略，前端据此决定可选的传输模式"""
    features = FeaturesResponse(
        memoryStreaming=settings.FEATURE_MEMORY_STREAMING,
        serverStorage=settings.FEATURE_SERVER_STORAGE,
        p2pDirect=settings.FEATURE_P2P_DIRECT,
        retentionHours=settings.FILE_RETENTION_HOURS,
        deleteOnDownload=settings.DELETE_ON_DOWNLOAD,
        natProbeTimeoutSeconds=settings.NAT_PROBE_TIMEOUT_SECONDS,
    )
    return success_response(data=features.model_dump())
