from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import settings
from .extensions import engine
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from app.errors import TransferError
from app.models import Base
from app.services.cleanup_service import cleanup_loop, run_cleanup_cycle
from app.utils.response import transfer_error_response
import app.routes.health as health_router
import app.routes.relay as relay_router
import app.routes.storage as storage_router
import app.routes.ws as ws_router
import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理
    - 启动时：创建数据库表（如果不存在），执行一轮清理，启动定时清理任务
    - 关闭时：停止定时清理任务
    """
    try:
        logger.info("正在检查并创建数据库表（如果不存在）...")
        Base.metadata.create_all(bind=engine)
        logger.info("数据库表检查完成，所有表已就绪")
    except SQLAlchemyError as e:
        logger.error("=" * 60)
        logger.error("数据库连接失败，无法创建表")
        logger.error(f"错误详情: {e}")
        logger.error("请检查 DATABASE_URL 配置和数据库文件所在目录的写权限")
        logger.error("=" * 60)
        raise RuntimeError(f"数据库初始化失败: {e}") from e

    # 清理上次运行遗留的过期文件和孤立文件
    run_cleanup_cycle()
    cleanup_task = asyncio.create_task(cleanup_loop())

    yield

    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task


# 创建FastAPI应用
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TransferError)
async def handle_transfer_error(request: Request, exc: TransferError):
    """业务异常统一翻译成标准响应格式"""
    logger.info(f"[{exc.pickup_code or '-'}] {request.method} {request.url.path} 失败: {exc.code} {exc.msg}")
    return JSONResponse(status_code=exc.status_code, content=transfer_error_response(exc))


# 注册路由
app.include_router(health_router.router)
app.include_router(ws_router.router)
app.include_router(relay_router.router, prefix=settings.API_PREFIX)
app.include_router(storage_router.router, prefix=settings.API_PREFIX)


@app.get("/")
async def root():
    """返回 API 信息"""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "websocket": "/ws",
    }
