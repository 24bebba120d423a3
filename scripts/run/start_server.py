"""
启动 File-Rocket 文件闪传服务器（带环境检查）
"""
import sys
import os
import re
import socket
import logging
from pathlib import Path

# 添加项目根目录到 Python 路径
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

import redis
import uvicorn
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings


def get_local_ip():
    """获取本机内网IP"""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def check_database() -> bool:
    """检查元数据库是否可连接（服务器存储模式使用）"""
    try:
        engine = create_engine(settings.DATABASE_URL)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        engine.dispose()
        print(f"[✓] 数据库连接成功: {settings.DATABASE_URL}")
        return True
    except SQLAlchemyError as e:
        print(f"[✗] 数据库连接失败: {e}")
        return False


def check_redis():
    """检查 Redis（可选，不可用时统计和限流回退到内存）"""
    if not settings.REDIS_ENABLED:
        print("   Redis 未启用，统计和限流使用进程内存")
        return
    try:
        client = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD or None,
            socket_connect_timeout=2,
        )
        client.ping()
        print(f"[✓] Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    except redis.RedisError as e:
        print(f"[✗] Redis 连接失败（服务器将继续启动，回退到内存）: {e}")


def check_storage_dir():
    if not settings.FEATURE_SERVER_STORAGE:
        return
    upload_dir = Path(settings.STORAGE_UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    print(f"[✓] 存储目录: {upload_dir.resolve()}")


class AccessLogFilter(logging.Filter):
    """过滤频繁请求的访问日志"""
    FILTERED_PATTERNS = [
        r'/health',  # 健康检查
        r'/api/features',  # 功能开关查询
    ]

    def filter(self, record):
        message = record.getMessage()
        for pattern in self.FILTERED_PATTERNS:
            if re.search(pattern, message):
                return False
        return True


if __name__ == "__main__":
    print("=" * 50)
    print("    环境检查")
    print("=" * 50)
    if not check_database():
        print("请检查 DATABASE_URL 配置后重新启动")
        sys.exit(1)
    check_redis()
    check_storage_dir()
    print()

    local_ip = get_local_ip()
    port = settings.PORT
    print("=" * 50)
    print(f"🚀 {settings.APP_NAME}")
    print("=" * 50)
    print("🔧 传输模式：")
    print(f"   • 内存中转: {'开启' if settings.FEATURE_MEMORY_STREAMING else '关闭'}")
    print(f"   • P2P 直连: {'开启' if settings.FEATURE_P2P_DIRECT else '关闭'}")
    print(f"   • 服务器存储: {'开启' if settings.FEATURE_SERVER_STORAGE else '关闭'}")
    print("")
    print(f"   • http://{local_ip}:{port}")
    print(f"   • 控制通道: ws://{local_ip}:{port}/ws")
    print(f"   • 健康检查: http://{local_ip}:{port}/health")
    print("")
    print("⚠️  会话保存在进程内存中，只能以单 worker 运行")
    print("=" * 50)

    logging.getLogger("uvicorn.access").addFilter(AccessLogFilter())

    try:
        uvicorn.run(
            "app.main:app",
            host=settings.HOST,
            port=port,
            workers=1,
            reload=settings.DEBUG,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n👋 服务器已停止")
