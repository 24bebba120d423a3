import uvicorn
import socket

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


if __name__ == "__main__":
    local_ip = get_local_ip()
    port = settings.PORT

    print("=" * 50)
    print(f"🚀 {settings.APP_NAME}")
    print("=" * 50)
    print(f"   • http://127.0.0.1:{port}")
    print(f"   • http://{local_ip}:{port}")
    print(f"   • 控制通道: ws://{local_ip}:{port}/ws")
    print(f"   • 文档: http://{local_ip}:{port}/docs")
    print(f"   • 健康检查: http://{local_ip}:{port}/health")
    print("")
    print("⚠️  注意：")
    print("   • 会话只保存在内存中，重启服务器后所有取件码失效")
    print("   • 按 Ctrl+C 停止服务器")
    print("=" * 50)

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=port,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
