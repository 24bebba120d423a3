"""
内存流式中转模式下载接口

接收方打开 GET /api/download/{code} 后，发送方通过控制通道提交的分块
会直接写入这个响应体，服务器不落盘也不缓存整个文件。
"""
import logging
from urllib.parse import quote

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from app.errors import InvalidCodeError
from app.services.coordinator import coordinator
from app.utils.validation import normalize_pickup_code

logger = logging.getLogger(__name__)

router = APIRouter(tags=["内存中转"])


def content_disposition(filename: str) -> str:
    """附件文件名，非 ASCII 字符按 RFC 5987 编码"""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "_").replace("?", "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


@router.get("/download/{code}")
async def download_relay(code: str):
    """
    接收方下载（中转模式）

    - 会话必须处于 relay 模式、已声明文件信息且接收方已加入
    - 同一取件码同一时间只允许一个下载连接
    - 连接中途断开会中断输出流，发送方收到 receiver-disconnected
    """
    pickup_code = normalize_pickup_code(code)
    if pickup_code is None:
        raise InvalidCodeError(code)

    session, sink = coordinator.open_download(pickup_code)
    file_info = session.file_info
    logger.info(f"[{pickup_code}] 接收方开始下载: {file_info.name}")

    async def body():
        try:
            async for chunk in sink.iter_chunks():
                yield chunk
        finally:
            if not sink.finished:
                sink.abort("下载连接中断")

    headers = {
        "Content-Disposition": content_disposition(file_info.name),
        "Content-Length": str(file_info.size),
        "Cache-Control": "no-cache",
    }
    return StreamingResponse(body(), media_type=file_info.mime_type, headers=headers)
