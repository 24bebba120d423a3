"""
服务器存储模式

发送方先把文件整体上传到服务器换取取件码，接收方之后凭取件码独立下载。
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from app.config import settings
from app.errors import InvalidCodeError, RateLimitedError, UnauthorizedError
from app.extensions import get_db
from app.routes.relay import content_disposition
from app.routes.ws import client_address
from app.schemas.response import FileInfoResponse, StoredFileResponse, UploadFileResponse
from app.services.coordinator import coordinator
from app.services.rate_limiter import create_limiter
from app.services.storage_service import blob_store
from app.utils.response import created_response, success_response
from app.utils.validation import normalize_pickup_code

logger = logging.getLogger(__name__)

router = APIRouter(tags=["服务器存储"])


def _require_storage_enabled():
    if not settings.FEATURE_SERVER_STORAGE:
        raise UnauthorizedError(msg="服务器存储模式未启用")


def _normalize(code: str) -> str:
    pickup_code = normalize_pickup_code(code)
    if pickup_code is None:
        raise InvalidCodeError(code)
    return pickup_code


@router.post("/upload-file", status_code=201)
async def upload_file(request: Request, file: UploadFile = File(...), db: Session = Depends(get_db)):
    """上传文件，返回取件码和保留策略"""
    _require_storage_enabled()
    if not create_limiter.allow(client_address(request.headers, request.client)):
        raise RateLimitedError("上传过于频繁，请稍后再试")

    # 落盘和写数据库都是阻塞操作，放到线程池执行
    loop = asyncio.get_running_loop()
    stored = await loop.run_in_executor(None, lambda: blob_store.put(
        file.file,
        file.filename or "file",
        file.content_type,
        is_code_taken=lambda code: code in coordinator.registry,
        db=db,
    ))
    result = UploadFileResponse(
        pickupCode=stored["pickupCode"],
        retentionHours="下载后删除" if settings.DELETE_ON_DOWNLOAD else settings.FILE_RETENTION_HOURS,
        deleteOnDownload=settings.DELETE_ON_DOWNLOAD,
        fileInfo=FileInfoResponse(**stored["fileInfo"]),
    )
    return created_response(data=result.model_dump(exclude_none=True), msg="上传成功")


@router.get("/stored-file/{code}")
async def get_stored_file(code: str, db: Session = Depends(get_db)):
    """查询已存储文件的元数据"""
    _require_storage_enabled()
    pickup_code = _normalize(code)
    stored = blob_store.get(pickup_code, db)
    if stored is None:
        raise InvalidCodeError(pickup_code)
    return success_response(data=StoredFileResponse(**stored).model_dump(mode="json", exclude_none=True))


@router.get("/download-stored/{code}")
async def download_stored(code: str, db: Session = Depends(get_db)):
    """下载已存储文件，开启下载后删除时在响应完成后删除"""
    _require_storage_enabled()
    pickup_code = _normalize(code)
    stored, path = blob_store.open(pickup_code, db)
    file_info = stored["fileInfo"]
    logger.info(f"[{pickup_code}] 开始下载存储文件: {file_info['name']}")

    headers = {
        "Content-Disposition": content_disposition(file_info["name"]),
        "Content-Length": str(file_info["size"]),
        "Cache-Control": "no-cache",
    }
    return StreamingResponse(
        blob_store.iter_content(path),
        media_type=file_info["type"],
        headers=headers,
        background=BackgroundTask(blob_store.mark_downloaded, pickup_code),
    )
