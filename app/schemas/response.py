from pydantic import BaseModel, Field
from typing import Optional, Union
from datetime import datetime


class FileInfoResponse(BaseModel):
    """文件信息"""
    name: str
    size: int
    type: str
    hash: Optional[str] = None


class UploadFileResponse(BaseModel):
    """服务器存储模式上传响应"""
    pickupCode: str = Field(..., description="取件码")
    retentionHours: Union[int, str] = Field(..., description="保留时长（小时），或 '下载后删除'")
    deleteOnDownload: bool
    fileInfo: FileInfoResponse


class StoredFileResponse(BaseModel):
    """已存储文件的元数据"""
    pickupCode: str
    fileInfo: FileInfoResponse
    createdAt: datetime
    expireAt: Optional[datetime] = Field(None, description="到期时间，下载后删除模式为空")


class FeaturesResponse(BaseModel):
    """公开的功能开关"""
    memoryStreaming: bool
    serverStorage: bool
    p2pDirect: bool
    retentionHours: int
    deleteOnDownload: bool
    natProbeTimeoutSeconds: int


class StatsResponse(BaseModel):
    todayTransfers: int = 0
    totalTransfers: int = 0


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="服务状态")
    activeSessions: int
    stats: StatsResponse
    database: str
    timestamp: datetime
