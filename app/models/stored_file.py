from sqlalchemy import Column, String, BigInteger, Integer
from .base import BaseModel


class StoredFile(BaseModel):
    """服务器存储模式下的文件元数据表（文件内容在磁盘上，以随机十六进制名保存）"""
    __tablename__ = "stored_files"

    code = Column(String(4), primary_key=True, comment="取件码（与活跃会话共享命名空间）")
    stored_name = Column(String(64), nullable=False, unique=True, comment="磁盘上的随机文件名")
    original_name = Column(String(255), nullable=False, comment="文件原始名称")
    size = Column(BigInteger, nullable=False, comment="文件大小（字节）")
    mime_type = Column(String(100), comment="文件MIME类型")
    download_count = Column(Integer, default=0, nullable=False, comment="完整下载次数")

    def __repr__(self):
        return f"<StoredFile(code={self.code}, original_name={self.original_name})>"
