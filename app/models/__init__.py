"""模型统一导出入口"""
from .base import Base
from .stored_file import StoredFile

__all__ = ["Base", "StoredFile"]
