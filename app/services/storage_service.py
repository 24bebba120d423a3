"""
服务器存储模式的文件仓库

- 元数据保存在 stored_files 表
- 文件内容以随机十六进制名保存在 STORAGE_UPLOAD_DIR 下
- 保留策略：超过 FILE_RETENTION_HOURS 自动删除；或开启 DELETE_ON_DOWNLOAD 时首次完整下载后删除
"""
import os
import secrets
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import InvalidCodeError, ProtocolViolationError
from app.extensions import SessionLocal
from app.models.stored_file import StoredFile
from app.models.base import utc_now
from app.utils.pickup_code import generate_unique_pickup_code

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 512 * 1024


class BlobStore:

    def __init__(self, upload_dir: Optional[str] = None, session_factory: Callable[[], Session] = SessionLocal):
        self.upload_dir = Path(upload_dir or settings.STORAGE_UPLOAD_DIR)
        self.session_factory = session_factory

    @contextmanager
    def _session(self, db: Optional[Session] = None):
        """优先使用调用方传入的数据库会话，否则临时打开一个"""
        if db is not None:
            yield db
            return
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _path(self, stored_name: str) -> Path:
        return self.upload_dir / stored_name

    @staticmethod
    def expire_at(record: StoredFile) -> Optional[datetime]:
        if settings.DELETE_ON_DOWNLOAD:
            return None
        return record.created_at + timedelta(hours=settings.FILE_RETENTION_HOURS)

    @staticmethod
    def to_dict(record: StoredFile) -> dict:
        return {
            "pickupCode": record.code,
            "fileInfo": {
                "name": record.original_name,
                "size": record.size,
                "type": record.mime_type or "application/octet-stream",
            },
            "createdAt": record.created_at,
            "expireAt": BlobStore.expire_at(record),
        }

    def exists(self, code: str, db: Optional[Session] = None) -> bool:
        with self._session(db) as session:
            return session.get(StoredFile, code) is not None

    def put(self, source: BinaryIO, original_name: str, mime_type: Optional[str] = None,
            is_code_taken: Optional[Callable[[str], bool]] = None,
            max_size: Optional[int] = None, db: Optional[Session] = None) -> dict:
        """
        保存上传的文件，返回元数据（含新取件码）

        参数：
        - source: 可 read(n) 的二进制文件对象
        - is_code_taken: 额外的取件码占用检查（活跃会话）
        - max_size: 大小上限，超过时删除已写入的部分并抛 ProtocolViolationError
        """
        max_size = settings.MAX_UPLOAD_SIZE if max_size is None else max_size
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        stored_name = secrets.token_hex(16)
        path = self._path(stored_name)

        size = 0
        try:
            with open(path, "wb") as f:
                while True:
                    block = source.read(COPY_BUFFER_SIZE)
                    if not block:
                        break
                    size += len(block)
                    if size > max_size:
                        raise ProtocolViolationError(f"文件超过大小上限 {max_size} 字节")
                    f.write(block)
        except BaseException:
            path.unlink(missing_ok=True)
            raise

        with self._session(db) as session:
            def taken(code: str) -> bool:
                if is_code_taken is not None and is_code_taken(code):
                    return True
                return session.get(StoredFile, code) is not None

            try:
                code = generate_unique_pickup_code(taken)
                record = StoredFile(
                    code=code,
                    stored_name=stored_name,
                    original_name=original_name,
                    size=size,
                    mime_type=mime_type or "application/octet-stream",
                )
                session.add(record)
                session.commit()
                session.refresh(record)
            except BaseException:
                session.rollback()
                path.unlink(missing_ok=True)
                raise

            logger.info(f"[{code}] 文件已存储: {original_name} ({size} 字节)")
            return self.to_dict(record)

    def get(self, code: str, db: Optional[Session] = None) -> Optional[dict]:
        """返回元数据，不存在时返回 None"""
        with self._session(db) as session:
            record = session.get(StoredFile, code)
            return self.to_dict(record) if record else None

    def open(self, code: str, db: Optional[Session] = None) -> Tuple[dict, Path]:
        """
        返回 (元数据, 磁盘路径)

        异常：
        - InvalidCodeError: 记录不存在或磁盘文件已丢失
        """
        with self._session(db) as session:
            record = session.get(StoredFile, code)
            if record is None:
                raise InvalidCodeError(code)
            path = self._path(record.stored_name)
            if not path.exists():
                logger.error(f"[{code}] 元数据存在但文件缺失: {path}")
                raise InvalidCodeError(code)
            return self.to_dict(record), path

    def iter_content(self, path: Path, chunk_size: int = COPY_BUFFER_SIZE) -> Iterator[bytes]:
        with open(path, "rb") as f:
            while True:
                block = f.read(chunk_size)
                if not block:
                    break
                yield block

    def read(self, code: str, db: Optional[Session] = None) -> bytes:
        """读取完整内容（小文件、测试使用）"""
        _, path = self.open(code, db)
        return path.read_bytes()

    def mark_downloaded(self, code: str, db: Optional[Session] = None):
        """一次完整下载结束；开启下载后删除时删除文件"""
        with self._session(db) as session:
            record = session.get(StoredFile, code)
            if record is None:
                return
            record.download_count = (record.download_count or 0) + 1
            session.commit()
            logger.info(f"[{code}] 已完成下载，第 {record.download_count} 次")

        if settings.DELETE_ON_DOWNLOAD:
            self.delete(code, db)

    def delete(self, code: str, db: Optional[Session] = None) -> bool:
        with self._session(db) as session:
            record = session.get(StoredFile, code)
            if record is None:
                return False
            self._path(record.stored_name).unlink(missing_ok=True)
            session.delete(record)
            session.commit()
            logger.info(f"[{code}] 存储文件已删除")
            return True

    def purge_expired(self, db: Optional[Session] = None, now: Optional[datetime] = None) -> List[str]:
        """删除超过保留时长的文件（下载后删除模式不按时间清理）"""
        if settings.DELETE_ON_DOWNLOAD:
            return []
        now = now or utc_now()
        cutoff = now - timedelta(hours=settings.FILE_RETENTION_HOURS)
        removed = []
        with self._session(db) as session:
            expired = session.query(StoredFile).filter(StoredFile.created_at < cutoff).all()
            for record in expired:
                self._path(record.stored_name).unlink(missing_ok=True)
                session.delete(record)
                removed.append(record.code)
            session.commit()
        if removed:
            logger.info(f"清理过期存储文件 {len(removed)} 个: {removed}")
        return removed

    def purge_orphans(self, db: Optional[Session] = None, now: Optional[float] = None) -> List[str]:
        """删除没有元数据记录、且足够旧的磁盘文件（上传中途失败留下的）"""
        if not self.upload_dir.exists():
            return []
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        with self._session(db) as session:
            known = {name for (name,) in session.query(StoredFile.stored_name).all()}

        removed = []
        for entry in os.scandir(self.upload_dir):
            if not entry.is_file() or entry.name in known:
                continue
            if now - entry.stat().st_mtime > settings.ORPHAN_FILE_AGE_SECONDS:
                Path(entry.path).unlink(missing_ok=True)
                removed.append(entry.name)
        if removed:
            logger.info(f"清理孤立文件 {len(removed)} 个")
        return removed


blob_store = BlobStore()
