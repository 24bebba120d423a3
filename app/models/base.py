from datetime import datetime, timezone
from sqlalchemy import Column, DateTime
from sqlalchemy.orm import declarative_base

# 定义基类，所有模型继承此类
Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BaseModel(Base):
    """通用模型基类，提取公共字段"""
    __abstract__ = True  # 标记为抽象类，不生成实际表

    created_at = Column(DateTime, default=utc_now, comment="创建时间（UTC）")
    updated_at = Column(
        DateTime,
        default=utc_now,
        onupdate=utc_now,
        comment="更新时间（UTC）"
    )
