"""SQLAlchemy基类"""
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase


class Base(AsyncAttrs, DeclarativeBase):
    """所有模型的基类"""
    pass


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与 SQLite 存储保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
