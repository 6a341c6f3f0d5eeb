"""论文索引状态的CRUD操作

Review note:
- 状态迁移统一走 `transition`：UPDATE ... WHERE version = :seen，成功后 version + 1。
- `touch_usage` 只更新使用时间，不递增 version，避免打断正在进行的索引写回。
- 分页按主键游标（id > cursor），与表大小无关。
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime

from paper_rag.models.base import utcnow
from paper_rag.models.paper_index import PaperIndexRecord


class CRUDPaperIndex:
    """论文索引状态CRUD操作"""

    async def get(self, db: AsyncSession, record_id: int) -> Optional[PaperIndexRecord]:
        """按主键获取"""
        result = await db.execute(
            select(PaperIndexRecord).where(PaperIndexRecord.id == record_id)
        )
        return result.scalar_one_or_none()

    async def get_by_paper_id(self, db: AsyncSession, paper_id: str) -> Optional[PaperIndexRecord]:
        """按论文ID获取"""
        result = await db.execute(
            select(PaperIndexRecord).where(PaperIndexRecord.paper_id == paper_id)
        )
        return result.scalar_one_or_none()

    async def create(self, db: AsyncSession, **fields: Any) -> PaperIndexRecord:
        """创建记录；paper_id 冲突时抛出 IntegrityError，由调用方处理"""
        now = utcnow()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        fields.setdefault("version", 0)
        db_obj = PaperIndexRecord(**fields)
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        return db_obj

    async def transition(
        self,
        db: AsyncSession,
        record_id: int,
        expected_version: int,
        values: Dict[str, Any],
        *,
        expected_status: Optional[str] = None,
        expected_last_used_at: Any = ...,
    ) -> bool:
        """条件更新；返回是否命中（False 表示期间被其他任务修改）"""
        conditions = [
            PaperIndexRecord.id == record_id,
            PaperIndexRecord.version == expected_version,
        ]
        if expected_status is not None:
            conditions.append(PaperIndexRecord.status == expected_status)
        if expected_last_used_at is not ...:
            if expected_last_used_at is None:
                conditions.append(PaperIndexRecord.last_used_at.is_(None))
            else:
                conditions.append(PaperIndexRecord.last_used_at == expected_last_used_at)

        payload = dict(values)
        payload.setdefault("updated_at", utcnow())
        payload["version"] = expected_version + 1
        result = await db.execute(
            update(PaperIndexRecord)
            .where(*conditions)
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def touch_usage(self, db: AsyncSession, paper_id: str, used_at: datetime) -> bool:
        """更新最近使用时间"""
        result = await db.execute(
            update(PaperIndexRecord)
            .where(PaperIndexRecord.paper_id == paper_id)
            .values(last_used_at=used_at, updated_at=used_at)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount > 0

    async def page_by_status(
        self,
        db: AsyncSession,
        status: str,
        cursor: Optional[int] = None,
        limit: int = 100,
    ) -> Tuple[List[PaperIndexRecord], Optional[int]]:
        """按状态分页；返回 (records, next_cursor)，next_cursor 为 None 表示结束"""
        query = select(PaperIndexRecord).where(PaperIndexRecord.status == status)
        if cursor is not None:
            query = query.where(PaperIndexRecord.id > cursor)
        query = query.order_by(PaperIndexRecord.id).limit(limit)
        result = await db.execute(query)
        records = list(result.scalars().all())
        next_cursor = records[-1].id if len(records) == limit else None
        return records, next_cursor


# 创建实例
paper_index_crud = CRUDPaperIndex()
