"""论文索引状态模型

Review note:
- 每篇论文一行（paper_id 唯一），是“当前是否可检索”的唯一可信来源，而不是向量条目本身。
- `version` 用于条件更新（CAS），所有状态迁移都必须基于读到的版本号写入。
"""
from sqlalchemy import Column, Integer, String, Text, DateTime

from paper_rag.models.base import Base, utcnow


class IndexStatus:
    NOT_INDEXED = "not_indexed"
    INDEXING = "indexing"
    READY = "ready"
    FAILED = "failed"

    ALL = (NOT_INDEXED, INDEXING, READY, FAILED)


class PaperIndexRecord(Base):
    """论文索引状态表"""
    __tablename__ = "paper_index"

    id = Column(Integer, primary_key=True, autoincrement=True)
    paper_id = Column(String(200), nullable=False, unique=True, index=True)
    title = Column(String(500), nullable=False, default="")
    source_url = Column(String(1000), nullable=False, default="")
    status = Column(String(20), nullable=False, default=IndexStatus.NOT_INDEXED, index=True)
    chunk_count = Column(Integer, nullable=False, default=0)
    page_count = Column(Integer, nullable=True)
    embedding_model = Column(String(200), nullable=False, default="")
    embedding_dimensions = Column(Integer, nullable=True)
    content_hash = Column(String(64), nullable=True)
    entry_id = Column(String(50), nullable=True)
    error = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)
    last_indexed_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def last_activity_at(self):
        """淘汰时钟：last_used_at → last_indexed_at → updated_at"""
        return self.last_used_at or self.last_indexed_at or self.updated_at

    def __repr__(self):
        return f"<PaperIndexRecord {self.paper_id} {self.status}>"
