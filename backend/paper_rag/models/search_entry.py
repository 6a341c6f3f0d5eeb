"""向量检索条目模型

Review note:
- 一个 entry 对应一篇论文的一次索引结果（namespace + key），chunk 按文档顺序编号。
- generation 记录写入方的索引任务代次，只有不高于它的同 key 条目会被替换。
- 向量以 JSON 文本保存，检索时在 namespace 范围内载入并用 numpy 计算余弦相似度。
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from paper_rag.models.base import Base, utcnow


class SearchEntry(Base):
    """检索条目表"""
    __tablename__ = "search_entries"

    id = Column(String(50), primary_key=True)
    namespace = Column(String(300), nullable=False, index=True)
    key = Column(String(200), nullable=False, index=True)
    title = Column(String(500), nullable=False, default="")
    embedding_model = Column(String(200), nullable=False, default="")
    embedding_dimensions = Column(Integer, nullable=False)
    chunk_count = Column(Integer, nullable=False, default=0)
    generation = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    chunks = relationship(
        "SearchChunk",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="SearchChunk.position",
    )

    def __repr__(self):
        return f"<SearchEntry {self.namespace}/{self.key}>"


class SearchChunk(Base):
    """检索分块表"""
    __tablename__ = "search_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(50), ForeignKey("search_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    namespace = Column(String(300), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    page_start = Column(Integer, nullable=True)
    page_end = Column(Integer, nullable=True)
    embedding = Column(Text, nullable=False)  # JSON array of floats

    entry = relationship("SearchEntry", back_populates="chunks")

    def __repr__(self):
        return f"<SearchChunk {self.entry_id}#{self.position}>"
