"""模型包初始化"""
from paper_rag.models.base import Base
from paper_rag.models.paper_index import IndexStatus, PaperIndexRecord
from paper_rag.models.search_entry import SearchChunk, SearchEntry

__all__ = [
    "Base",
    "IndexStatus",
    "PaperIndexRecord",
    "SearchChunk",
    "SearchEntry",
]
