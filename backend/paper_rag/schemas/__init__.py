"""Schemas包初始化"""
from paper_rag.schemas.chat import (
    APIConfig,
    ChatTurn,
    PaperChatRequest,
    PaperMeta,
)
from paper_rag.schemas.paper import (
    IndexOutcomeResponse,
    IndexPaperRequest,
    IndexPdfRequest,
    PaperIndexStatusResponse,
    SearchChunkResponse,
    SearchRequest,
    SearchResponse,
    SweepResponse,
)

__all__ = [
    # Chat schemas
    "APIConfig",
    "ChatTurn",
    "PaperChatRequest",
    "PaperMeta",
    # Paper index schemas
    "IndexOutcomeResponse",
    "IndexPaperRequest",
    "IndexPdfRequest",
    "PaperIndexStatusResponse",
    "SearchChunkResponse",
    "SearchRequest",
    "SearchResponse",
    "SweepResponse",
]
