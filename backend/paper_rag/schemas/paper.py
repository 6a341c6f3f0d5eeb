"""Schemas for paper indexing and retrieval."""

from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class IndexPaperRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    source_url: str = Field(default="", max_length=1000)
    chunks: List[str] = Field(default_factory=list)
    content_hash: Optional[str] = Field(default=None, max_length=64)
    page_count: Optional[int] = Field(default=None, ge=0)
    force: bool = False


class IndexPdfRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    pdf_url: str = Field(..., min_length=1, max_length=1000)
    force: bool = False


class IndexOutcomeResponse(BaseModel):
    ok: bool
    status: str
    already_indexed: bool = False
    error: Optional[str] = None
    chunk_count: int = 0


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=4000)
    limit: Optional[int] = Field(default=None, ge=1, le=32)


class SearchChunkResponse(BaseModel):
    text: str
    score: float
    position: int
    page_start: Optional[int] = None
    page_end: Optional[int] = None


class SearchResponse(BaseModel):
    text: str
    chunks: List[SearchChunkResponse]
    entry_id: Optional[str] = None


class PaperIndexStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    paper_id: str
    title: str
    source_url: str
    status: str
    chunk_count: int
    page_count: Optional[int] = None
    embedding_model: str
    embedding_dimensions: Optional[int] = None
    content_hash: Optional[str] = None
    entry_id: Optional[str] = None
    error: Optional[str] = None
    last_indexed_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SweepResponse(BaseModel):
    scanned: int
    cleaned: int
