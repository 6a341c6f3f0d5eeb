"""Paper indexing + retrieval pipeline.

Review note:
- 每篇论文一条 PaperIndexRecord，状态机：not_indexed → indexing → ready / failed。
- 进入 indexing 使用基于 version 的条件更新，同一论文同一时刻至多一个索引任务；
  竞争失败方读到 indexing 后直接返回，不视为错误。
- 进入 indexing 之后的任何异常（含取消）都必须把记录写成 failed，不允许停留在 indexing。
- 过期淘汰按主键游标分页扫描 ready 记录，先条件重置记录，再尽力删除检索条目。
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, List, Optional, Sequence
import asyncio
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paper_rag.crud.paper_index import paper_index_crud
from paper_rag.models.base import utcnow
from paper_rag.models.paper_index import IndexStatus, PaperIndexRecord
from paper_rag.services.errors import (
    ConcurrentIndexingError,
    DimensionMismatchError,
    EmptyContentError,
    PaperRagError,
    StorageError,
)
from paper_rag.services.extraction.pdf_text import extract_pdf_text
from paper_rag.services.retrieval.chunker import DEFAULT_MAX_CHUNKS, chunk_pdf_text, page_spans
from paper_rag.services.retrieval.fingerprint import hash_text
from paper_rag.services.retrieval.vector_store import SearchResult, paper_namespace

logger = logging.getLogger("uvicorn.error")

EMPTY_CONTENT_MESSAGE = "No PDF text extracted to index."
SUPERSEDED_MESSAGE = "Index record changed while indexing; result discarded."
_RESET_VALUES = {
    "status": IndexStatus.NOT_INDEXED,
    "entry_id": None,
    "chunk_count": 0,
    "error": None,
}


@dataclass
class IndexOutcome:
    """Result of an indexing or deletion request."""

    ok: bool
    status: str
    already_indexed: bool = False
    error: Optional[str] = None
    chunk_count: int = 0


@dataclass
class SweepResult:
    scanned: int = 0
    cleaned: int = 0


@dataclass
class RecordPage:
    records: List[PaperIndexRecord] = field(default_factory=list)
    next_cursor: Optional[int] = None


class PaperIndexService:
    """
    Orchestrates indexing, search, deletion and eviction for papers.

    All collaborators are passed in: the session factory for state records,
    a search engine exposing `upsert/search/delete` (see `VectorStore`) and,
    for server-side PDF indexing, a `PdfFetcher`.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        search_engine,
        *,
        embedding_model: str,
        embedding_dimensions: int,
        fetcher=None,
        search_limit: int = 8,
        score_threshold: float = 0.25,
        chunk_context: int = 1,
        stale_after: timedelta = timedelta(days=7),
        sweep_page_size: int = 100,
        indexing_lease: timedelta = timedelta(minutes=15),
        max_chunks: int = DEFAULT_MAX_CHUNKS,
        max_pages: Optional[int] = None,
        header_footer_line_count: int = 2,
        header_footer_repeat_threshold: float = 0.6,
    ) -> None:
        self.session_maker = session_maker
        self.search_engine = search_engine
        self.embedding_model = embedding_model
        self.embedding_dimensions = int(embedding_dimensions)
        self.fetcher = fetcher
        self.search_limit = int(search_limit)
        self.score_threshold = float(score_threshold)
        self.chunk_context = int(chunk_context)
        self.stale_after = stale_after
        self.sweep_page_size = max(1, int(sweep_page_size))
        self.indexing_lease = indexing_lease
        self.max_chunks = int(max_chunks)
        self.max_pages = max_pages
        self.header_footer_line_count = int(header_footer_line_count)
        self.header_footer_repeat_threshold = float(header_footer_repeat_threshold)

    @classmethod
    def from_settings(cls, settings, session_maker, search_engine, fetcher=None) -> "PaperIndexService":
        return cls(
            session_maker,
            search_engine,
            embedding_model=settings.EMBEDDING_MODEL,
            embedding_dimensions=settings.EMBEDDING_DIMENSIONS,
            fetcher=fetcher,
            search_limit=settings.SEARCH_DEFAULT_LIMIT,
            score_threshold=settings.SEARCH_SCORE_THRESHOLD,
            chunk_context=settings.SEARCH_CHUNK_CONTEXT,
            stale_after=timedelta(days=settings.RAG_STALE_AFTER_DAYS),
            sweep_page_size=settings.RAG_SWEEP_PAGE_SIZE,
            indexing_lease=timedelta(seconds=settings.INDEXING_LEASE_SEC),
            max_chunks=settings.CHUNK_COUNT_BUDGET,
            max_pages=settings.pdf_max_pages,
            header_footer_line_count=settings.HEADER_FOOTER_LINE_COUNT,
            header_footer_repeat_threshold=settings.HEADER_FOOTER_REPEAT_THRESHOLD,
        )

    # ------------------------------------------------------------------
    # state record access
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_maker() as db:
                yield db
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StorageError(f"索引状态读写失败: {exc}") from exc

    async def get_index_status(self, paper_id: str) -> Optional[PaperIndexRecord]:
        async with self._session() as db:
            return await paper_index_crud.get_by_paper_id(db, paper_id)

    async def _transition(self, record_id: int, version: int, values: dict, **conditions) -> bool:
        async with self._session() as db:
            return await paper_index_crud.transition(db, record_id, version, values, **conditions)

    def _holds_live_claim(self, record: Optional[PaperIndexRecord], now: datetime) -> bool:
        if record is None or record.status != IndexStatus.INDEXING:
            return False
        updated_at = record.updated_at or now
        return now - updated_at < self.indexing_lease

    def _is_current(self, record: PaperIndexRecord, content_hash: Optional[str]) -> bool:
        return bool(
            record.status == IndexStatus.READY
            and record.content_hash
            and content_hash
            and record.content_hash == content_hash
            and record.embedding_model == self.embedding_model
            and record.embedding_dimensions == self.embedding_dimensions
        )

    async def _claim(self, existing: Optional[PaperIndexRecord], paper_id: str, base: dict) -> tuple[int, int]:
        """Move the record to `indexing`; returns (record id, claimed version)."""
        values = {**base, "status": IndexStatus.INDEXING, "error": None}
        if existing is None:
            try:
                async with self._session() as db:
                    record = await paper_index_crud.create(db, paper_id=paper_id, **values)
            except IntegrityError as exc:
                raise ConcurrentIndexingError(f"{paper_id} 正在被其他任务索引。") from exc
            return record.id, record.version

        won = await self._transition(existing.id, existing.version, values)
        if not won:
            raise ConcurrentIndexingError(f"{paper_id} 正在被其他任务索引。")
        return existing.id, existing.version + 1

    async def _fail_without_claim(
        self,
        existing: Optional[PaperIndexRecord],
        paper_id: str,
        base: dict,
        error: Exception,
    ) -> IndexOutcome:
        message = str(error) or error.__class__.__name__
        values = {**base, "status": IndexStatus.FAILED, "error": message}
        if existing is None:
            try:
                async with self._session() as db:
                    await paper_index_crud.create(db, paper_id=paper_id, **values)
            except IntegrityError:
                logger.info("paper-index-fail-skipped paper_id=%s reason=concurrent-create", paper_id)
        elif not await self._transition(existing.id, existing.version, values):
            logger.info("paper-index-fail-skipped paper_id=%s reason=concurrent-update", paper_id)
        logger.warning("paper-index-failed paper_id=%s error=%s", paper_id, message)
        return IndexOutcome(ok=False, status=IndexStatus.FAILED, error=message)

    async def _mark_failed(self, record_id: int, version: int, paper_id: str, message: str) -> None:
        won = await self._transition(
            record_id,
            version,
            {"status": IndexStatus.FAILED, "error": message},
        )
        logger.warning(
            "paper-index-failed paper_id=%s error=%s recorded=%s",
            paper_id,
            message,
            won,
        )

    # ------------------------------------------------------------------
    # indexing
    # ------------------------------------------------------------------

    async def index_paper(
        self,
        paper_id: str,
        title: str,
        source_url: str,
        chunks: Sequence[str],
        content_hash: Optional[str] = None,
        force: bool = False,
        page_count: Optional[int] = None,
    ) -> IndexOutcome:
        """
        Index pre-chunked paper text.

        Returns `already_indexed=True` when another job holds the record or
        when the stored index already matches `content_hash` and the
        embedding configuration (unless `force`).
        """
        now = utcnow()
        existing = await self.get_index_status(paper_id)

        if self._holds_live_claim(existing, now):
            logger.info("paper-index-skip paper_id=%s reason=in-flight", paper_id)
            return IndexOutcome(ok=True, status=IndexStatus.INDEXING, already_indexed=True)

        if not force and existing is not None and self._is_current(existing, content_hash):
            logger.info("paper-index-skip paper_id=%s reason=unchanged", paper_id)
            return IndexOutcome(
                ok=True,
                status=IndexStatus.READY,
                already_indexed=True,
                chunk_count=existing.chunk_count,
            )

        chunk_list = [str(chunk) for chunk in chunks]
        base = {
            "title": title or "",
            "source_url": source_url or "",
            "chunk_count": len(chunk_list),
            "page_count": page_count,
            "embedding_model": self.embedding_model,
            "embedding_dimensions": self.embedding_dimensions,
            "content_hash": content_hash,
        }

        if not chunk_list:
            return await self._fail_without_claim(
                existing, paper_id, base, EmptyContentError(EMPTY_CONTENT_MESSAGE)
            )

        try:
            record_id, version = await self._claim(existing, paper_id, base)
        except ConcurrentIndexingError:
            logger.info("paper-index-skip paper_id=%s reason=lost-claim", paper_id)
            return IndexOutcome(ok=True, status=IndexStatus.INDEXING, already_indexed=True)

        logger.info("paper-index-start paper_id=%s chunks=%d force=%s", paper_id, len(chunk_list), force)
        return await self._run_indexing(record_id, version, paper_id, title, chunk_list)

    async def _run_indexing(
        self,
        record_id: int,
        version: int,
        paper_id: str,
        title: str,
        chunks: List[str],
    ) -> IndexOutcome:
        entry_id = None
        try:
            entry_id = await self.search_engine.upsert(
                paper_namespace(paper_id),
                key=paper_id,
                title=title,
                chunks=chunks,
                page_spans=page_spans(chunks),
                generation=version,
            )
            indexed_at = utcnow()
            won = await self._transition(
                record_id,
                version,
                {
                    "status": IndexStatus.READY,
                    "entry_id": entry_id,
                    "error": None,
                    "last_indexed_at": indexed_at,
                    "updated_at": indexed_at,
                },
            )
        except asyncio.CancelledError:
            await self._mark_failed(record_id, version, paper_id, "Indexing cancelled.")
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            await self._mark_failed(record_id, version, paper_id, message)
            return IndexOutcome(ok=False, status=IndexStatus.FAILED, error=message)

        if not won:
            # 记录在索引期间被删除或重置，丢弃本次写入的条目
            try:
                await self.search_engine.delete(entry_id)
            except Exception as exc:
                logger.warning("paper-index-orphan-delete-failed entry_id=%s error=%s", entry_id, exc)
            current = await self.get_index_status(paper_id)
            status = current.status if current is not None else IndexStatus.NOT_INDEXED
            return IndexOutcome(ok=False, status=status, error=SUPERSEDED_MESSAGE)

        logger.info(
            "paper-index-ready paper_id=%s entry_id=%s chunks=%d",
            paper_id,
            entry_id,
            len(chunks),
        )
        return IndexOutcome(ok=True, status=IndexStatus.READY, chunk_count=len(chunks))

    async def index_paper_from_pdf(
        self,
        paper_id: str,
        title: str,
        pdf_url: str,
        force: bool = False,
    ) -> IndexOutcome:
        """Fetch, extract, chunk and index a PDF in one request."""
        if self.fetcher is None:
            raise RuntimeError("PaperIndexService 未配置 PdfFetcher。")

        existing = await self.get_index_status(paper_id)
        if self._holds_live_claim(existing, utcnow()):
            return IndexOutcome(ok=True, status=IndexStatus.INDEXING, already_indexed=True)

        try:
            fetched = await self.fetcher.fetch(pdf_url)
            document = await asyncio.to_thread(
                extract_pdf_text,
                fetched.content,
                self.max_pages,
                self.header_footer_line_count,
                self.header_footer_repeat_threshold,
            )
            chunks = await asyncio.to_thread(chunk_pdf_text, document.full_text, self.max_chunks)
        except PaperRagError as exc:
            if existing is not None and existing.status == IndexStatus.READY:
                # 下载/解析失败不影响已有的可用索引
                message = str(exc) or exc.__class__.__name__
                logger.warning("paper-index-refresh-failed paper_id=%s kept=ready error=%s", paper_id, message)
                return IndexOutcome(ok=False, status=IndexStatus.FAILED, error=message)
            base = {
                "title": title or "",
                "source_url": pdf_url or "",
                "chunk_count": 0,
                "embedding_model": self.embedding_model,
                "embedding_dimensions": self.embedding_dimensions,
            }
            return await self._fail_without_claim(existing, paper_id, base, exc)

        return await self.index_paper(
            paper_id=paper_id,
            title=title,
            source_url=pdf_url,
            chunks=chunks,
            content_hash=hash_text(document.full_text),
            force=force,
            page_count=document.page_count,
        )

    # ------------------------------------------------------------------
    # retrieval
    # ------------------------------------------------------------------

    async def search_paper(self, paper_id: str, query: str, limit: Optional[int] = None) -> SearchResult:
        """
        Semantic search inside one paper.

        An empty result is a normal outcome and does not touch `last_used_at`.
        """
        if not (query or "").strip():
            return SearchResult()

        record = await self.get_index_status(paper_id)
        if record is not None and record.entry_id and (
            record.embedding_model != self.embedding_model
            or record.embedding_dimensions != self.embedding_dimensions
        ):
            raise DimensionMismatchError(
                f"{paper_id} 的索引配置已变化: indexed={record.embedding_model}/{record.embedding_dimensions}, "
                f"current={self.embedding_model}/{self.embedding_dimensions}"
            )

        result = await self.search_engine.search(
            paper_namespace(paper_id),
            query,
            limit=limit or self.search_limit,
            score_threshold=self.score_threshold,
            chunk_context=(self.chunk_context, self.chunk_context),
        )

        if not result.is_empty and record is not None:
            async with self._session() as db:
                await paper_index_crud.touch_usage(db, paper_id, utcnow())

        logger.info(
            "paper-search paper_id=%s hits=%d top_score=%s",
            paper_id,
            len(result.chunks),
            f"{result.chunks[0].score:.4f}" if result.chunks else "-",
        )
        return result

    # ------------------------------------------------------------------
    # deletion / eviction
    # ------------------------------------------------------------------

    async def delete_index(self, paper_id: str) -> IndexOutcome:
        """Reset any state to `not_indexed`, deleting the search entry if present."""
        for _ in range(3):
            record = await self.get_index_status(paper_id)
            if record is None:
                return IndexOutcome(ok=True, status=IndexStatus.NOT_INDEXED)
            if record.entry_id:
                await self.search_engine.delete(record.entry_id)
            if await self._transition(record.id, record.version, dict(_RESET_VALUES)):
                logger.info("paper-index-deleted paper_id=%s entry_id=%s", paper_id, record.entry_id)
                return IndexOutcome(ok=True, status=IndexStatus.NOT_INDEXED)
        raise StorageError(f"{paper_id} 状态持续变化，删除未完成。")

    async def iter_ready_pages(self, cursor: Optional[int] = None) -> AsyncIterator[RecordPage]:
        """
        Lazily yield pages of `ready` records in primary-key order.

        Pass the `next_cursor` of the last page consumed to resume.
        """
        while True:
            async with self._session() as db:
                records, next_cursor = await paper_index_crud.page_by_status(
                    db,
                    IndexStatus.READY,
                    cursor=cursor,
                    limit=self.sweep_page_size,
                )
            yield RecordPage(records=records, next_cursor=next_cursor)
            if next_cursor is None:
                return
            cursor = next_cursor

    async def sweep_stale_entries(self, now: Optional[datetime] = None) -> SweepResult:
        """Evict `ready` indexes unused for longer than the staleness window."""
        cutoff = (now or utcnow()) - self.stale_after
        result = SweepResult()

        async for page in self.iter_ready_pages():
            for record in page.records:
                result.scanned += 1
                last_activity = record.last_activity_at()
                if last_activity is None or last_activity > cutoff:
                    continue

                won = await self._transition(
                    record.id,
                    record.version,
                    dict(_RESET_VALUES),
                    expected_status=IndexStatus.READY,
                    expected_last_used_at=record.last_used_at,
                )
                if not won:
                    continue
                result.cleaned += 1

                if record.entry_id:
                    try:
                        await self.search_engine.delete(record.entry_id)
                    except Exception as exc:
                        logger.warning(
                            "paper-index-stale-delete-failed paper_id=%s entry_id=%s error=%s",
                            record.paper_id,
                            record.entry_id,
                            exc,
                        )

        logger.info("paper-index-sweep scanned=%d cleaned=%d", result.scanned, result.cleaned)
        return result
