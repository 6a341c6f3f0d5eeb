"""Namespace-scoped vector search over embedded paper chunks.

Review note:
- 提供检索引擎能力：upsert / search / delete，命名空间由 paper_id 派生，论文之间互不可见。
- 向量在写库前生成（网络调用不占用事务），同 namespace + key 且 generation 不高于新条目的旧条目在写入后删除。
- 检索在 namespace 内载入全部 chunk 向量，用 numpy 余弦相似度排序后按阈值过滤。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import json
import logging
import re
import uuid

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paper_rag.models.search_entry import SearchChunk, SearchEntry
from paper_rag.services.errors import StorageError
from paper_rag.services.retrieval.context_builder import (
    build_context_text,
    build_entry_text,
    expand_ranges,
)
from paper_rag.services.retrieval.ranker import rank_indices

logger = logging.getLogger("uvicorn.error")

_UNSAFE_NAMESPACE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def paper_namespace(paper_id: str) -> str:
    """Keep ids safe for namespace strings."""
    return f"paper/{_UNSAFE_NAMESPACE_CHARS.sub('_', paper_id)}"


@dataclass
class SearchHit:
    text: str
    score: float
    position: int
    page_start: Optional[int] = None
    page_end: Optional[int] = None


@dataclass
class SearchResult:
    text: str = ""
    chunks: List[SearchHit] = field(default_factory=list)
    entry_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.chunks


class VectorStore:
    """
    Search-engine capability backed by the application database.

    `embedder` must expose `model`, `dimensions` and the async
    `embed_texts` / `embed_texts_batched` methods of `EmbeddingClient`.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], embedder) -> None:
        self.session_maker = session_maker
        self.embedder = embedder

    async def upsert(
        self,
        namespace: str,
        key: str,
        title: str,
        chunks: Sequence[str],
        page_spans: Optional[Sequence[Tuple[Optional[int], Optional[int]]]] = None,
        generation: int = 0,
    ) -> str:
        """
        Embed and store chunks as one entry.

        Entries with the same key and a `generation` no higher than this one
        are replaced; newer generations are left for their own writer.
        """
        texts = list(chunks)
        vectors = await self.embedder.embed_texts_batched(texts)
        if len(vectors) != len(texts):
            raise StorageError(
                f"Chunk embedding 数量不匹配: expected={len(texts)}, got={len(vectors)}"
            )
        spans = list(page_spans) if page_spans is not None else [(None, None)] * len(texts)

        entry_id = str(uuid.uuid4())
        try:
            async with self.session_maker() as db:
                db.add(
                    SearchEntry(
                        id=entry_id,
                        namespace=namespace,
                        key=key,
                        title=title or "",
                        embedding_model=self.embedder.model,
                        embedding_dimensions=self.embedder.dimensions,
                        chunk_count=len(texts),
                        generation=generation,
                    )
                )
                for position, (text, vector, span) in enumerate(zip(texts, vectors, spans)):
                    db.add(
                        SearchChunk(
                            entry_id=entry_id,
                            namespace=namespace,
                            position=position,
                            text=text,
                            page_start=span[0],
                            page_end=span[1],
                            embedding=json.dumps(vector),
                        )
                    )
                await db.flush()

                stale = await db.execute(
                    select(SearchEntry.id).where(
                        SearchEntry.namespace == namespace,
                        SearchEntry.key == key,
                        SearchEntry.id != entry_id,
                        SearchEntry.generation <= generation,
                    )
                )
                stale_ids = list(stale.scalars().all())
                if stale_ids:
                    await db.execute(delete(SearchChunk).where(SearchChunk.entry_id.in_(stale_ids)))
                    await db.execute(delete(SearchEntry).where(SearchEntry.id.in_(stale_ids)))
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"写入检索条目失败: {exc}") from exc

        logger.info(
            "vector-entry-upserted namespace=%s key=%s entry_id=%s chunks=%d replaced=%d",
            namespace,
            key,
            entry_id,
            len(texts),
            len(stale_ids),
        )
        return entry_id

    async def search(
        self,
        namespace: str,
        query: str,
        limit: int = 8,
        score_threshold: float = 0.25,
        chunk_context: Tuple[int, int] = (1, 1),
    ) -> SearchResult:
        """Nearest-neighbour search inside one namespace."""
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(SearchChunk, SearchEntry.title)
                    .join(SearchEntry, SearchEntry.id == SearchChunk.entry_id)
                    .where(
                        SearchChunk.namespace == namespace,
                        SearchEntry.embedding_dimensions == self.embedder.dimensions,
                    )
                    .order_by(SearchChunk.entry_id, SearchChunk.position)
                )
                rows = list(result.all())
        except SQLAlchemyError as exc:
            raise StorageError(f"读取检索条目失败: {exc}") from exc

        if not rows:
            return SearchResult()

        query_vector = (await self.embedder.embed_texts([query]))[0]
        chunks = [row[0] for row in rows]
        titles = {row[0].entry_id: row[1] for row in rows}
        vectors = [json.loads(chunk.embedding) for chunk in chunks]
        ranked = rank_indices(
            query_vector,
            vectors,
            top_k=limit,
            score_threshold=score_threshold,
        )
        if not ranked:
            return SearchResult()

        hits: List[SearchHit] = []
        matched: Dict[str, List[int]] = {}
        entry_order: List[str] = []
        for idx, score in ranked:
            chunk = chunks[idx]
            hits.append(
                SearchHit(
                    text=chunk.text,
                    score=score,
                    position=chunk.position,
                    page_start=chunk.page_start,
                    page_end=chunk.page_end,
                )
            )
            if chunk.entry_id not in matched:
                matched[chunk.entry_id] = []
                entry_order.append(chunk.entry_id)
            matched[chunk.entry_id].append(chunk.position)

        before, after = chunk_context
        entry_texts = []
        for entry_id in entry_order:
            texts_by_position = {c.position: c.text for c in chunks if c.entry_id == entry_id}
            ranges = expand_ranges(
                matched[entry_id],
                before=before,
                after=after,
                last_position=max(texts_by_position),
            )
            entry_texts.append(build_entry_text(titles.get(entry_id, ""), texts_by_position, ranges))

        return SearchResult(
            text=build_context_text(entry_texts),
            chunks=hits,
            entry_id=entry_order[0],
        )

    async def delete(self, entry_id: str) -> bool:
        """Delete one entry and its chunks; returns whether it existed."""
        try:
            async with self.session_maker() as db:
                await db.execute(delete(SearchChunk).where(SearchChunk.entry_id == entry_id))
                result = await db.execute(delete(SearchEntry).where(SearchEntry.id == entry_id))
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"删除检索条目失败: {exc}") from exc
        return result.rowcount > 0
