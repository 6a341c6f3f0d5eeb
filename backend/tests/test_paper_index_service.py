import asyncio
import os
import re
import tempfile
import unittest
from datetime import timedelta

import fitz
import httpx
from sqlalchemy import func, select

from paper_rag.crud.paper_index import paper_index_crud
from paper_rag.database import create_engine, create_session_maker, init_db
from paper_rag.models.base import utcnow
from paper_rag.models.paper_index import IndexStatus
from paper_rag.models.search_entry import SearchChunk, SearchEntry
from paper_rag.services.errors import DimensionMismatchError, StorageError
from paper_rag.services.pipeline.paper_pipeline import (
    EMPTY_CONTENT_MESSAGE,
    SUPERSEDED_MESSAGE,
    PaperIndexService,
)
from paper_rag.services.retrieval.embedding_client import EmbeddingServiceError
from paper_rag.services.retrieval.fingerprint import hash_text
from paper_rag.services.retrieval.vector_store import VectorStore, paper_namespace
from paper_rag.services.sources.pdf_fetcher import PdfFetcher

CHUNKS = [
    "[PAGE 1]\nalpha beta introduction",
    "[PAGE 2]\ngamma delta method",
    "[PAGE 3]\nepsilon zeta results",
]


class _FakeEmbedder:
    """Deterministic bag-of-words vectors; distinct words never collide."""

    def __init__(self, model="fake-embed", dimensions=64, delay=0.0):
        self.model = model
        self.dimensions = dimensions
        self.delay = delay
        self.index_calls = 0
        self.query_calls = 0
        self._vocab = {}

    def _vector(self, text):
        vec = [0.0] * self.dimensions
        for word in re.findall(r"[a-z]+", text.lower()):
            idx = self._vocab.setdefault(word, len(self._vocab)) % self.dimensions
            vec[idx] += 1.0
        return vec

    async def embed_texts(self, texts):
        self.query_calls += 1
        return [self._vector(t) for t in texts]

    async def embed_texts_batched(self, texts):
        self.index_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return [self._vector(t) for t in texts]


class _FailingEmbedder(_FakeEmbedder):
    async def embed_texts_batched(self, texts):
        self.index_calls += 1
        raise EmbeddingServiceError("embedding upstream unavailable", status_code=503)


class _DeleteFailingStore(VectorStore):
    async def delete(self, entry_id):
        raise StorageError("search engine unavailable")


class _InterleavedSweepService(PaperIndexService):
    """Runs `between_read_and_sweep(page)` after each page is read, before it is swept."""

    between_read_and_sweep = None

    async def iter_ready_pages(self, cursor=None):
        async for page in super().iter_ready_pages(cursor):
            await self.between_read_and_sweep(page)
            yield page


async def _wait_for(predicate, attempts=300):
    for _ in range(attempts):
        if await predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def _make_pdf(pages):
    doc = fitz.open()
    for lines in pages:
        page = doc.new_page()
        for i, line in enumerate(lines):
            page.insert_text((72, 72 + i * 40), line, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


class _ServiceTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        db_path = os.path.join(self._tmp.name, "index.db")
        self.engine = create_engine(f"sqlite+aiosqlite:///{db_path}")
        await init_db(self.engine)
        self.session_maker = create_session_maker(self.engine)

    async def asyncTearDown(self):
        await self.engine.dispose()
        self._tmp.cleanup()

    def _service(self, embedder=None, fetcher=None, service_cls=PaperIndexService, **kwargs):
        embedder = embedder or _FakeEmbedder()
        store = VectorStore(self.session_maker, embedder)
        return service_cls(
            self.session_maker,
            store,
            embedding_model=embedder.model,
            embedding_dimensions=embedder.dimensions,
            fetcher=fetcher,
            **kwargs,
        )

    async def _record(self, paper_id):
        async with self.session_maker() as db:
            return await paper_index_crud.get_by_paper_id(db, paper_id)

    async def _entry_count(self):
        async with self.session_maker() as db:
            return (await db.execute(select(func.count()).select_from(SearchEntry))).scalar_one()


class TestIndexing(_ServiceTestCase):
    async def test_index_then_search_returns_cited_chunks(self):
        service = self._service()
        outcome = await service.index_paper("1706.03762", "Attention", "https://arxiv.org/pdf/1706.03762", CHUNKS)

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.READY)
        self.assertEqual(outcome.chunk_count, 3)

        result = await service.search_paper("1706.03762", "gamma delta")
        self.assertEqual(result.chunks[0].position, 1)
        self.assertEqual(result.chunks[0].page_start, 2)
        self.assertGreater(result.chunks[0].score, 0.5)
        self.assertEqual(len(result.chunks), 1)
        self.assertIn("## Attention:", result.text)
        # 命中块前后各带一个相邻块
        self.assertIn("alpha beta", result.text)
        self.assertIn("epsilon zeta", result.text)

        record = await self._record("1706.03762")
        self.assertIsNotNone(record.last_used_at)

    async def test_concurrent_requests_run_one_embedding_job(self):
        embedder = _FakeEmbedder(delay=0.05)
        service = self._service(embedder)
        content_hash = hash_text("\n\n".join(CHUNKS))

        first, second = await asyncio.gather(
            service.index_paper("p1", "T", "", CHUNKS, content_hash=content_hash),
            service.index_paper("p1", "T", "", CHUNKS, content_hash=content_hash),
        )

        self.assertEqual(embedder.index_calls, 1)
        outcomes = sorted([first, second], key=lambda o: o.already_indexed)
        self.assertFalse(outcomes[0].already_indexed)
        self.assertEqual(outcomes[0].status, IndexStatus.READY)
        self.assertTrue(outcomes[1].already_indexed)
        self.assertEqual(outcomes[1].status, IndexStatus.INDEXING)
        self.assertTrue(outcomes[1].ok)
        self.assertEqual(await self._entry_count(), 1)

    async def test_unchanged_hash_is_skipped(self):
        embedder = _FakeEmbedder()
        service = self._service(embedder)
        await service.index_paper("p1", "T", "", CHUNKS, content_hash="h1")
        self.assertEqual(embedder.index_calls, 1)

        again = await service.index_paper("p1", "T", "", CHUNKS, content_hash="h1")
        self.assertTrue(again.already_indexed)
        self.assertEqual(again.status, IndexStatus.READY)
        self.assertEqual(embedder.index_calls, 1)

        forced = await service.index_paper("p1", "T", "", CHUNKS, content_hash="h1", force=True)
        self.assertFalse(forced.already_indexed)
        self.assertEqual(embedder.index_calls, 2)
        self.assertEqual(await self._entry_count(), 1)

    async def test_changed_hash_reindexes(self):
        embedder = _FakeEmbedder()
        service = self._service(embedder)
        await service.index_paper("p1", "T", "", CHUNKS, content_hash="h1")
        outcome = await service.index_paper("p1", "T", "", CHUNKS[:2], content_hash="h2")

        self.assertEqual(outcome.status, IndexStatus.READY)
        self.assertEqual(embedder.index_calls, 2)
        record = await self._record("p1")
        self.assertEqual(record.chunk_count, 2)
        self.assertEqual(record.content_hash, "h2")

    async def test_zero_chunks_marks_failed(self):
        embedder = _FakeEmbedder()
        service = self._service(embedder)
        outcome = await service.index_paper("p1", "T", "", [])

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.FAILED)
        self.assertEqual(outcome.error, EMPTY_CONTENT_MESSAGE)
        self.assertEqual(embedder.index_calls, 0)
        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.FAILED)
        self.assertEqual(record.error, EMPTY_CONTENT_MESSAGE)

    async def test_embedding_failure_leaves_record_failed(self):
        service = self._service(_FailingEmbedder())
        outcome = await service.index_paper("p1", "T", "", CHUNKS)

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.FAILED)
        self.assertIn("unavailable", outcome.error)
        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.FAILED)
        self.assertIsNone(record.entry_id)

        retry = await self._service().index_paper("p1", "T", "", CHUNKS)
        self.assertEqual(retry.status, IndexStatus.READY)

    async def test_expired_indexing_claim_can_be_taken_over(self):
        async with self.session_maker() as db:
            await paper_index_crud.create(
                db,
                paper_id="p1",
                status=IndexStatus.INDEXING,
                updated_at=utcnow() - timedelta(hours=2),
            )
        service = self._service(indexing_lease=timedelta(minutes=15))
        outcome = await service.index_paper("p1", "T", "", CHUNKS)
        self.assertEqual(outcome.status, IndexStatus.READY)

    async def test_live_indexing_claim_is_respected(self):
        async with self.session_maker() as db:
            await paper_index_crud.create(db, paper_id="p1", status=IndexStatus.INDEXING)
        embedder = _FakeEmbedder()
        outcome = await self._service(embedder).index_paper("p1", "T", "", CHUNKS)

        self.assertTrue(outcome.already_indexed)
        self.assertEqual(outcome.status, IndexStatus.INDEXING)
        self.assertEqual(embedder.index_calls, 0)

    async def test_cancelled_run_leaves_record_failed(self):
        embedder = _FakeEmbedder(delay=5)
        service = self._service(embedder)
        task = asyncio.create_task(service.index_paper("p1", "T", "", CHUNKS))

        async def embedding_started():
            return embedder.index_calls == 1

        await _wait_for(embedding_started)
        self.assertEqual((await self._record("p1")).status, IndexStatus.INDEXING)

        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.FAILED)
        self.assertEqual(record.error, "Indexing cancelled.")
        self.assertIsNone(record.entry_id)
        self.assertEqual(await self._entry_count(), 0)

    async def test_taken_over_run_keeps_newer_entry(self):
        slow_embedder = _FakeEmbedder(delay=0.3)
        slow = self._service(slow_embedder)
        slow_task = asyncio.create_task(slow.index_paper("p1", "T", "", CHUNKS))

        async def embedding_started():
            return slow_embedder.index_calls == 1

        await _wait_for(embedding_started)

        # lease of zero lets the second worker take the claim over
        fast = self._service(indexing_lease=timedelta(0))
        taken_over = await fast.index_paper("p1", "T", "", CHUNKS[:2])
        self.assertEqual(taken_over.status, IndexStatus.READY)

        stale = await slow_task
        self.assertFalse(stale.ok)
        self.assertEqual(stale.error, SUPERSEDED_MESSAGE)
        self.assertEqual(stale.status, IndexStatus.READY)

        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.READY)
        self.assertEqual(record.chunk_count, 2)
        async with self.session_maker() as db:
            entry_ids = list((await db.execute(select(SearchEntry.id))).scalars().all())
        self.assertEqual(entry_ids, [record.entry_id])
        self.assertFalse((await fast.search_paper("p1", "gamma delta")).is_empty)


class TestSearchAndDelete(_ServiceTestCase):
    async def test_empty_search_does_not_touch_usage(self):
        embedder = _FakeEmbedder()
        service = self._service(embedder)
        await service.index_paper("p1", "T", "", CHUNKS)

        result = await service.search_paper("p1", "unrelated words only")
        self.assertEqual(result.text, "")
        self.assertEqual(result.chunks, [])
        record = await self._record("p1")
        self.assertIsNone(record.last_used_at)

    async def test_unindexed_paper_search_skips_embedding(self):
        embedder = _FakeEmbedder()
        result = await self._service(embedder).search_paper("never-indexed", "gamma")
        self.assertTrue(result.is_empty)
        self.assertEqual(embedder.query_calls, 0)

    async def test_blank_query_returns_empty(self):
        service = self._service()
        await service.index_paper("p1", "T", "", CHUNKS)
        result = await service.search_paper("p1", "   ")
        self.assertTrue(result.is_empty)

    async def test_papers_do_not_see_each_other(self):
        service = self._service()
        await service.index_paper("p1", "T", "", CHUNKS)
        await service.index_paper("p2", "Other", "", ["[PAGE 1]\nomega sigma"])
        result = await service.search_paper("p2", "gamma delta")
        self.assertTrue(result.is_empty)
        self.assertNotEqual(paper_namespace("a/b"), paper_namespace("a/c"))
        self.assertEqual(paper_namespace("a/b c"), "paper/a_b_c")

    async def test_changed_embedding_config_is_rejected_on_search(self):
        await self._service().index_paper("p1", "T", "", CHUNKS)
        other = self._service(_FakeEmbedder(model="another-model"))
        with self.assertRaises(DimensionMismatchError):
            await other.search_paper("p1", "gamma")

    async def test_delete_resets_record_and_removes_entry(self):
        service = self._service()
        await service.index_paper("p1", "T", "", CHUNKS)
        self.assertEqual(await self._entry_count(), 1)

        outcome = await service.delete_index("p1")
        self.assertEqual(outcome.status, IndexStatus.NOT_INDEXED)
        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.NOT_INDEXED)
        self.assertIsNone(record.entry_id)
        self.assertEqual(await self._entry_count(), 0)
        async with self.session_maker() as db:
            chunks = (await db.execute(select(func.count()).select_from(SearchChunk))).scalar_one()
        self.assertEqual(chunks, 0)
        self.assertTrue((await service.search_paper("p1", "gamma")).is_empty)

    async def test_older_generation_does_not_replace_newer_entry(self):
        store = VectorStore(self.session_maker, _FakeEmbedder())
        newer = await store.upsert("paper/p1", key="p1", title="T", chunks=CHUNKS, generation=5)
        older = await store.upsert("paper/p1", key="p1", title="T", chunks=CHUNKS[:1], generation=3)
        self.assertEqual(await self._entry_count(), 2)

        self.assertTrue(await store.delete(older))
        latest = await store.upsert("paper/p1", key="p1", title="T", chunks=CHUNKS, generation=6)
        async with self.session_maker() as db:
            entry_ids = list((await db.execute(select(SearchEntry.id))).scalars().all())
        self.assertEqual(entry_ids, [latest])
        self.assertNotEqual(latest, newer)

    async def test_delete_of_unknown_paper_is_noop(self):
        outcome = await self._service().delete_index("missing")
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.NOT_INDEXED)


class TestStaleSweep(_ServiceTestCase):
    async def test_stale_entry_is_evicted_and_fresh_one_kept(self):
        service = self._service(sweep_page_size=1)
        await service.index_paper("old", "T", "", CHUNKS)
        await service.index_paper("fresh", "T", "", CHUNKS)
        now = utcnow()
        async with self.session_maker() as db:
            await paper_index_crud.touch_usage(db, "old", now - timedelta(days=8))
            await paper_index_crud.touch_usage(db, "fresh", now - timedelta(hours=1))
        fresh_before = await self._record("fresh")

        result = await service.sweep_stale_entries(now=now)

        self.assertEqual(result.scanned, 2)
        self.assertEqual(result.cleaned, 1)
        old = await self._record("old")
        self.assertEqual(old.status, IndexStatus.NOT_INDEXED)
        self.assertIsNone(old.entry_id)
        fresh = await self._record("fresh")
        self.assertEqual(fresh.status, IndexStatus.READY)
        self.assertEqual(fresh.version, fresh_before.version)
        self.assertEqual(fresh.last_used_at, fresh_before.last_used_at)
        self.assertEqual(await self._entry_count(), 1)

    async def test_sweep_pages_through_all_ready_records(self):
        service = self._service(sweep_page_size=2)
        for i in range(5):
            await service.index_paper(f"p{i}", "T", "", CHUNKS)
        pages = [page async for page in service.iter_ready_pages()]
        self.assertEqual(sum(len(page.records) for page in pages), 5)
        self.assertIsNone(pages[-1].next_cursor)

        result = await service.sweep_stale_entries(now=utcnow() + timedelta(days=30))
        self.assertEqual(result.cleaned, 5)
        self.assertEqual(await self._entry_count(), 0)

    async def test_failed_entry_delete_still_resets_records(self):
        service = self._service()
        await service.index_paper("p1", "T", "", CHUNKS)
        await service.index_paper("p2", "T", "", CHUNKS)
        service.search_engine = _DeleteFailingStore(self.session_maker, _FakeEmbedder())

        result = await service.sweep_stale_entries(now=utcnow() + timedelta(days=30))

        self.assertEqual(result.scanned, 2)
        self.assertEqual(result.cleaned, 2)
        for paper_id in ("p1", "p2"):
            record = await self._record(paper_id)
            self.assertEqual(record.status, IndexStatus.NOT_INDEXED)
            self.assertIsNone(record.entry_id)
        self.assertEqual(await self._entry_count(), 2)

    async def test_usage_between_read_and_reset_keeps_index(self):
        service = self._service(service_cls=_InterleavedSweepService)
        await service.index_paper("p1", "T", "", CHUNKS)
        now = utcnow() + timedelta(days=30)

        async def search_meanwhile(page):
            async with self.session_maker() as db:
                for record in page.records:
                    await paper_index_crud.touch_usage(db, record.paper_id, now)

        service.between_read_and_sweep = search_meanwhile
        result = await service.sweep_stale_entries(now=now)

        self.assertEqual(result.scanned, 1)
        self.assertEqual(result.cleaned, 0)
        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.READY)
        self.assertIsNotNone(record.entry_id)
        self.assertEqual(await self._entry_count(), 1)

    async def test_reclaim_between_read_and_reset_is_not_evicted(self):
        service = self._service(service_cls=_InterleavedSweepService)
        await service.index_paper("p1", "T", "", CHUNKS)

        async def reindex_meanwhile(page):
            async with self.session_maker() as db:
                for record in page.records:
                    await paper_index_crud.transition(
                        db, record.id, record.version, {"status": IndexStatus.INDEXING}
                    )

        service.between_read_and_sweep = reindex_meanwhile
        result = await service.sweep_stale_entries(now=utcnow() + timedelta(days=30))

        self.assertEqual(result.cleaned, 0)
        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.INDEXING)
        self.assertIsNotNone(record.entry_id)
        self.assertEqual(await self._entry_count(), 1)


class TestIndexFromPdf(_ServiceTestCase):
    def _fetcher(self, content, status_code=200):
        transport = httpx.MockTransport(lambda request: httpx.Response(status_code, content=content))
        return PdfFetcher(transport=transport)

    async def test_pdf_is_fetched_parsed_and_indexed(self):
        data = _make_pdf([[f"Page {p} discusses topic{p} thoroughly"] for p in range(1, 4)])
        embedder = _FakeEmbedder()
        service = self._service(embedder, fetcher=self._fetcher(data))

        outcome = await service.index_paper_from_pdf("p1", "T", "https://arxiv.org/pdf/p1")
        self.assertEqual(outcome.status, IndexStatus.READY)
        record = await self._record("p1")
        self.assertEqual(record.page_count, 3)
        self.assertEqual(len(record.content_hash), 64)

        again = await service.index_paper_from_pdf("p1", "T", "https://arxiv.org/pdf/p1")
        self.assertTrue(again.already_indexed)
        self.assertEqual(embedder.index_calls, 1)

    async def test_failed_refetch_keeps_ready_index(self):
        data = _make_pdf([[f"Page {p} discusses topic{p} thoroughly"] for p in range(1, 4)])
        service = self._service(fetcher=self._fetcher(data))
        await service.index_paper_from_pdf("p1", "T", "https://arxiv.org/pdf/p1")
        before = await self._record("p1")

        service.fetcher = self._fetcher(b"upstream busy", status_code=503)
        outcome = await service.index_paper_from_pdf("p1", "T", "https://arxiv.org/pdf/p1", force=True)

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.FAILED)
        self.assertIn("503", outcome.error)
        after = await self._record("p1")
        self.assertEqual(after.status, IndexStatus.READY)
        self.assertEqual(after.entry_id, before.entry_id)
        self.assertEqual(after.chunk_count, before.chunk_count)
        self.assertEqual(after.version, before.version)
        self.assertIsNone(after.error)
        self.assertFalse((await service.search_paper("p1", "discusses thoroughly")).is_empty)

    async def test_unparseable_pdf_marks_failed(self):
        service = self._service(fetcher=self._fetcher(b"%PDF-1.4 broken"))
        outcome = await service.index_paper_from_pdf("p1", "T", "https://arxiv.org/pdf/p1")
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.FAILED)
        record = await self._record("p1")
        self.assertEqual(record.status, IndexStatus.FAILED)

    async def test_disallowed_host_marks_failed(self):
        service = self._service(fetcher=self._fetcher(b"%PDF"))
        outcome = await service.index_paper_from_pdf("p1", "T", "https://example.com/p1.pdf")
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.status, IndexStatus.FAILED)


if __name__ == "__main__":
    unittest.main()
