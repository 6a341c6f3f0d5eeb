"""论文索引与检索API

Review note:
- 索引失败以结构化结果返回（ok=false, status=failed），不会以 HTTP 错误抛出。
- 检索为空是正常结果：返回 text="" / chunks=[]。
- /pdf 代理仅允许白名单主机，并透传 Range 以支持分段读取。
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from paper_rag.api.deps import get_index_service, get_pdf_fetcher
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
from paper_rag.services.errors import (
    DimensionMismatchError,
    FetchError,
    HostNotAllowedError,
    PaperRagError,
    PayloadTooLargeError,
    StorageError,
)
from paper_rag.services.pipeline.paper_pipeline import IndexOutcome, PaperIndexService
from paper_rag.services.sources.pdf_fetcher import PdfFetcher

router = APIRouter()

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Range",
}


def raise_http_error(exc: PaperRagError) -> None:
    """把流水线错误映射为 HTTP 状态码"""
    if isinstance(exc, HostNotAllowedError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PayloadTooLargeError):
        raise HTTPException(status_code=413, detail=str(exc))
    if isinstance(exc, DimensionMismatchError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, FetchError):
        raise HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, StorageError):
        raise HTTPException(status_code=500, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _outcome_response(outcome: IndexOutcome) -> IndexOutcomeResponse:
    return IndexOutcomeResponse(
        ok=outcome.ok,
        status=outcome.status,
        already_indexed=outcome.already_indexed,
        error=outcome.error,
        chunk_count=outcome.chunk_count,
    )


@router.post("/papers/{paper_id:path}/index", response_model=IndexOutcomeResponse)
async def index_paper(
    paper_id: str,
    payload: IndexPaperRequest,
    service: PaperIndexService = Depends(get_index_service),
):
    """索引前端已切分好的论文文本"""
    try:
        outcome = await service.index_paper(
            paper_id=paper_id,
            title=payload.title,
            source_url=payload.source_url,
            chunks=payload.chunks,
            content_hash=payload.content_hash,
            force=payload.force,
            page_count=payload.page_count,
        )
    except PaperRagError as exc:
        raise_http_error(exc)
    return _outcome_response(outcome)


@router.post("/papers/{paper_id:path}/index/pdf", response_model=IndexOutcomeResponse)
async def index_paper_pdf(
    paper_id: str,
    payload: IndexPdfRequest,
    service: PaperIndexService = Depends(get_index_service),
):
    """服务端下载、解析、切分并索引 PDF"""
    try:
        outcome = await service.index_paper_from_pdf(
            paper_id=paper_id,
            title=payload.title,
            pdf_url=payload.pdf_url,
            force=payload.force,
        )
    except PaperRagError as exc:
        raise_http_error(exc)
    return _outcome_response(outcome)


@router.post("/papers/{paper_id:path}/search", response_model=SearchResponse)
async def search_paper(
    paper_id: str,
    payload: SearchRequest,
    service: PaperIndexService = Depends(get_index_service),
):
    """论文内语义检索"""
    try:
        result = await service.search_paper(paper_id, payload.query, limit=payload.limit)
    except PaperRagError as exc:
        raise_http_error(exc)
    return SearchResponse(
        text=result.text,
        chunks=[
            SearchChunkResponse(
                text=hit.text,
                score=round(hit.score, 6),
                position=hit.position,
                page_start=hit.page_start,
                page_end=hit.page_end,
            )
            for hit in result.chunks
        ],
        entry_id=result.entry_id,
    )


@router.delete("/papers/{paper_id:path}/index", response_model=IndexOutcomeResponse)
async def delete_index(
    paper_id: str,
    service: PaperIndexService = Depends(get_index_service),
):
    """删除论文索引"""
    try:
        outcome = await service.delete_index(paper_id)
    except PaperRagError as exc:
        raise_http_error(exc)
    return _outcome_response(outcome)


@router.get("/papers/{paper_id:path}/index", response_model=PaperIndexStatusResponse)
async def get_index_status(
    paper_id: str,
    service: PaperIndexService = Depends(get_index_service),
):
    """获取论文索引状态"""
    try:
        record = await service.get_index_status(paper_id)
    except PaperRagError as exc:
        raise_http_error(exc)
    if record is None:
        raise HTTPException(status_code=404, detail="论文尚未建立索引记录")
    return PaperIndexStatusResponse.model_validate(record)


@router.post("/maintenance/sweep", response_model=SweepResponse)
async def sweep_stale_entries(service: PaperIndexService = Depends(get_index_service)):
    """手动触发过期索引清理"""
    try:
        result = await service.sweep_stale_entries()
    except PaperRagError as exc:
        raise_http_error(exc)
    return SweepResponse(scanned=result.scanned, cleaned=result.cleaned)


@router.options("/pdf")
async def pdf_proxy_options():
    return Response(status_code=204, headers=_CORS_HEADERS)


@router.get("/pdf")
async def pdf_proxy(
    request: Request,
    url: str = Query(..., min_length=1),
    fetcher: PdfFetcher = Depends(get_pdf_fetcher),
):
    """白名单 PDF 代理"""
    try:
        fetched = await fetcher.fetch(url, byte_range=request.headers.get("range"))
    except HostNotAllowedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except PayloadTooLargeError as exc:
        raise HTTPException(status_code=413, detail=str(exc))
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    headers = dict(fetched.headers)
    headers.update(_CORS_HEADERS)
    headers.setdefault("content-type", "application/pdf")
    return Response(
        content=fetched.content,
        status_code=fetched.status_code,
        headers=headers,
        media_type=headers["content-type"],
    )
