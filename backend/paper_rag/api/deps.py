"""路由依赖：从 app.state 取出生命周期内创建的服务对象"""
from fastapi import HTTPException, Request

from paper_rag.services.pipeline.paper_pipeline import PaperIndexService
from paper_rag.services.sources.pdf_fetcher import PdfFetcher


def get_index_service(request: Request) -> PaperIndexService:
    service = getattr(request.app.state, "index_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="索引服务未初始化")
    return service


def get_pdf_fetcher(request: Request) -> PdfFetcher:
    fetcher = getattr(request.app.state, "pdf_fetcher", None)
    if fetcher is None:
        raise HTTPException(status_code=503, detail="PDF 服务未初始化")
    return fetcher
