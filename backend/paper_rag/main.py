"""FastAPI应用主文件.

Review note:
- 引擎、会话工厂、Embedding 客户端、检索引擎、PDF 下载器与索引服务都在 lifespan 中创建并挂到 app.state。
- Embedding 未配置时应用照常启动，索引/检索接口返回 503，PDF 代理仍可用。
- 过期淘汰任务在 lifespan 内后台运行，关闭时通过事件停止。
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import logging
import os

from paper_rag.config import settings
from paper_rag.database import create_engine, create_session_maker, init_db
from paper_rag.services.pipeline.paper_pipeline import PaperIndexService
from paper_rag.services.pipeline.sweeper import run_sweep_loop
from paper_rag.services.retrieval.embedding_client import EmbeddingClient, EmbeddingConfigError
from paper_rag.services.retrieval.vector_store import VectorStore
from paper_rag.services.sources.pdf_fetcher import PdfFetcher

logger = logging.getLogger("uvicorn.error")


def build_index_service(session_maker, fetcher: PdfFetcher):
    """按配置组装索引服务；Embedding 未配置时返回 None"""
    try:
        embedder = EmbeddingClient(
            base_url=settings.EMBEDDING_BASE_URL,
            api_key=settings.EMBEDDING_API_KEY,
            model=settings.EMBEDDING_MODEL,
            dimensions=settings.EMBEDDING_DIMENSIONS,
            timeout_sec=settings.EMBEDDING_TIMEOUT_SEC,
            batch_size=settings.EMBEDDING_BATCH_SIZE,
        )
    except EmbeddingConfigError as exc:
        logger.warning("paper-index-disabled reason=%s", exc)
        return None
    search_engine = VectorStore(session_maker, embedder)
    return PaperIndexService.from_settings(settings, session_maker, search_engine, fetcher=fetcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    logger.info("启动论文检索服务...")

    if settings.DATABASE_URL.startswith("sqlite") and "./data/" in settings.DATABASE_URL:
        os.makedirs("data", exist_ok=True)

    engine = create_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    await init_db(engine)
    logger.info("数据库初始化完成")

    session_maker = create_session_maker(engine)
    fetcher = PdfFetcher(
        allowed_hosts=settings.pdf_allowed_hosts_set,
        max_bytes=settings.PDF_MAX_BYTES,
        timeout_sec=settings.PDF_DOWNLOAD_TIMEOUT_SEC,
    )
    app.state.session_maker = session_maker
    app.state.pdf_fetcher = fetcher
    app.state.index_service = build_index_service(session_maker, fetcher)

    stop_event = asyncio.Event()
    sweep_task = None
    if settings.RAG_SWEEP_ENABLED and app.state.index_service is not None:
        sweep_task = asyncio.create_task(
            run_sweep_loop(
                app.state.index_service,
                settings.RAG_SWEEP_INTERVAL_HOURS * 3600,
                stop_event,
            )
        )
        logger.info("过期索引清理已启动: 每 %d 小时", settings.RAG_SWEEP_INTERVAL_HOURS)

    yield

    # 关闭时执行
    logger.info("关闭论文检索服务...")
    stop_event.set()
    if sweep_task is not None:
        await sweep_task
    await engine.dispose()


def create_app() -> FastAPI:
    """创建FastAPI应用"""
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="论文 PDF 索引与检索API",
        lifespan=lifespan,
    )

    # 配置CORS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.get("/")
    async def root():
        """根路径"""
        return {
            "message": "欢迎使用论文检索API",
            "version": settings.APP_VERSION,
            "docs": "/docs",
        }

    @application.get("/health")
    async def health_check():
        """健康检查"""
        return {
            "status": "healthy",
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "index_enabled": getattr(application.state, "index_service", None) is not None,
        }

    # 导入并注册路由
    from paper_rag.api.v1 import chat, papers
    application.include_router(papers.router, prefix="/api/v1", tags=["papers"])
    application.include_router(chat.router, prefix="/api/v1", tags=["chat"])
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "paper_rag.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
