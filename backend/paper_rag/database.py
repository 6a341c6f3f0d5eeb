"""数据库连接和会话管理

Review note:
- 引擎与会话工厂由应用生命周期显式创建并挂在 app.state 上，服务对象通过参数拿到会话工厂。
- SQLite 文件库设置 busy timeout，并发的条件更新会排队等待而不是立即报错。
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """创建异步引擎"""
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # 内存库只能共享同一连接
            kwargs["poolclass"] = StaticPool
    return create_async_engine(database_url, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """创建会话工厂"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """初始化数据库表"""
    from paper_rag.models.base import Base
    from paper_rag.models.paper_index import PaperIndexRecord
    from paper_rag.models.search_entry import SearchChunk, SearchEntry

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=[
            PaperIndexRecord.__table__,
            SearchEntry.__table__,
            SearchChunk.__table__,
        ])
