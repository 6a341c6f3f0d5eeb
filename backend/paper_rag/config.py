"""应用配置"""
from pydantic_settings import BaseSettings
from pydantic import model_validator
from typing import List


class Settings(BaseSettings):
    """应用配置类"""

    # 应用信息
    APP_NAME: str = "Paper RAG"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # 数据库配置（论文索引状态 + 向量条目）
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/paper_rag.db"

    # CORS配置
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Chat completion（OpenAI 兼容接口，默认 OpenRouter）
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://openrouter.ai/api/v1"
    CHAT_MODEL: str = "google/gemini-2.5-flash-preview-09-2025"

    # Embedding（OpenAI 兼容 /embeddings）
    EMBEDDING_BASE_URL: str = "https://openrouter.ai/api/v1"
    EMBEDDING_API_KEY: str = ""
    EMBEDDING_MODEL: str = "qwen/qwen3-embedding-8b"
    # 必须与向量库中记录的维度一致
    EMBEDDING_DIMENSIONS: int = 1024
    EMBEDDING_TIMEOUT_SEC: int = 60
    EMBEDDING_BATCH_SIZE: int = 16

    # PDF 获取
    PDF_ALLOWED_HOSTS: str = "arxiv.org,www.arxiv.org,export.arxiv.org"
    PDF_MAX_BYTES: int = 50 * 1024 * 1024
    PDF_DOWNLOAD_TIMEOUT_SEC: int = 30
    PDF_MAX_PAGES: int = 0  # 0 表示不限制

    # 文本清洗 / 切分（经验值，可调）
    HEADER_FOOTER_LINE_COUNT: int = 2
    HEADER_FOOTER_REPEAT_THRESHOLD: float = 0.6
    CHUNK_COUNT_BUDGET: int = 600

    # 检索
    SEARCH_DEFAULT_LIMIT: int = 8
    SEARCH_SCORE_THRESHOLD: float = 0.25
    SEARCH_CHUNK_CONTEXT: int = 1

    # 索引生命周期
    RAG_STALE_AFTER_DAYS: int = 7
    RAG_SWEEP_INTERVAL_HOURS: int = 24
    RAG_SWEEP_PAGE_SIZE: int = 100
    RAG_SWEEP_ENABLED: bool = True
    INDEXING_LEASE_SEC: int = 900

    @model_validator(mode="before")
    @classmethod
    def treat_empty_env_as_unset(cls, data):
        """
        将空字符串环境变量按“未配置”处理。
        这样 .env 中留空不会覆盖默认值，也避免复杂类型解析报错。
        """
        if not isinstance(data, dict):
            return data

        cleaned = dict(data)
        for field_name, field in cls.model_fields.items():
            default = field.default
            if default in (None, ""):
                continue
            if cleaned.get(field_name) == "":
                cleaned.pop(field_name, None)
        return cleaned

    @property
    def cors_origins_list(self) -> List[str]:
        """获取CORS允许的源列表"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def pdf_allowed_hosts_set(self) -> set[str]:
        return {host.strip().lower() for host in self.PDF_ALLOWED_HOSTS.split(",") if host.strip()}

    @property
    def pdf_max_pages(self) -> int | None:
        return self.PDF_MAX_PAGES if self.PDF_MAX_PAGES > 0 else None

    class Config:
        env_file = (".env", "backend/.env")
        case_sensitive = True
        extra = "ignore"


# 全局配置实例
settings = Settings()
