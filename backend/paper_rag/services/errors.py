"""Error taxonomy shared by the indexing and retrieval pipeline.

Review note:
- 索引流程中的提取/切分错误在编排边界被捕获并写入 `failed` 状态，不向上抛出。
- 检索错误直接抛给调用方，由调用方决定是否降级为无上下文回答。
"""

from __future__ import annotations

from typing import Optional


class PaperRagError(RuntimeError):
    """Base class for expected pipeline errors."""


class FetchError(PaperRagError):
    """Raised when an upstream HTTP resource (PDF, embeddings) cannot be retrieved."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class HostNotAllowedError(FetchError):
    """Raised when a PDF URL points outside the trusted host allow-list."""


class PayloadTooLargeError(FetchError):
    """Raised when an upstream response exceeds the configured byte budget."""


class ParseError(PaperRagError):
    """Raised when bytes cannot be parsed as a PDF document."""


class EmptyContentError(PaperRagError):
    """Raised when a document yields no extractable text or chunks."""


class ConcurrentIndexingError(PaperRagError):
    """Raised when another indexing job already holds the paper record."""


class StorageError(PaperRagError):
    """Raised when a state record cannot be read or written."""


class DimensionMismatchError(PaperRagError):
    """Raised when the embedding configuration differs from the indexed one."""
