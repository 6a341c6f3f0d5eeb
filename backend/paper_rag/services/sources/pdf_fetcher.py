"""Fetch paper PDFs from trusted hosts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional
from urllib.parse import urlparse
import hashlib
import logging

import httpx

from paper_rag.services.errors import FetchError, HostNotAllowedError, PayloadTooLargeError

logger = logging.getLogger("uvicorn.error")

DEFAULT_ALLOWED_HOSTS = frozenset({"arxiv.org", "www.arxiv.org", "export.arxiv.org"})
DEFAULT_MAX_BYTES = 50 * 1024 * 1024
MAX_REDIRECTS = 5
_PASSTHROUGH_HEADERS = ("content-type", "content-range", "accept-ranges", "last-modified", "etag")


@dataclass
class PdfFetchResult:
    url: str
    status_code: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return self.status_code == 206

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


class PdfFetcher:
    """
    Download PDFs over httpx.

    Only hosts on the allow-list are contacted. A `Range` header is
    forwarded for partial-content reads; the body is counted while
    streaming and the request fails once it passes `max_bytes`.
    """

    def __init__(
        self,
        allowed_hosts: Iterable[str] = DEFAULT_ALLOWED_HOSTS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        timeout_sec: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.allowed_hosts = {host.lower() for host in allowed_hosts}
        self.max_bytes = int(max_bytes)
        self.timeout_sec = int(timeout_sec)
        self._transport = transport

    def validate_url(self, url: str) -> str:
        try:
            parsed = urlparse(url or "")
        except ValueError as exc:
            raise HostNotAllowedError(f"无效的 PDF 地址: {url}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise HostNotAllowedError(f"无效的 PDF 地址: {url}")
        if parsed.hostname.lower() not in self.allowed_hosts:
            raise HostNotAllowedError(f"不允许的 PDF 主机: {parsed.hostname}")
        return parsed.geturl()

    async def fetch(self, url: str, byte_range: Optional[str] = None) -> PdfFetchResult:
        """
        Fetch a PDF (or one byte range of it).

        Redirects are followed by hand so every hop is checked against the
        allow-list before it is requested.

        Raises FetchError for non-success upstream status and
        PayloadTooLargeError when the body exceeds the byte budget.
        """
        target = self.validate_url(url)
        headers = {"Accept": "application/pdf"}
        if byte_range:
            headers["Range"] = byte_range

        try:
            async with httpx.AsyncClient(
                follow_redirects=False,
                timeout=self.timeout_sec,
                transport=self._transport,
            ) as client:
                for _ in range(MAX_REDIRECTS + 1):
                    async with client.stream("GET", target, headers=headers) as response:
                        if response.is_redirect:
                            # 下一跳必须先通过白名单校验再发起请求
                            location = response.url.join(response.headers["location"])
                            target = self.validate_url(str(location))
                            logger.info("pdf-redirect from=%s to=%s", response.url, target)
                            continue
                        if response.status_code not in (200, 206):
                            raise FetchError(
                                f"Failed to fetch PDF ({response.status_code})",
                                status_code=response.status_code,
                            )

                        declared = response.headers.get("content-length")
                        if declared and declared.isdigit() and int(declared) > self.max_bytes:
                            raise PayloadTooLargeError(
                                f"PDF 超过大小限制: {declared} > {self.max_bytes} bytes",
                                status_code=413,
                            )

                        buffer = bytearray()
                        async for piece in response.aiter_bytes():
                            buffer.extend(piece)
                            if len(buffer) > self.max_bytes:
                                raise PayloadTooLargeError(
                                    f"PDF 超过大小限制: > {self.max_bytes} bytes",
                                    status_code=413,
                                )

                        passthrough = {
                            name: response.headers[name]
                            for name in _PASSTHROUGH_HEADERS
                            if name in response.headers
                        }
                        status_code = response.status_code
                        break
                else:
                    raise FetchError(f"PDF 重定向次数过多: {url}")
        except httpx.HTTPError as exc:
            raise FetchError(f"PDF 下载失败: {exc}") from exc

        data = bytes(buffer)
        if status_code == 200 and not data.startswith(b"%PDF"):
            raise FetchError(f"non-pdf-content {target}", status_code=status_code)

        logger.info(
            "pdf-fetched url=%s status=%d bytes=%d range=%s",
            target,
            status_code,
            len(data),
            byte_range or "-",
        )
        return PdfFetchResult(url=target, status_code=status_code, content=data, headers=passthrough)
