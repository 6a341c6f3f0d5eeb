"""Extract per-page plain text from PDF bytes.

Review note:
- 以 PyMuPDF span 作为带坐标的文本片段，按纵坐标重建行。
- 页眉页脚按整篇文档自适应阈值去除，只作用于页首/页尾槽位，正文中的重复短语保留。
- 输出的 full_text 带 `[PAGE n]` 标记，供检索结果按页引用。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
import math
import re

import fitz  # PyMuPDF

from paper_rag.services.errors import ParseError

HEADER_FOOTER_LINE_COUNT = 2
HEADER_FOOTER_REPEAT_THRESHOLD = 0.6
LINE_Y_TOLERANCE = 2.0

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextRun:
    """A positioned piece of text as laid out on the page."""

    text: str
    x: Optional[float] = None
    y: Optional[float] = None
    end_of_line: bool = False


@dataclass
class ExtractedDocument:
    page_texts: List[str]
    full_text: str

    @property
    def page_count(self) -> int:
        return len(self.page_texts)


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def _line_key(line: str) -> str:
    return normalize_whitespace(line).lower()


def group_runs_into_lines(
    runs: Iterable[TextRun],
    y_tolerance: float = LINE_Y_TOLERANCE,
) -> List[str]:
    """
    Join runs that share a baseline into lines.

    A vertical jump larger than `y_tolerance` closes the current line. An
    end-of-line run closes it too; an end-of-line run on an empty line emits
    a blank line, which later acts as a paragraph separator.
    """
    lines: List[str] = []
    current: List[str] = []
    last_y: Optional[float] = None

    for run in runs:
        text = run.text or ""
        y = run.y

        if last_y is not None and y is not None and abs(y - last_y) > y_tolerance and current:
            lines.append(" ".join(current))
            current = []

        if text:
            current.append(text)

        if run.end_of_line:
            if current:
                lines.append(" ".join(current))
                current = []
            else:
                lines.append("")

        if y is not None:
            last_y = y

    if current:
        lines.append(" ".join(current))
    return lines


def remove_repeated_headers_footers(
    pages: Sequence[Sequence[str]],
    line_count: int = HEADER_FOOTER_LINE_COUNT,
    repeat_threshold: float = HEADER_FOOTER_REPEAT_THRESHOLD,
) -> List[List[str]]:
    """
    Drop running headers/footers that repeat across most pages.

    The first/last `line_count` non-blank lines of each page are candidates.
    A candidate is removed where it sits in the same slot kind (header or
    footer) and its normalized text fills that slot on at least
    ceil(pages * repeat_threshold) pages.
    """
    if not pages:
        return []

    header_counts: dict[str, int] = {}
    footer_counts: dict[str, int] = {}
    for lines in pages:
        meaningful = [line for line in lines if line.strip()]
        for line in meaningful[:line_count]:
            key = _line_key(line)
            header_counts[key] = header_counts.get(key, 0) + 1
        footer = meaningful[-line_count:] if line_count > 0 else []
        for line in footer:
            key = _line_key(line)
            footer_counts[key] = footer_counts.get(key, 0) + 1

    min_repeats = math.ceil(len(pages) * repeat_threshold)
    # 单页文档无法判断“重复”，阈值至少为 2。
    min_repeats = max(min_repeats, 2)
    header_drop = {key for key, count in header_counts.items() if count >= min_repeats}
    footer_drop = {key for key, count in footer_counts.items() if count >= min_repeats}

    cleaned: List[List[str]] = []
    for lines in pages:
        total_meaningful = sum(1 for line in lines if line.strip())
        non_empty_index = 0
        kept: List[str] = []
        for line in lines:
            if not line.strip():
                kept.append(line)
                continue
            key = _line_key(line)
            is_header_slot = non_empty_index < line_count
            is_footer_slot = non_empty_index >= total_meaningful - line_count
            non_empty_index += 1
            if (is_header_slot and key in header_drop) or (is_footer_slot and key in footer_drop):
                continue
            kept.append(line)
        cleaned.append(kept)
    return cleaned


def merge_hyphenated_lines(lines: Sequence[str]) -> List[str]:
    """
    Re-join words split across a line wrap.

    "sen-" + "tence." becomes "sentence."; a capitalised continuation
    ("co-" + "Operation") is a real compound and stays on two lines.
    Blank lines collapse into a single "" paragraph marker.
    """
    merged: List[str] = []
    i = 0
    while i < len(lines):
        line = normalize_whitespace(lines[i])
        if not line:
            if merged and merged[-1] != "":
                merged.append("")
            i += 1
            continue

        nxt = normalize_whitespace(lines[i + 1]) if i + 1 < len(lines) else ""
        if line.endswith("-") and nxt and nxt[0].islower():
            merged.append(f"{line[:-1]}{nxt}")
            i += 2
            continue

        merged.append(line)
        i += 1
    return merged


def build_full_text(page_texts: Sequence[str]) -> str:
    """Tag each page with a `[PAGE n]` marker and join the pages."""
    parts = []
    for index, text in enumerate(page_texts):
        marker = f"[PAGE {index + 1}]"
        parts.append(f"{marker}\n{text}" if text else marker)
    return "\n\n".join(parts)


def _page_runs(page) -> List[TextRun]:
    runs: List[TextRun] = []
    layout = page.get_text("dict")
    for block in layout.get("blocks", []):
        if block.get("type", 0) != 0:
            continue
        for line in block.get("lines", []):
            spans = [span for span in line.get("spans", []) if span.get("text")]
            for idx, span in enumerate(spans):
                origin = span.get("origin") or (None, None)
                runs.append(
                    TextRun(
                        text=span["text"],
                        x=origin[0],
                        y=origin[1],
                        end_of_line=idx == len(spans) - 1,
                    )
                )
        # 块结束视为段落边界
        runs.append(TextRun(text="", end_of_line=True))
    return runs


def clean_pages(
    raw_pages: Sequence[Sequence[str]],
    header_footer_line_count: int = HEADER_FOOTER_LINE_COUNT,
    header_footer_repeat_threshold: float = HEADER_FOOTER_REPEAT_THRESHOLD,
) -> List[str]:
    """Run header/footer removal and hyphenation repair; return page texts."""
    normalized = [[normalize_whitespace(line) for line in lines] for lines in raw_pages]
    cleaned = remove_repeated_headers_footers(
        normalized,
        line_count=header_footer_line_count,
        repeat_threshold=header_footer_repeat_threshold,
    )
    page_texts = []
    for lines in cleaned:
        merged = merge_hyphenated_lines(lines)
        while merged and merged[-1] == "":
            merged.pop()
        page_texts.append("\n".join(merged))
    return page_texts


def extract_pdf_text(
    data: bytes,
    max_pages: Optional[int] = None,
    header_footer_line_count: int = HEADER_FOOTER_LINE_COUNT,
    header_footer_repeat_threshold: float = HEADER_FOOTER_REPEAT_THRESHOLD,
) -> ExtractedDocument:
    """
    Parse PDF bytes into page texts plus a page-tagged full text.
    """
    if not data:
        raise ParseError("PDF 内容为空。")
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise ParseError(f"无法解析 PDF: {exc}") from exc

    try:
        page_count = doc.page_count
        if max_pages:
            page_count = min(page_count, max_pages)
        raw_pages: List[List[str]] = []
        for page_index in range(page_count):
            try:
                runs = _page_runs(doc[page_index])
            except Exception as exc:
                raise ParseError(f"第 {page_index + 1} 页解析失败: {exc}") from exc
            raw_pages.append(group_runs_into_lines(runs))
    finally:
        doc.close()

    page_texts = clean_pages(
        raw_pages,
        header_footer_line_count=header_footer_line_count,
        header_footer_repeat_threshold=header_footer_repeat_threshold,
    )
    return ExtractedDocument(page_texts=page_texts, full_text=build_full_text(page_texts))
