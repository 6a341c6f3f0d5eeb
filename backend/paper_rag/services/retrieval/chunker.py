"""Split page-tagged paper text into embedding-sized chunks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple
import re


@dataclass(frozen=True)
class ChunkerOptions:
    delimiter: str = "\n\n"
    max_chars_soft_limit: int = 4000
    max_chars_hard_limit: int = 12000
    min_chars_soft_limit: int = 600
    min_lines: int = 1


DEFAULT_CHUNKER_OPTIONS = ChunkerOptions()
LARGE_CHUNKER_OPTIONS = ChunkerOptions(
    max_chars_soft_limit=8000,
    max_chars_hard_limit=20000,
    min_chars_soft_limit=1200,
)
DEFAULT_MAX_CHUNKS = 600

_PAGE_MARKER_RE = re.compile(r"\[PAGE (\d+)\]")


def _split_long_line(line: str, limit: int) -> List[str]:
    pieces: List[str] = []
    rest = line
    while len(rest) > limit:
        cut = rest.rfind(" ", 0, limit + 1)
        if cut <= 0:
            cut = limit
        pieces.append(rest[:cut].rstrip())
        rest = rest[cut:].lstrip()
    if rest:
        pieces.append(rest)
    return pieces


def _units(text: str, options: ChunkerOptions) -> List[Tuple[str, str]]:
    """
    Break text into (separator, unit) pairs.

    Paragraphs are the preferred unit. A paragraph above the soft max falls
    back to its lines; a line above the hard max is cut on whitespace.
    """
    units: List[Tuple[str, str]] = []
    for paragraph in text.split(options.delimiter):
        if not paragraph.strip():
            continue
        if len(paragraph) <= options.max_chars_soft_limit:
            units.append((options.delimiter, paragraph))
            continue
        first = True
        for line in paragraph.split("\n"):
            if not line.strip():
                continue
            for piece in _split_long_line(line, options.max_chars_hard_limit):
                units.append((options.delimiter if first else "\n", piece))
                first = False
    return units


def _line_count(text: str) -> int:
    return text.count("\n") + 1


def _too_small(text: str, options: ChunkerOptions) -> bool:
    return len(text) < options.min_chars_soft_limit or _line_count(text) < options.min_lines


def split_text(text: str, options: Optional[ChunkerOptions] = None) -> List[str]:
    """
    Delimiter-aware chunking.

    A chunk closes once adding the next unit would pass the soft max. While a
    chunk is still below the soft minimum (or has fewer than `min_lines`
    lines) it keeps growing up to the hard max. A short chunk that cannot
    grow without passing the hard max is folded into the previous chunk
    instead, when that stays within the hard max; the tail is handled the
    same way.
    """
    opts = options or DEFAULT_CHUNKER_OPTIONS
    if not text or not text.strip():
        return []

    chunks: List[str] = []
    current = ""
    current_sep = ""

    def close(chunk: str, sep: str) -> None:
        if chunks and _too_small(chunk, opts):
            merged = f"{chunks[-1]}{sep}{chunk}"
            if len(merged) <= opts.max_chars_hard_limit:
                chunks[-1] = merged
                return
        chunks.append(chunk)

    for sep, unit in _units(text, opts):
        if not current:
            current, current_sep = unit, sep
            continue
        candidate = f"{current}{sep}{unit}"
        if len(candidate) <= opts.max_chars_soft_limit:
            current = candidate
            continue
        if _too_small(current, opts) and len(candidate) <= opts.max_chars_hard_limit:
            current = candidate
            continue
        close(current, current_sep)
        current, current_sep = unit, sep
    if current:
        close(current, current_sep)
    return chunks


def chunk_pdf_text(full_text: str, max_chunks: int = DEFAULT_MAX_CHUNKS) -> List[str]:
    """
    Chunk with default sizes; re-chunk coarser when over the chunk budget.
    """
    if not full_text or not full_text.strip():
        return []
    chunks = split_text(full_text, DEFAULT_CHUNKER_OPTIONS)
    if len(chunks) > max_chunks:
        chunks = split_text(full_text, LARGE_CHUNKER_OPTIONS)
    return chunks


def page_spans(chunks: List[str]) -> List[Tuple[Optional[int], Optional[int]]]:
    """
    Resolve (page_start, page_end) for each chunk of an ordered chunk list.

    A chunk that does not begin with a `[PAGE n]` marker continues the page
    on which the previous chunk ended.
    """
    spans: List[Tuple[Optional[int], Optional[int]]] = []
    current_page: Optional[int] = None
    for chunk in chunks:
        markers = [int(m.group(1)) for m in _PAGE_MARKER_RE.finditer(chunk)]
        stripped = chunk.lstrip()
        if markers and stripped.startswith(f"[PAGE {markers[0]}]"):
            start = markers[0]
        else:
            start = current_page if current_page is not None else (markers[0] if markers else None)
        end = markers[-1] if markers else current_page
        spans.append((start, end))
        if end is not None:
            current_page = end
    return spans
