"""Build LLM context text from matched chunks and their neighbours.

Review note:
- 每个命中 chunk 前后各扩展若干相邻 chunk，重叠区间合并，保持文档顺序输出。
- 不相邻的片段之间用 `...` 分隔，提示模型这里有省略。
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

RANGE_SEPARATOR = "\n...\n"
ENTRY_SEPARATOR = "\n\n---\n\n"


def expand_ranges(
    positions: Iterable[int],
    before: int,
    after: int,
    last_position: int,
) -> List[Tuple[int, int]]:
    """
    Widen each matched position by its neighbours and merge overlaps.

    Returns inclusive (start, end) ranges sorted by position.
    """
    spans = sorted(
        (max(0, pos - before), min(last_position, pos + after))
        for pos in positions
    )
    merged: List[Tuple[int, int]] = []
    for start, end in spans:
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def build_entry_text(
    title: str,
    texts_by_position: Dict[int, str],
    ranges: Sequence[Tuple[int, int]],
) -> str:
    blocks = []
    for start, end in ranges:
        parts = [texts_by_position[pos] for pos in range(start, end + 1) if pos in texts_by_position]
        block = "\n".join(part.strip() for part in parts if part.strip())
        if block:
            blocks.append(block)
    if not blocks:
        return ""
    body = RANGE_SEPARATOR.join(blocks)
    title = (title or "").strip()
    return f"## {title}:\n\n{body}" if title else body


def build_context_text(entry_texts: Iterable[str]) -> str:
    return ENTRY_SEPARATOR.join(text for text in entry_texts if text.strip())
