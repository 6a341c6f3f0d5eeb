"""系统提示词工具

Review note:
- 有检索片段时：只允许依据片段回答，并用 [PAGE n] 标注出处；片段不足时必须明确说明。
- 无检索片段时（检索为空或索引未就绪）：只依据摘要/元数据回答，并明确告知未在论文正文中找到。
"""
from dataclasses import dataclass, field
from typing import List, Optional

NOT_FOUND_PHRASE = "I could not find this in the paper text."

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI research assistant.
You are currently discussing the following academic paper:

Title: {title}
Authors: {authors}
Published: {published}

Abstract:
{abstract}

Your goal is to help the user understand this paper.
Keep answers concise, technical where appropriate, and easy to read.
Format your responses using Markdown."""

GROUNDED_RULES = """Answer ONLY from the paper excerpts below. Do not rely on general knowledge.
Cite the page of every claim using the page markers in the excerpts, e.g. [PAGE 3].
If the excerpts do not contain enough information to answer, say explicitly: "{not_found}"

Paper excerpts:
{context}"""

UNGROUNDED_RULES = """The full text of this paper is not available for this answer.
Answer ONLY from the title, authors and abstract above, and say that your answer is based on the abstract.
If the question needs information beyond the abstract, say explicitly: "{not_found}" Do not fill the gap with general knowledge."""


@dataclass
class PaperInfo:
    """Paper metadata used in the system instruction."""
    title: str
    abstract: str = ""
    authors: List[str] = field(default_factory=list)
    published: str = ""


@dataclass
class SystemInstruction:
    content: str
    grounded: bool


def get_default_system_prompt() -> str:
    return DEFAULT_SYSTEM_PROMPT


def build_system_instruction(
    paper: PaperInfo,
    context: Optional[str] = None,
    template: Optional[str] = None,
) -> SystemInstruction:
    """按是否有检索片段组装最终 system 指令"""
    header = (template or DEFAULT_SYSTEM_PROMPT).format(
        title=paper.title.strip() or "Unknown",
        authors=", ".join(a.strip() for a in paper.authors if a.strip()) or "Unknown",
        published=paper.published.strip() or "Unknown",
        abstract=paper.abstract.strip() or "(no abstract available)",
    )
    excerpt = (context or "").strip()
    if excerpt:
        rules = GROUNDED_RULES.format(not_found=NOT_FOUND_PHRASE, context=excerpt)
        return SystemInstruction(content=f"{header}\n\n{rules}", grounded=True)
    rules = UNGROUNDED_RULES.format(not_found=NOT_FOUND_PHRASE)
    return SystemInstruction(content=f"{header}\n\n{rules}", grounded=False)
