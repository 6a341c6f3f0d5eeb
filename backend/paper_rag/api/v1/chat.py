"""论文对话API（流式输出）.

Review note:
- 索引为 ready 时先在论文内检索，检索片段写入 system 指令，回答必须引用 [PAGE n]。
- 索引未就绪或检索为空时退回摘要模式，system 指令要求明确说明“未在论文正文中找到”。
- 检索失败只记录日志并降级为摘要模式，不中断对话。
"""
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from typing import AsyncGenerator, List, Optional
import json
import logging

from paper_rag.api.deps import get_index_service
from paper_rag.models.paper_index import IndexStatus
from paper_rag.schemas.chat import PaperChatRequest
from paper_rag.services.errors import PaperRagError
from paper_rag.services.pipeline.paper_pipeline import PaperIndexService
from paper_rag.services.retrieval.vector_store import SearchResult
from paper_rag.utils.openai_helper import stream_chat_completion
from paper_rag.utils.system_prompt import PaperInfo, build_system_instruction

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _citations(result: SearchResult) -> List[dict]:
    return [
        {
            "position": hit.position,
            "score": round(hit.score, 4),
            "page_start": hit.page_start,
            "page_end": hit.page_end,
        }
        for hit in result.chunks
    ]


async def retrieve_context(
    service: PaperIndexService,
    paper_id: str,
    query: str,
    limit: Optional[int] = None,
) -> SearchResult:
    """检索论文片段；索引未就绪或检索失败时返回空结果"""
    try:
        record = await service.get_index_status(paper_id)
        if record is None or record.status != IndexStatus.READY:
            return SearchResult()
        return await service.search_paper(paper_id, query, limit=limit)
    except PaperRagError as exc:
        logger.warning("paper-chat-retrieval-failed paper_id=%s error=%s", paper_id, exc)
        return SearchResult()


async def generate_paper_chat_stream(
    paper_id: str,
    request: PaperChatRequest,
    service: PaperIndexService,
) -> AsyncGenerator[str, None]:
    """生成论文对话流式响应"""
    question = request.messages[-1].content
    yield _sse("status", {"stage": "retrieving", "paper_id": paper_id})

    result = await retrieve_context(service, paper_id, question, request.search_limit)
    instruction = build_system_instruction(
        PaperInfo(
            title=request.paper.title,
            abstract=request.paper.abstract,
            authors=list(request.paper.authors),
            published=request.paper.published,
        ),
        context=result.text,
    )
    yield _sse("context", {"grounded": instruction.grounded, "citations": _citations(result)})

    messages = [{"role": "system", "content": instruction.content}]
    messages.extend({"role": turn.role, "content": turn.content} for turn in request.messages)

    full_response = ""
    usage = None
    async for event in stream_chat_completion(request.api_config, messages):
        if event["type"] == "error":
            logger.warning("paper-chat-llm-failed paper_id=%s error=%s", paper_id, event.get("error"))
            yield _sse("error", {"error": event.get("error")})
            return
        if event["type"] == "usage":
            usage = event.get("usage")
            continue
        full_response += event.get("content", "")
        yield _sse("token", {"content": event.get("content", "")})

    logger.info(
        "paper-chat-done paper_id=%s grounded=%s chars=%d",
        paper_id,
        instruction.grounded,
        len(full_response),
    )
    yield _sse("done", {"grounded": instruction.grounded, "usage": usage})


@router.post("/papers/{paper_id:path}/chat/stream")
async def paper_chat_stream(
    paper_id: str,
    request: PaperChatRequest,
    service: PaperIndexService = Depends(get_index_service),
):
    """论文对话接口（SSE）"""
    return StreamingResponse(
        generate_paper_chat_stream(paper_id, request, service),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # 禁用nginx缓冲
        },
    )
