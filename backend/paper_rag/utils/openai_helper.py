"""OpenAI辅助函数"""
from openai import AsyncOpenAI
from typing import AsyncGenerator, Dict, Any
from httpx import Timeout

from paper_rag.schemas.chat import APIConfig
from paper_rag.config import settings


async def stream_chat_completion(
    api_config: APIConfig,
    messages: list[dict],
) -> AsyncGenerator[Dict[str, Any], None]:
    """
    流式调用 OpenAI 兼容的 Chat Completion API

    Args:
        api_config: API配置
        messages: 消息列表（第一条为 system 指令）

    Yields:
        {"type": "token" | "usage" | "error", ...}
    """
    api_key = api_config.api_key or settings.OPENAI_API_KEY
    if not api_key:
        yield {"type": "error", "error": "未配置API Key"}
        return

    client_kwargs = {
        "api_key": api_key,
        "timeout": Timeout(60.0, connect=15.0),
    }
    base_url = api_config.base_url or settings.OPENAI_BASE_URL
    if base_url:
        client_kwargs["base_url"] = base_url

    client = AsyncOpenAI(**client_kwargs)

    try:
        stream = await client.chat.completions.create(
            model=api_config.model or settings.CHAT_MODEL,
            messages=messages,
            temperature=api_config.temperature,
            max_tokens=api_config.max_tokens,
            top_p=api_config.top_p,
            stream=True,
            stream_options={"include_usage": True},
        )

        async for chunk in stream:
            # 检查chunk是否有choices且不为空
            if chunk.choices:
                delta = chunk.choices[0].delta
                if delta and delta.content:
                    yield {"type": "token", "content": delta.content}
            usage = getattr(chunk, "usage", None)
            if usage and getattr(usage, "total_tokens", None):
                yield {"type": "usage", "usage": usage.model_dump()}

    except Exception as e:
        yield {"type": "error", "error": f"OpenAI API错误: {str(e)}"}
