"""聊天相关的Pydantic schemas"""
from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class APIConfig(BaseModel):
    """OpenAI 兼容 API 配置"""
    # api_key / base_url / model 允许为空；后端会回退到 .env 配置
    api_key: str = Field(default="", description="API Key")
    base_url: str = Field(default="", description="API基础URL")
    model: str = Field(default="", description="模型名称")
    temperature: float = Field(default=0.7, ge=0, le=2, description="温度参数")
    max_tokens: int = Field(default=2000, gt=0, description="最大token数")
    top_p: float = Field(default=1.0, ge=0, le=1, description="Top P参数")


class PaperMeta(BaseModel):
    """论文元数据（来自上游论文列表）"""
    title: str = Field(..., min_length=1, max_length=500)
    abstract: str = Field(default="")
    authors: List[str] = Field(default_factory=list)
    published: str = Field(default="")


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class PaperChatRequest(BaseModel):
    """论文对话请求"""
    paper: PaperMeta
    messages: List[ChatTurn] = Field(..., min_length=1, description="对话历史，最后一条为当前问题")
    api_config: APIConfig = Field(default_factory=APIConfig)
    search_limit: Optional[int] = Field(None, ge=1, le=32)
