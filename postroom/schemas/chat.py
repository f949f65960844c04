"""
postroom.schemas.chat
~~~~~~~~~~~~~~~~~~~~~

AI 对话相关的 Pydantic 请求/响应模型。
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

MessageRole = Literal["user", "assistant", "system"]


class CreateConversationRequest(BaseModel):
    """新建对话请求体。"""

    title: str | None = Field(default=None, max_length=255, description="对话标题")


class SendMessageRequest(BaseModel):
    """发送消息请求体（流式与非流式共用）。"""

    content: str = Field(..., min_length=1, description="用户消息文本")
    model: str | None = Field(default=None, description="使用的模型，缺省为配置中的默认模型")
    temperature: float | None = Field(default=None, ge=0, le=2, description="采样温度（0-2）")


class MessageData(BaseModel):
    """单条对话消息。"""

    id: str = Field(..., description="消息 ID")
    role: MessageRole = Field(..., description="消息角色：user / assistant / system")
    content: str = Field(..., description="消息文本")
    model: str | None = Field(default=None, description="生成该消息的模型")
    prompt_tokens: int | None = Field(default=None, description="提示词 token 数")
    completion_tokens: int | None = Field(default=None, description="回复 token 数")
    total_tokens: int | None = Field(default=None, description="总 token 数")
    created_at: datetime = Field(..., description="创建时间")


class ConversationData(BaseModel):
    """对话摘要。"""

    id: str = Field(..., description="对话 ID")
    title: str = Field(..., description="对话标题")
    created_at: datetime = Field(..., description="创建时间")
    updated_at: datetime = Field(..., description="最近更新时间")


class ConversationDetailData(ConversationData):
    """对话详情（含全部消息，按时间正序）。"""

    messages: list[MessageData] = Field(default_factory=list, description="消息列表")


class PageMetadata(BaseModel):
    """分页信息。"""

    total_items: int = Field(..., description="总条数")
    offset: int = Field(..., description="偏移量")
    limit: int = Field(..., description="每页条数")
    total_pages: int = Field(..., description="总页数")


class ConversationListData(BaseModel):
    """对话列表响应数据。"""

    conversations: list[ConversationData] = Field(..., description="对话列表")
    metadata: PageMetadata = Field(..., description="分页信息")
