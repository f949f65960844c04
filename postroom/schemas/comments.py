"""
postroom.schemas.comments
~~~~~~~~~~~~~~~~~~~~~~~~~

实时评论相关的 Pydantic 模型：评论实体、客户端事件信封及各事件载荷。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CommentData(BaseModel):
    """单条评论。"""

    id: str = Field(..., description="评论 ID")
    post_id: str = Field(..., description="所属帖子（房间）ID")
    created_by: str = Field(..., description="作者用户 ID")
    author_name: str | None = Field(default=None, description="发表时的作者用户名，便于客户端直接展示")
    body: str = Field(..., description="评论正文")
    parent_comment_id: str | None = Field(default=None, description="被回复的评论 ID，顶层评论为空")
    created_at: datetime = Field(..., description="创建时间")


# ── WebSocket 事件 ────────────────────────────────────────────────────

class ClientEvent(BaseModel):
    """客户端发来的事件信封：``{"event": ..., "data": ..., "ack": ...}``。"""

    event: str = Field(..., min_length=1, description="事件名")
    data: Any = Field(default=None, description="事件载荷")
    ack: int | str | None = Field(default=None, description="客户端回执 ID，原样回传")


class SendCommentPayload(BaseModel):
    """``sendComment`` 事件载荷。"""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    body: str = Field(..., min_length=1, max_length=5000, description="评论正文")
    parent_comment_id: str | None = Field(
        default=None, alias="parentCommentId", description="被回复的评论 ID",
    )


class TypingPayload(BaseModel):
    """``typing`` 事件载荷。"""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str | None = Field(default=None, alias="roomId", description="目标房间，缺省为当前房间")
    is_typing: bool = Field(..., alias="isTyping", description="是否正在输入")


class MarkAsReadPayload(BaseModel):
    """``markAsRead`` 事件载荷。"""

    model_config = ConfigDict(populate_by_name=True)

    comment_id: str = Field(..., min_length=1, alias="commentId", description="已读的评论 ID")


class ErrorData(BaseModel):
    """发给客户端的错误内容。"""

    status: str = Field(default="error", description="固定为 error")
    message: str = Field(..., description="人类可读的错误描述")
    event: str | None = Field(default=None, description="出错的事件名（连接级错误为空）")
