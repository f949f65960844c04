"""
postroom.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 接口（房间在线查询、AI 对话）的统一应答体。

WebSocket 评论通道不使用此结构，它有自己的 ``{event, data, ack}`` 帧格式；
这里的 ``code`` 与 HTTP 状态码保持一致，业务异常通过 :meth:`ApiResponse.from_error`
映射到对应的状态码。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from postroom.core.exceptions import (
    ConnectionRejected,
    NotFoundError,
    PostroomError,
    ProviderError,
)

T = TypeVar("T")

# 业务异常 → 应答码，按顺序匹配，未列出的一律 400
_ERROR_CODES: tuple[tuple[type[PostroomError], int], ...] = (
    (NotFoundError, 404),
    (ProviderError, 502),
    (ConnectionRejected, 401),
)


class ApiResponse(BaseModel, Generic[T]):
    """HTTP 接口应答体，例如对话接口::

        {"code": 200, "data": {"id": "...", "title": "...", "messages": [...]}, "msg": "success"}
        {"code": 404, "data": null, "msg": "Conversation not found"}

    Attributes:
        code: 与 HTTP 状态码一致，200 表示成功。
        data: 业务数据，失败时为 ``None``。
        msg: 成功时为 ``"success"``，失败时为业务异常的 ``message``。
    """

    code: int = Field(default=200, description="应答码，与 HTTP 状态码一致")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息或错误描述")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        return cls(code=code, data=data, msg=msg)

    @classmethod
    def from_error(cls, exc: PostroomError) -> ApiResponse[Any]:
        """由业务异常构造失败应答，只携带异常自带的简短 ``message``。"""
        code = next((c for exc_type, c in _ERROR_CODES if isinstance(exc, exc_type)), 400)
        return cls(code=code, data=None, msg=exc.message)
