"""
postroom.core.exceptions
~~~~~~~~~~~~~~~~~~~~~~~~

业务异常层级。

每个异常都携带一条可以直接展示给客户端的简短 ``message``，
内部细节（堆栈、上游原始报错）只写日志，不外泄。

- ``ConnectionRejected``  → 建立 WebSocket 连接失败，发送错误帧后关闭连接
- ``EventRejected``       → 单个事件处理失败，连接保持
- ``NotFoundError``       → 资源不存在（HTTP 404）
- ``ProviderError``       → 上游大模型调用失败（HTTP 502），本层不重试
"""
from __future__ import annotations


class PostroomError(Exception):
    """所有业务异常的基类。"""

    default_message: str = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message: str = message or self.default_message
        super().__init__(self.message)


# ── 连接建立阶段 ──────────────────────────────────────────────────────

class ConnectionRejected(PostroomError):
    """连接参数缺失或鉴权失败。"""

    default_message = "Connection error"


class InvalidCredentials(ConnectionRejected):
    """令牌无效、过期或缺少用户身份。"""

    default_message = "Invalid authentication"


class AuthenticationTimeout(ConnectionRejected):
    """令牌校验未在限定时间内完成。"""

    default_message = "Authentication timeout"


# ── 事件处理阶段 ──────────────────────────────────────────────────────

class EventRejected(PostroomError):
    """单个客户端事件被拒绝，连接不受影响。"""

    default_message = "Error handling event"


class Unauthorized(EventRejected):
    """发送方不是该房间的在线成员。"""

    default_message = "Unauthorized"


# ── 资源 / 上游 ───────────────────────────────────────────────────────

class NotFoundError(PostroomError):
    default_message = "Not found"


class ConversationNotFound(NotFoundError):
    default_message = "Conversation not found"


class ProviderError(PostroomError):
    """Chat Completion 上游调用失败（网络、解析或空响应）。"""

    default_message = "Failed to get response from chat completion endpoint"
