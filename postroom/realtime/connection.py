"""
postroom.realtime.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

单个客户端的实时连接句柄 —— 包装 FastAPI ``WebSocket``，提供
具名事件发送、一次性关闭钩子和幂等关闭。

生命周期::

    PENDING  ──鉴权成功并加入房间──▶  JOINED
       │                               │
       └──────鉴权失败 / 传输关闭──────▶ CLOSED（终态）
"""
from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from postroom.core.logging import get_logger

logger = get_logger(__name__)

CloseListener = Callable[[], Awaitable[None]]


class ConnectionState(str, Enum):
    PENDING = "pending"
    JOINED = "joined"
    CLOSED = "closed"


class Connection:
    """一个客户端的 WebSocket 连接。

    Attributes:
        id: 连接唯一标识（不透明字符串）。
        websocket: 底层传输。
        user_id: 鉴权后的用户 ID，鉴权前为 ``None``。
        username: 令牌中的用户名（可能为空），随评论一起保存。
        room_id: 加入的房间 ID，加入前为 ``None``。
        state: 当前生命周期状态。
    """

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.id: str = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.user_id: str | None = None
        self.username: str | None = None
        self.room_id: str | None = None
        self.state: ConnectionState = ConnectionState.PENDING
        self._close_listeners: list[CloseListener] = []
        # 广播与本连接的回执可能来自不同协程，发送需串行
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Connection {self.id} user={self.user_id} room={self.room_id} {self.state.value}>"

    @property
    def connected(self) -> bool:
        """连接是否仍然存活。"""
        return self.state is not ConnectionState.CLOSED

    async def accept(self) -> None:
        await self.websocket.accept()

    async def receive(self) -> str | bytes:
        """读取下一帧（文本或二进制），不在这里解析内容。

        Raises:
            WebSocketDisconnect: 对端断开。
        """
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(code=message.get("code", 1000), reason=message.get("reason"))
        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""

    async def emit(self, event: str, data: Any = None, **extra: Any) -> bool:
        """向客户端发送一个具名事件 ``{"event": ..., "data": ..., **extra}``。

        Returns:
            连接已关闭时返回 ``False``，不发送。
        """
        if not self.connected:
            return False
        frame = {"event": event, **extra, "data": data}
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(frame, ensure_ascii=False))
        return True

    # ── 关闭钩子 ──────────────────────────────────────────────────────

    def once_close(self, listener: CloseListener) -> None:
        """注册一次性关闭钩子：连接关闭时最多执行一次。"""
        if not self.connected:
            logger.debug("连接已关闭，忽略关闭钩子注册 | conn=%s", self.id)
            return
        self._close_listeners.append(listener)

    def remove_all_listeners(self) -> None:
        """摘除全部关闭钩子。"""
        self._close_listeners.clear()

    async def _fire_close_listeners(self) -> None:
        # 先整体取出再执行，保证每个钩子只执行一次
        listeners, self._close_listeners = self._close_listeners, []
        for listener in listeners:
            try:
                await listener()
            except Exception as e:
                logger.error("关闭钩子执行失败 | conn=%s: %s", self.id, e, exc_info=True)

    # ── 关闭 ──────────────────────────────────────────────────────────

    async def close(self, code: int = 1000) -> None:
        """服务端主动关闭连接（幂等）。"""
        if not self.connected:
            return
        self.state = ConnectionState.CLOSED
        try:
            if self.websocket.application_state != WebSocketState.DISCONNECTED:
                await self.websocket.close(code=code)
        except Exception as e:
            # 对端可能已经断开，关闭失败不影响后续清理
            logger.debug("关闭传输失败 | conn=%s: %s", self.id, e)
        await self._fire_close_listeners()

    async def mark_closed(self) -> None:
        """传输已由对端关闭：只更新状态并触发关闭钩子（幂等）。"""
        if self.connected:
            self.state = ConnectionState.CLOSED
        await self._fire_close_listeners()
