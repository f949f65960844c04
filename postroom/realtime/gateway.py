"""
postroom.realtime.gateway
~~~~~~~~~~~~~~~~~~~~~~~~~

帖子评论实时网关 —— 单条连接的完整生命周期与事件处理。

连接流程:
  1. 握手携带 ``room_id``（帖子 ID）和 ``token``
  2. ``ConnectionAuthenticator`` 限时鉴权；失败则发送 ``error`` 帧，稍候关闭连接
  3. 成功后依次：登记到 ``RoomRegistry`` → 加入房间广播组 → 仅向本连接推送现有顶层评论
  4. 按到达顺序逐条处理客户端事件，直到传输关闭

客户端事件（仅 JOINED 状态、且发送方是房间在线成员时受理）:
  - ``sendComment``    → 保存评论，重新加载完整列表并广播 ``newComment``，回执 ``{status, data}``
  - ``typing``         → 向同房间其他成员转发 ``userTyping``，不持久化
  - ``markAsRead``     → 不写库，触发与发表评论相同的全房间刷新，回执 ``{status}``
  - ``getAllComments`` → 仅向本连接推送 ``newComment``

刷新一律重新加载并广播完整列表而不是增量，所有成员始终收敛到同一份权威列表。
单个事件的任何异常都只转换为发给本连接的 ``exception`` 帧，不影响其他连接。
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from postroom.core.exceptions import ConnectionRejected, EventRejected, Unauthorized
from postroom.core.logging import get_logger, request_id_ctx_var
from postroom.core.rate_limit import WebSocketRateLimiter
from postroom.realtime.authenticator import ConnectionAuthenticator
from postroom.realtime.broadcaster import RoomBroadcaster
from postroom.realtime.connection import Connection, ConnectionState
from postroom.realtime.room_registry import RoomRegistry
from postroom.schemas.comments import (
    ClientEvent,
    CommentData,
    ErrorData,
    MarkAsReadPayload,
    SendCommentPayload,
    TypingPayload,
)

logger = get_logger(__name__)

# 策略违规（鉴权失败）时使用的关闭码
CLOSE_POLICY_VIOLATION: int = 1008

EventHandler = Callable[[Connection, Any], Awaitable[Any]]


class CommentStore(Protocol):
    async def create_comment(
        self, post_id: str, user_id: str, body: str,
        parent_comment_id: str | None = None, author_name: str | None = None,
    ) -> CommentData: ...

    async def find_comment(self, comment_id: str, post_id: str) -> CommentData | None: ...

    async def list_top_level(self, post_id: str) -> list[CommentData]: ...


class RoomGateway:
    """评论房间网关。

    Attributes:
        registry: 房间在线表。
        authenticator: 连接鉴权器。
        comments: 评论存储。
        broadcaster: 房间广播组。
        error_close_delay: 发送错误帧后延迟关闭的秒数，留给错误帧发送完成。
        comment_limiter: 可选的发表评论限流器。
    """

    def __init__(
        self,
        registry: RoomRegistry,
        authenticator: ConnectionAuthenticator,
        comments: CommentStore,
        broadcaster: RoomBroadcaster | None = None,
        error_close_delay: float = 0.1,
        comment_limiter: WebSocketRateLimiter | None = None,
    ) -> None:
        self.registry = registry
        self.authenticator = authenticator
        self.comments = comments
        self.broadcaster = broadcaster or RoomBroadcaster()
        self.error_close_delay = error_close_delay
        self.comment_limiter = comment_limiter
        self._handlers: dict[str, tuple[EventHandler, str]] = {
            "sendComment": (self.handle_send_comment, "Error sending comment"),
            "typing": (self.handle_typing, "Error handling typing event"),
            "markAsRead": (self.handle_mark_as_read, "Error marking comment as read"),
            "getAllComments": (self.handle_get_all_comments, "Error fetching comments"),
        }

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def serve(self, websocket: WebSocket, room_id: str | None, token: str | None) -> None:
        """驱动一条 WebSocket 连接直到结束。"""
        connection = Connection(websocket)
        ctx_token = request_id_ctx_var.set(f"ws-{uuid.uuid4().hex[:8]}")
        try:
            await connection.accept()
            logger.info("客户端已连接 | conn=%s", connection.id)
            if await self.handle_connection(connection, room_id, token):
                await self._receive_loop(connection)
        finally:
            await self.handle_disconnect(connection)
            request_id_ctx_var.reset(ctx_token)

    async def handle_connection(
        self, connection: Connection, room_id: str | None, token: str | None,
    ) -> bool:
        """PENDING → JOINED：鉴权、登记、加入广播组、推送现有评论。

        Returns:
            是否成功进入房间。失败时已发送错误帧并关闭连接。
        """
        started = time.monotonic()
        try:
            identity = await self.authenticator.authenticate(token, room_id)
            user_id = identity.user_id

            if not await self.registry.join(user_id, room_id, connection):
                raise ConnectionRejected("Connection closed during join")
            connection.user_id = user_id
            connection.username = identity.username
            connection.room_id = room_id
            connection.state = ConnectionState.JOINED
            self.broadcaster.add(room_id, connection)

            comments = await self._load_comments(room_id)
            await connection.emit("newComment", comments)

            logger.info(
                "连接已加入房间 | conn=%s | user=%s | room=%s | 耗时 %dms",
                connection.id, user_id, room_id, (time.monotonic() - started) * 1000,
            )
            return True
        except ConnectionRejected as e:
            logger.warning("连接被拒绝 | conn=%s | room=%s: %s", connection.id, room_id, e.message)
            await self._reject(connection, e.message)
        except Exception as e:
            logger.error(
                "建立连接出错 | conn=%s | room=%s: %s", connection.id, room_id, e, exc_info=True,
            )
            await self._reject(connection, "Connection error")
        return False

    async def _reject(self, connection: Connection, message: str) -> None:
        """发送连接级错误帧，短暂等待后关闭连接。"""
        try:
            await connection.emit(
                "error", ErrorData(message=message).model_dump(exclude_none=True),
            )
        except Exception as e:
            logger.debug("错误帧发送失败 | conn=%s: %s", connection.id, e)
        await asyncio.sleep(self.error_close_delay)
        await connection.close(code=CLOSE_POLICY_VIOLATION)

    async def handle_disconnect(self, connection: Connection) -> None:
        """JOINED/PENDING → CLOSED：触发登记清理，移出广播组（幂等）。"""
        try:
            if connection.room_id is not None:
                self.broadcaster.discard(connection.room_id, connection)
            if self.comment_limiter is not None:
                self.comment_limiter.remove_client(connection.id)
            await connection.mark_closed()
            connection.remove_all_listeners()
            if connection.user_id and connection.room_id:
                logger.info(
                    "连接已断开 | conn=%s | user=%s | room=%s",
                    connection.id, connection.user_id, connection.room_id,
                )
            else:
                logger.info("匿名连接已断开 | conn=%s", connection.id)
        except Exception as e:
            logger.error("断开连接清理出错 | conn=%s: %s", connection.id, e, exc_info=True)

    async def _receive_loop(self, connection: Connection) -> None:
        # 同一连接的事件串行处理，保持到达顺序
        try:
            while connection.connected:
                raw = await connection.receive()
                await self.dispatch(connection, raw)
        except WebSocketDisconnect as e:
            logger.debug("对端关闭连接 | conn=%s | code=%s", connection.id, e.code)
        except RuntimeError as e:
            # 服务端已主动关闭（例如被同一用户的新连接顶替）后再读会抛 RuntimeError
            if connection.connected:
                raise
            logger.debug("连接已被服务端关闭 | conn=%s: %s", connection.id, e)

    # ── 事件分发 ──────────────────────────────────────────────────────

    async def dispatch(self, connection: Connection, raw: str | bytes) -> None:
        """解析一帧客户端消息并交给对应的事件处理器。

        协议只接受 JSON 文本帧，二进制帧与无法解析的文本一样按非法消息处理。
        """
        if isinstance(raw, bytes):
            logger.info("收到二进制帧，已拒绝 | conn=%s | size=%d", connection.id, len(raw))
            await self._emit_exception(connection, None, None, "Invalid message format")
            return
        try:
            event = ClientEvent.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.info("无法解析的客户端消息 | conn=%s: %s", connection.id, e)
            await self._emit_exception(connection, None, None, "Invalid message format")
            return

        entry = self._handlers.get(event.event)
        if entry is None:
            await self._emit_exception(connection, event.event, event.ack, f"Unknown event: {event.event}")
            return

        handler, fallback_message = entry
        try:
            result = await handler(connection, event.data)
        except EventRejected as e:
            logger.info(
                "事件被拒绝 | event=%s | conn=%s | room=%s: %s",
                event.event, connection.id, connection.room_id, e.message,
            )
            await self._emit_exception(connection, event.event, event.ack, e.message)
            return
        except ValidationError as e:
            logger.info("事件载荷非法 | event=%s | conn=%s: %s", event.event, connection.id, e)
            await self._emit_exception(
                connection, event.event, event.ack, f"Invalid payload for {event.event}",
            )
            return
        except Exception as e:
            logger.error(
                "事件处理出错 | event=%s | conn=%s | user=%s | room=%s: %s",
                event.event, connection.id, connection.user_id, connection.room_id, e,
                exc_info=True,
            )
            await self._emit_exception(connection, event.event, event.ack, fallback_message)
            return

        if result is not None:
            await connection.emit("ack", result, ack=event.ack)

    async def _emit_exception(
        self, connection: Connection, event: str | None, ack: int | str | None, message: str,
    ) -> None:
        try:
            await connection.emit(
                "exception", ErrorData(message=message, event=event).model_dump(), ack=ack,
            )
        except Exception as e:
            logger.debug("异常帧发送失败 | conn=%s: %s", connection.id, e)

    def _require_member(self, connection: Connection) -> tuple[str, str]:
        """返回发送方的 ``(user_id, room_id)``；未登记为房间成员时拒绝。"""
        membership = self.registry.lookup_membership(connection)
        if connection.state is not ConnectionState.JOINED or membership is None:
            raise Unauthorized()
        return membership

    async def _load_comments(self, room_id: str) -> list[dict[str, Any]]:
        comments = await self.comments.list_top_level(room_id)
        return [c.model_dump(mode="json") for c in comments]

    async def _refresh_room(self, room_id: str) -> list[dict[str, Any]]:
        """重新加载完整评论列表并广播给房间全体成员。"""
        comments = await self._load_comments(room_id)
        await self.broadcaster.broadcast(room_id, "newComment", comments)
        return comments

    # ── 事件处理器 ────────────────────────────────────────────────────

    async def handle_send_comment(self, connection: Connection, data: Any) -> dict[str, Any]:
        user_id, room_id = self._require_member(connection)
        payload = SendCommentPayload.model_validate(data or {})

        if self.comment_limiter is not None and not self.comment_limiter.is_allowed(connection.id):
            raise EventRejected("You are sending comments too fast")

        if payload.parent_comment_id is not None:
            parent = await self.comments.find_comment(payload.parent_comment_id, room_id)
            if parent is None:
                raise EventRejected("Parent comment not found")

        await self.comments.create_comment(
            post_id=room_id,
            user_id=user_id,
            body=payload.body,
            parent_comment_id=payload.parent_comment_id,
            author_name=connection.username,
        )
        comments = await self._refresh_room(room_id)
        logger.info("新评论已广播 | user=%s | room=%s | total=%d", user_id, room_id, len(comments))
        return {"status": "success", "data": comments}

    async def handle_typing(self, connection: Connection, data: Any) -> dict[str, Any]:
        user_id, own_room = self._require_member(connection)
        payload = TypingPayload.model_validate(data or {})
        room_id = payload.room_id or own_room

        if self.registry.lookup_connection(user_id, room_id) is not connection:
            raise Unauthorized()

        await self.broadcaster.broadcast(
            room_id,
            "userTyping",
            {"userId": user_id, "isTyping": payload.is_typing},
            exclude=connection,
        )
        return {"status": "success"}

    async def handle_mark_as_read(self, connection: Connection, data: Any) -> dict[str, Any]:
        user_id, room_id = self._require_member(connection)
        payload = MarkAsReadPayload.model_validate(data or {})

        # 已读状态暂不落库，只做全房间刷新
        logger.info("用户标记评论已读 | user=%s | room=%s | comment=%s", user_id, room_id, payload.comment_id)
        await self._refresh_room(room_id)
        return {"status": "success"}

    async def handle_get_all_comments(self, connection: Connection, data: Any) -> None:
        _, room_id = self._require_member(connection)
        logger.debug("拉取全部评论 | conn=%s | room=%s", connection.id, room_id)
        comments = await self._load_comments(room_id)
        await connection.emit("newComment", comments)
