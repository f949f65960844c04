"""
postroom.api.comments_ws
~~~~~~~~~~~~~~~~~~~~~~~~

帖子评论 WebSocket 接口。

提供 ``/ws/posts`` 端点：客户端通过查询参数 ``room_id``（帖子 ID）加入评论房间，
令牌放在查询参数 ``token`` 中，或放在 ``Authorization: Bearer`` 头中。
连接的完整生命周期由 ``RoomGateway`` 负责。
"""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

from postroom.core.security import extract_bearer_token
from postroom.realtime.gateway import RoomGateway

router: APIRouter = APIRouter()


@router.websocket("/ws/posts")
async def post_comments_endpoint(
    websocket: WebSocket,
    room_id: str | None = None,
    token: str | None = None,
) -> None:
    """帖子评论实时端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        room_id: 帖子 ID，即评论房间 ID。
        token: JWT，缺省时从 ``Authorization`` 头读取。
    """
    gateway: RoomGateway = websocket.app.state.gateway
    token = token or extract_bearer_token(websocket.headers.get("authorization"))
    await gateway.serve(websocket, room_id, token)
