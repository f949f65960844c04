"""
postroom.api.deps
~~~~~~~~~~~~~~~~~

FastAPI 依赖：从 ``app.state`` 取出在生命周期中构建的服务对象，
并完成 HTTP 接口的 Bearer 鉴权。
"""
from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from postroom.core.exceptions import ConnectionRejected
from postroom.core.security import JwtTokenVerifier
from postroom.realtime.gateway import RoomGateway
from postroom.realtime.room_registry import RoomRegistry
from postroom.services.chat_service import ChatService

_bearer = HTTPBearer(auto_error=False)


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_room_registry(request: Request) -> RoomRegistry:
    return request.app.state.room_registry


def get_gateway(request: Request) -> RoomGateway:
    return request.app.state.gateway


def get_token_verifier(request: Request) -> JwtTokenVerifier:
    return request.app.state.token_verifier


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    verifier: JwtTokenVerifier = Depends(get_token_verifier),
) -> str:
    """校验 ``Authorization: Bearer`` 令牌并返回用户 ID，失败时响应 401。"""
    if credentials is None or not credentials.credentials:
        raise ConnectionRejected("Missing authorization token")
    identity = await verifier.verify(credentials.credentials)
    if not identity.user_id:
        raise ConnectionRejected("Invalid authentication")
    return identity.user_id
