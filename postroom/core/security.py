"""
postroom.core.security
~~~~~~~~~~~~~~~~~~~~~~

JWT 令牌校验 —— WebSocket 握手与 HTTP 接口共用。

本服务只负责校验令牌，不负责签发。令牌载荷中的 ``user_id``
（缺失时回退到 ``sub``）即为用户的稳定标识。
"""
from __future__ import annotations

from typing import Any

import jwt
from pydantic import BaseModel, Field, model_validator

from postroom.core.exceptions import InvalidCredentials
from postroom.core.logging import get_logger
from postroom.core.settings import settings

logger = get_logger(__name__)


class TokenIdentity(BaseModel):
    """校验通过后的用户身份。"""

    user_id: str | None = Field(default=None, description="用户唯一标识")
    username: str | None = Field(default=None, description="用户名")
    email: str | None = Field(default=None, description="邮箱")

    @model_validator(mode="before")
    @classmethod
    def _normalize_user_id(cls, data: Any) -> Any:
        # 签发方可能把 id 放在 user_id 或 sub 中，且可能是整数
        if isinstance(data, dict):
            data = dict(data)
            raw = data.get("user_id") or data.get("sub")
            data["user_id"] = str(raw) if raw not in (None, "") else None
        return data


class JwtTokenVerifier:
    """基于共享密钥的 JWT 校验器。

    Attributes:
        secret: 签名密钥。
        algorithms: 允许的签名算法列表。
    """

    def __init__(self, secret: str | None = None, algorithm: str | None = None) -> None:
        self.secret: str = secret or settings.JWT_SECRET
        self.algorithms: list[str] = [algorithm or settings.JWT_ALGORITHM]

    async def verify(self, token: str) -> TokenIdentity:
        """校验令牌并返回身份。

        Raises:
            InvalidCredentials: 令牌过期或无效。
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError as e:
            raise InvalidCredentials("Authorization token expired") from e
        except jwt.PyJWTError as e:
            logger.debug("JWT 校验失败: %s", e)
            raise InvalidCredentials("Invalid authentication") from e
        return TokenIdentity.model_validate(payload)


def extract_bearer_token(authorization: str | None) -> str | None:
    """从 ``Authorization: Bearer <token>`` 头中取出令牌。"""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token.strip():
        return None
    return token.strip()
