"""
postroom.realtime.authenticator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接鉴权 —— 在限定时间内校验握手令牌，决定连接能否进入房间。

校验顺序:
  1. 缺少房间 ID → ``Missing required connection parameters``
  2. 缺少令牌   → ``Missing authorization token``
  3. 调用令牌校验器，与 ``timeout`` 赛跑；超时即失败，
     仍在进行的校验不再等待（结果被丢弃）
"""
from __future__ import annotations

import asyncio
from typing import Protocol

from postroom.core.exceptions import (
    AuthenticationTimeout,
    ConnectionRejected,
    InvalidCredentials,
)
from postroom.core.logging import get_logger
from postroom.core.security import TokenIdentity

logger = get_logger(__name__)

DEFAULT_AUTH_TIMEOUT: float = 5.0


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> TokenIdentity: ...


def _discard_result(task: asyncio.Future) -> None:
    # 超时后被放弃的校验任务：取走结果，避免 "exception was never retrieved"
    if not task.cancelled() and task.exception() is not None:
        logger.debug("已放弃的令牌校验最终失败: %s", task.exception())


class ConnectionAuthenticator:
    """带超时的连接鉴权器。

    Attributes:
        verifier: 外部令牌校验器。
        timeout: 校验超时时间（秒）。
    """

    def __init__(self, verifier: TokenVerifier, timeout: float = DEFAULT_AUTH_TIMEOUT) -> None:
        self.verifier = verifier
        self.timeout = timeout

    async def authenticate(self, token: str | None, room_id: str | None) -> TokenIdentity:
        """校验握手参数并返回用户身份。

        Args:
            token: Bearer 令牌，可能为空。
            room_id: 目标房间 ID，必须非空。

        Returns:
            至少包含 ``user_id`` 的身份。

        Raises:
            ConnectionRejected: 参数缺失。
            InvalidCredentials: 令牌无效，或校验结果里没有可用的用户 ID。
            AuthenticationTimeout: 校验未在 ``timeout`` 内完成。
        """
        if not room_id:
            raise ConnectionRejected("Missing required connection parameters")
        if not token:
            raise ConnectionRejected("Missing authorization token")

        task = asyncio.ensure_future(self.verifier.verify(token))
        done, _ = await asyncio.wait({task}, timeout=self.timeout)
        if not done:
            task.add_done_callback(_discard_result)
            logger.warning("令牌校验超时 | room=%s | timeout=%.1fs", room_id, self.timeout)
            raise AuthenticationTimeout()

        try:
            identity = task.result()
        except ConnectionRejected:
            raise
        except Exception as e:
            logger.warning("令牌校验异常 | room=%s: %s", room_id, e, exc_info=True)
            raise InvalidCredentials() from e

        if identity is None or not identity.user_id:
            raise InvalidCredentials()
        return identity
