"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 MongoDB、OpenRouter 和真实 WebSocket，
使单元测试可在无网络、无数据库的环境下快速运行。
"""
from __future__ import annotations

import asyncio
import itertools
import json
import os
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
TEST_JWT_SECRET: str = "test-jwt-secret"

os.environ.setdefault("OPENROUTER_API_KEY", "test-fake-key")
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)

from starlette.websockets import WebSocketState  # noqa: E402

from postroom.core.exceptions import ProviderError  # noqa: E402
from postroom.core.security import JwtTokenVerifier  # noqa: E402
from postroom.llm.openrouter_provider import ChatTurn, CompletionResult, TokenUsage  # noqa: E402
from postroom.realtime.authenticator import ConnectionAuthenticator  # noqa: E402
from postroom.realtime.broadcaster import RoomBroadcaster  # noqa: E402
from postroom.realtime.gateway import RoomGateway  # noqa: E402
from postroom.realtime.room_registry import RoomRegistry  # noqa: E402
from postroom.schemas.chat import ConversationData, MessageData  # noqa: E402
from postroom.schemas.comments import CommentData  # noqa: E402

_BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ── WebSocket 传输 ────────────────────────────────────────────────────

_DISCONNECT = object()


class FakeWebSocket:
    """基于 asyncio.Queue 的假 WebSocket。

    测试通过 ``push()`` 模拟客户端发来的帧，通过 ``frames()`` 查看服务端发出的帧。
    """

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self.headers = headers or {}
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    async def accept(self) -> None:
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text: str) -> None:
        if self.application_state == WebSocketState.DISCONNECTED:
            raise RuntimeError("WebSocket is not connected")
        self.sent.append(json.loads(text))

    async def receive(self) -> dict[str, Any]:
        item = await self._incoming.get()
        if item is _DISCONNECT:
            self.application_state = WebSocketState.DISCONNECTED
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(item, bytes):
            return {"type": "websocket.receive", "bytes": item}
        return {"type": "websocket.receive", "text": item}

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED
        self._incoming.put_nowait(_DISCONNECT)

    # ── 测试辅助 ──

    def push(self, event: str, data: Any = None, ack: int | None = None) -> None:
        self._incoming.put_nowait(json.dumps({"event": event, "data": data, "ack": ack}))

    def push_raw(self, text: str) -> None:
        self._incoming.put_nowait(text)

    def push_bytes(self, data: bytes) -> None:
        self._incoming.put_nowait(data)

    def disconnect(self) -> None:
        """模拟客户端断开。"""
        self._incoming.put_nowait(_DISCONNECT)

    def frames(self, event: str | None = None) -> list[dict[str, Any]]:
        return [f for f in self.sent if event is None or f["event"] == event]

    async def wait_for(self, event: str, count: int = 1, timeout: float = 1.0) -> list[dict[str, Any]]:
        """等待直到收到至少 ``count`` 个 ``event`` 帧。"""
        async def _poll() -> None:
            while len(self.frames(event)) < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout)
        return self.frames(event)


# ── 评论存储 ──────────────────────────────────────────────────────────

class InMemoryCommentStore:
    """``CommentRepository`` 的内存实现。"""

    def __init__(self) -> None:
        self.comments: list[CommentData] = []
        self._seq = itertools.count(1)
        self.fail_on_create = False

    async def create_comment(
        self, post_id: str, user_id: str, body: str,
        parent_comment_id: str | None = None, author_name: str | None = None,
    ) -> CommentData:
        if self.fail_on_create:
            raise RuntimeError("database unavailable")
        seq = next(self._seq)
        comment = CommentData(
            id=str(seq),
            post_id=post_id,
            created_by=user_id,
            author_name=author_name,
            body=body,
            parent_comment_id=parent_comment_id,
            created_at=_BASE_TIME + timedelta(seconds=seq),
        )
        self.comments.append(comment)
        return comment

    async def find_comment(self, comment_id: str, post_id: str) -> CommentData | None:
        for comment in self.comments:
            if comment.id == comment_id and comment.post_id == post_id:
                return comment
        return None

    async def list_top_level(self, post_id: str) -> list[CommentData]:
        top = [c for c in self.comments if c.post_id == post_id and c.parent_comment_id is None]
        return sorted(top, key=lambda c: (c.created_at, int(c.id)))


# ── 对话存储 ──────────────────────────────────────────────────────────

class InMemoryChatStore:
    """``ChatRepository`` 的内存实现。"""

    def __init__(self) -> None:
        self.conversations: dict[str, dict[str, Any]] = {}
        self.messages: list[dict[str, Any]] = []
        self._seq = itertools.count(1)

    def _now(self) -> datetime:
        return _BASE_TIME + timedelta(seconds=next(self._seq))

    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationData:
        now = self._now()
        conversation_id = f"c{len(self.conversations) + 1}"
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "user_id": user_id,
            "title": title or "New Conversation",
            "created_at": now,
            "updated_at": now,
        }
        return self._conversation(conversation_id)

    def _conversation(self, conversation_id: str) -> ConversationData:
        doc = self.conversations[conversation_id]
        return ConversationData(**{k: v for k, v in doc.items() if k != "user_id"})

    async def find_conversation(self, conversation_id: str, user_id: str) -> ConversationData | None:
        doc = self.conversations.get(conversation_id)
        if doc is None or doc["user_id"] != user_id:
            return None
        return self._conversation(conversation_id)

    async def list_conversations(self, user_id: str, skip: int = 0, limit: int = 10) -> list[ConversationData]:
        owned = [d for d in self.conversations.values() if d["user_id"] == user_id]
        owned.sort(key=lambda d: d["updated_at"], reverse=True)
        return [self._conversation(d["id"]) for d in owned[skip:skip + limit]]

    async def count_conversations(self, user_id: str) -> int:
        return sum(1 for d in self.conversations.values() if d["user_id"] == user_id)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        if await self.find_conversation(conversation_id, user_id) is None:
            return False
        del self.conversations[conversation_id]
        self.messages = [m for m in self.messages if m["conversation_id"] != conversation_id]
        return True

    async def save_message(
        self, conversation_id: str, user_id: str, role: str, content: str,
        model: str | None = None, usage: TokenUsage | None = None,
    ) -> MessageData:
        doc = {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "id": f"m{len(self.messages) + 1}",
            "role": role,
            "content": content,
            "model": model,
            "prompt_tokens": usage.prompt_tokens if usage else None,
            "completion_tokens": usage.completion_tokens if usage else None,
            "total_tokens": usage.total_tokens if usage else None,
            "created_at": self._now(),
        }
        self.messages.append(doc)
        return self._message(doc)

    async def save_assistant_reply(
        self, conversation_id: str, user_id: str, content: str,
        model: str | None = None, usage: TokenUsage | None = None,
    ) -> MessageData:
        message = await self.save_message(conversation_id, user_id, "assistant", content, model, usage)
        self.conversations[conversation_id]["updated_at"] = message.created_at
        return message

    @staticmethod
    def _message(doc: dict[str, Any]) -> MessageData:
        return MessageData(**{k: v for k, v in doc.items() if k not in ("conversation_id", "user_id")})

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> list[MessageData]:
        docs = [m for m in self.messages if m["conversation_id"] == conversation_id]
        return [self._message(d) for d in reversed(docs)][:limit]

    async def get_messages(self, conversation_id: str) -> list[MessageData]:
        return [self._message(m) for m in self.messages if m["conversation_id"] == conversation_id]

    def roles(self, conversation_id: str) -> list[str]:
        return [m["role"] for m in self.messages if m["conversation_id"] == conversation_id]


# ── 模型上游 ──────────────────────────────────────────────────────────

class ScriptedProvider:
    """按脚本回复的假 Provider。

    ``fail_after`` 为已输出的片段数，达到后流式调用抛出 ``ProviderError``。
    """

    def __init__(
        self,
        chunks: tuple[str, ...] = ("Hel", "lo"),
        fail_after: int | None = None,
        reply: str = "Hello",
        fail_complete: bool = False,
        default_model: str = "test/model",
    ) -> None:
        self.chunks = chunks
        self.fail_after = fail_after
        self.reply = reply
        self.fail_complete = fail_complete
        self.default_model = default_model
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self, messages: list[ChatTurn], model: str | None = None,
        temperature: float | None = None, max_tokens: int | None = None,
    ) -> CompletionResult:
        self.calls.append({"messages": list(messages), "model": model, "temperature": temperature})
        if self.fail_complete:
            raise ProviderError()
        return CompletionResult(
            content=self.reply,
            model=model or self.default_model,
            usage=TokenUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5),
        )

    async def stream(
        self, messages: list[ChatTurn], model: str | None = None,
        temperature: float | None = None, max_tokens: int | None = None,
    ) -> AsyncGenerator[str, None]:
        self.calls.append({"messages": list(messages), "model": model, "temperature": temperature})
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise ProviderError("Streaming failed")
            yield chunk


# ── Fixtures ──────────────────────────────────────────────────────────

def _make_token(
    user_id: Any = "user-a",
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
    username: str | None = None,
) -> str:
    payload = {
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if username is not None:
        payload["username"] = username
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture()
def make_token() -> Callable[..., str]:
    """返回签发测试令牌的函数，``expires_in`` 为负数即已过期。"""
    return _make_token


@pytest.fixture()
def verifier() -> JwtTokenVerifier:
    return JwtTokenVerifier(secret=TEST_JWT_SECRET, algorithm="HS256")


@pytest.fixture()
def comment_store() -> InMemoryCommentStore:
    return InMemoryCommentStore()


@pytest.fixture()
def chat_store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture()
def gateway(verifier: JwtTokenVerifier, comment_store: InMemoryCommentStore) -> RoomGateway:
    return RoomGateway(
        registry=RoomRegistry(),
        authenticator=ConnectionAuthenticator(verifier, timeout=1.0),
        comments=comment_store,
        broadcaster=RoomBroadcaster(),
        error_close_delay=0.01,
    )
