"""
postroom.services.chat_service
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

AI 对话业务服务层 —— 串联对话仓库与 OpenRouter Provider。

持久化约定（流式与非流式一致）:
  1. 先确认对话存在且属于当前用户，否则 ``ConversationNotFound``，不做任何写入
  2. 立即保存用户消息
  3. 取最近 ``context_limit`` 条消息（含刚保存的这条），按时间正序作为上下文
  4. 调用模型；成功后保存助手回复（附带模型与用量）并刷新对话 ``updated_at``
  5. 模型调用失败时不保存任何助手消息
"""
from __future__ import annotations

import math
from collections.abc import AsyncGenerator
from typing import Protocol

from postroom.core.exceptions import ConversationNotFound, ProviderError
from postroom.core.logging import get_logger
from postroom.core.settings import settings
from postroom.llm.openrouter_provider import ChatTurn, CompletionResult, TokenUsage
from postroom.schemas.chat import (
    ConversationData,
    ConversationDetailData,
    ConversationListData,
    MessageData,
    MessageRole,
    PageMetadata,
    SendMessageRequest,
)

logger = get_logger(__name__)


class ConversationStore(Protocol):
    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationData: ...

    async def find_conversation(self, conversation_id: str, user_id: str) -> ConversationData | None: ...

    async def list_conversations(self, user_id: str, skip: int = 0, limit: int = 10) -> list[ConversationData]: ...

    async def count_conversations(self, user_id: str) -> int: ...

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool: ...

    async def save_message(
        self, conversation_id: str, user_id: str, role: MessageRole, content: str,
        model: str | None = None, usage: TokenUsage | None = None,
    ) -> MessageData: ...

    async def save_assistant_reply(
        self, conversation_id: str, user_id: str, content: str,
        model: str | None = None, usage: TokenUsage | None = None,
    ) -> MessageData: ...

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> list[MessageData]: ...

    async def get_messages(self, conversation_id: str) -> list[MessageData]: ...


class ChatProvider(Protocol):
    default_model: str

    async def complete(
        self, messages: list[ChatTurn], model: str | None = None,
        temperature: float | None = None, max_tokens: int | None = None,
    ) -> CompletionResult: ...

    def stream(
        self, messages: list[ChatTurn], model: str | None = None,
        temperature: float | None = None, max_tokens: int | None = None,
    ) -> AsyncGenerator[str, None]: ...


class ChatService:
    """AI 对话服务。

    Attributes:
        repo: 对话与消息仓库。
        provider: Chat Completion 上游。
        context_limit: 作为上下文的最近消息条数。
    """

    def __init__(
        self,
        repo: ConversationStore,
        provider: ChatProvider,
        context_limit: int | None = None,
    ) -> None:
        self.repo = repo
        self.provider = provider
        self.context_limit: int = context_limit or settings.CHAT_CONTEXT_LIMIT

    # ── 对话管理 ──────────────────────────────────────────────────────

    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationData:
        conversation = await self.repo.create_conversation(user_id, title)
        logger.info("新建对话 | user=%s | conversation=%s", user_id, conversation.id)
        return conversation

    async def list_conversations(self, user_id: str, offset: int = 0, limit: int = 10) -> ConversationListData:
        """分页列出用户的对话，最近更新的在前。"""
        conversations = await self.repo.list_conversations(user_id, skip=offset, limit=limit)
        total = await self.repo.count_conversations(user_id)
        return ConversationListData(
            conversations=conversations,
            metadata=PageMetadata(
                total_items=total,
                offset=offset,
                limit=limit,
                total_pages=math.ceil(total / limit) if limit else 0,
            ),
        )

    async def get_conversation(self, conversation_id: str, user_id: str) -> ConversationDetailData:
        conversation = await self._require_conversation(conversation_id, user_id)
        messages = await self.repo.get_messages(conversation_id)
        return ConversationDetailData(**conversation.model_dump(), messages=messages)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        if not await self.repo.delete_conversation(conversation_id, user_id):
            raise ConversationNotFound()
        logger.info("对话已删除 | user=%s | conversation=%s", user_id, conversation_id)

    # ── 消息 ──────────────────────────────────────────────────────────

    async def send_message(
        self, conversation_id: str, user_id: str, request: SendMessageRequest,
    ) -> MessageData:
        """非流式发送：阻塞等待模型完整回复并返回保存后的助手消息。

        Raises:
            ConversationNotFound: 对话不存在或不属于该用户。
            ProviderError: 上游调用失败，此时只有用户消息被保存。
        """
        context = await self._prepare_turn(conversation_id, user_id, request.content)
        try:
            result = await self.provider.complete(
                context, model=request.model, temperature=request.temperature,
            )
        except ProviderError as e:
            logger.error("获取 AI 回复失败 | conversation=%s: %s", conversation_id, e.message)
            raise ProviderError("Failed to get AI response") from e

        return await self.repo.save_assistant_reply(
            conversation_id, user_id, result.content, model=result.model, usage=result.usage,
        )

    async def open_stream(
        self, conversation_id: str, user_id: str, request: SendMessageRequest,
    ) -> AsyncGenerator[str, None]:
        """流式发送的准备阶段：校验对话、保存用户消息、组装上下文。

        所有校验都在返回之前完成，调用方可以在开始推送任何字节前
        把 ``ConversationNotFound`` 转成 404。

        Returns:
            逐个产出文本片段的异步生成器；上游正常结束时才保存助手回复。
        """
        context = await self._prepare_turn(conversation_id, user_id, request.content)
        model = request.model or self.provider.default_model

        async def _chunks() -> AsyncGenerator[str, None]:
            full_reply = ""
            async for chunk in self.provider.stream(
                context, model=model, temperature=request.temperature,
            ):
                full_reply += chunk
                yield chunk
            await self.repo.save_assistant_reply(conversation_id, user_id, full_reply, model=model)
            logger.info(
                "流式回复已保存 | conversation=%s | model=%s | length=%d",
                conversation_id, model, len(full_reply),
            )

        return _chunks()

    async def _require_conversation(self, conversation_id: str, user_id: str) -> ConversationData:
        conversation = await self.repo.find_conversation(conversation_id, user_id)
        if conversation is None:
            raise ConversationNotFound()
        return conversation

    async def _prepare_turn(self, conversation_id: str, user_id: str, content: str) -> list[ChatTurn]:
        await self._require_conversation(conversation_id, user_id)
        await self.repo.save_message(conversation_id, user_id, "user", content)

        recent = await self.repo.get_recent_messages(conversation_id, limit=self.context_limit)
        return [{"role": m.role, "content": m.content} for m in reversed(recent)]
