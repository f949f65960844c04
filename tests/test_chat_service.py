"""
tests.test_chat_service
~~~~~~~~~~~~~~~~~~~~~~~

ChatService 业务服务层单元测试：上下文组装与持久化约定。
"""
from __future__ import annotations

import pytest

from conftest import ScriptedProvider
from postroom.core.exceptions import ConversationNotFound, ProviderError
from postroom.schemas.chat import SendMessageRequest
from postroom.services.chat_service import ChatService


async def _drain(chunks) -> list[str]:
    return [chunk async for chunk in chunks]


# ── 对话管理 ──────────────────────────────────────────────────────────

class TestConversations:
    """测试对话的增删查。"""

    @pytest.mark.asyncio
    async def test_create_uses_default_title(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider())
        conversation = await service.create_conversation("u1")
        assert conversation.title == "New Conversation"

    @pytest.mark.asyncio
    async def test_list_pagination_metadata(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider())
        for i in range(3):
            await service.create_conversation("u1", f"t{i}")
        await service.create_conversation("u2", "other")

        page = await service.list_conversations("u1", offset=0, limit=2)

        assert [c.title for c in page.conversations] == ["t2", "t1"]
        assert page.metadata.total_items == 3
        assert page.metadata.total_pages == 2
        assert page.metadata.offset == 0
        assert page.metadata.limit == 2

    @pytest.mark.asyncio
    async def test_get_conversation_of_another_user(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider())
        conversation = await service.create_conversation("u1")

        with pytest.raises(ConversationNotFound):
            await service.get_conversation(conversation.id, "u2")

    @pytest.mark.asyncio
    async def test_delete_removes_messages(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider())
        conversation = await service.create_conversation("u1")
        await service.send_message(conversation.id, "u1", SendMessageRequest(content="hi"))

        await service.delete_conversation(conversation.id, "u1")

        assert chat_store.messages == []
        with pytest.raises(ConversationNotFound):
            await service.delete_conversation(conversation.id, "u1")


# ── 非流式发送 ────────────────────────────────────────────────────────

class TestSendMessage:
    """测试 send_message 的持久化约定。"""

    @pytest.mark.asyncio
    async def test_persists_both_turns(self, chat_store) -> None:
        provider = ScriptedProvider(reply="Hi there")
        service = ChatService(chat_store, provider)
        conversation = await service.create_conversation("u1")

        message = await service.send_message(conversation.id, "u1", SendMessageRequest(content="hello"))

        assert message.role == "assistant"
        assert message.content == "Hi there"
        assert message.model == "test/model"
        assert message.total_tokens == 5
        assert chat_store.roles(conversation.id) == ["user", "assistant"]
        assert provider.calls[0]["messages"] == [{"role": "user", "content": "hello"}]

        detail = await service.get_conversation(conversation.id, "u1")
        assert detail.updated_at == message.created_at
        assert [m.content for m in detail.messages] == ["hello", "Hi there"]

    @pytest.mark.asyncio
    async def test_context_is_recent_messages_oldest_first(self, chat_store) -> None:
        provider = ScriptedProvider()
        service = ChatService(chat_store, provider, context_limit=10)
        conversation = await service.create_conversation("u1")
        for i in range(12):
            await chat_store.save_message(conversation.id, "u1", "user", f"m{i}")

        await service.send_message(conversation.id, "u1", SendMessageRequest(content="latest"))

        context = provider.calls[0]["messages"]
        assert len(context) == 10
        assert context[0]["content"] == "m3"
        assert context[-1]["content"] == "latest"

    @pytest.mark.asyncio
    async def test_missing_conversation_writes_nothing(self, chat_store) -> None:
        provider = ScriptedProvider()
        service = ChatService(chat_store, provider)

        with pytest.raises(ConversationNotFound):
            await service.send_message("nope", "u1", SendMessageRequest(content="hello"))

        assert chat_store.messages == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_only_user_turn(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider(fail_complete=True))
        conversation = await service.create_conversation("u1")

        with pytest.raises(ProviderError, match="Failed to get AI response"):
            await service.send_message(conversation.id, "u1", SendMessageRequest(content="hello"))

        assert chat_store.roles(conversation.id) == ["user"]

    @pytest.mark.asyncio
    async def test_model_and_temperature_are_forwarded(self, chat_store) -> None:
        provider = ScriptedProvider()
        service = ChatService(chat_store, provider)
        conversation = await service.create_conversation("u1")

        request = SendMessageRequest(content="hello", model="other/model", temperature=0)
        message = await service.send_message(conversation.id, "u1", request)

        assert provider.calls[0]["model"] == "other/model"
        assert provider.calls[0]["temperature"] == 0
        assert message.model == "other/model"


# ── 流式发送 ──────────────────────────────────────────────────────────

class TestOpenStream:
    """测试 open_stream 的持久化约定。"""

    @pytest.mark.asyncio
    async def test_completed_stream_persists_concatenation(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider(chunks=("Hel", "lo")))
        conversation = await service.create_conversation("u1")

        chunks = await service.open_stream(conversation.id, "u1", SendMessageRequest(content="hi"))
        # 用户消息在开始推流前就已保存
        assert chat_store.roles(conversation.id) == ["user"]

        assert await _drain(chunks) == ["Hel", "lo"]
        reply = chat_store.messages[-1]
        assert reply["role"] == "assistant"
        assert reply["content"] == "Hello"
        assert reply["model"] == "test/model"

    @pytest.mark.asyncio
    async def test_missing_conversation_fails_before_streaming(self, chat_store) -> None:
        provider = ScriptedProvider()
        service = ChatService(chat_store, provider)

        with pytest.raises(ConversationNotFound):
            await service.open_stream("nope", "u1", SendMessageRequest(content="hi"))

        assert chat_store.messages == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_failed_stream_persists_no_assistant_turn(self, chat_store) -> None:
        service = ChatService(chat_store, ScriptedProvider(chunks=("Hel", "lo"), fail_after=1))
        conversation = await service.create_conversation("u1")

        chunks = await service.open_stream(conversation.id, "u1", SendMessageRequest(content="hi"))
        received = []
        with pytest.raises(ProviderError):
            async for chunk in chunks:
                received.append(chunk)

        assert received == ["Hel"]
        assert chat_store.roles(conversation.id) == ["user"]
