"""
postroom.db.chat_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~

AI 对话持久化仓库 —— 封装 ``chat_conversations`` 与 ``chat_messages`` 两个集合。

每条消息一个文档（扁平设计），避免 16MB 文档限制且便于分页查询。
助手回复的写入与对话 ``updated_at`` 的更新、对话删除与消息清理，
都在同一个事务内完成（``MONGO_USE_TRANSACTIONS`` 关闭时退化为顺序写入）。
"""
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)

from postroom.core.logging import get_logger
from postroom.llm.openrouter_provider import TokenUsage
from postroom.schemas.chat import ConversationData, MessageData, MessageRole

logger = get_logger(__name__)

# 集合名称
_CONVERSATIONS = "chat_conversations"
_MESSAGES = "chat_messages"

DEFAULT_TITLE = "New Conversation"


def _parse_id(value: str) -> ObjectId | None:
    """把字符串 ID 转为 ObjectId，格式非法时返回 ``None``。"""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _to_conversation(doc: dict[str, Any]) -> ConversationData:
    return ConversationData(
        id=str(doc["_id"]),
        title=doc["title"],
        created_at=doc["created_at"],
        updated_at=doc["updated_at"],
    )


def _to_message(doc: dict[str, Any]) -> MessageData:
    return MessageData(
        id=str(doc["_id"]),
        role=doc["role"],
        content=doc["content"],
        model=doc.get("model"),
        prompt_tokens=doc.get("prompt_tokens"),
        completion_tokens=doc.get("completion_tokens"),
        total_tokens=doc.get("total_tokens"),
        created_at=doc["created_at"],
    )


class ChatRepository:
    """对话与消息持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
        client: 用于开启事务会话的客户端。
        use_transactions: 多文档写入是否包在事务中。
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        client: AsyncIOMotorClient | None = None,
        use_transactions: bool = True,
    ) -> None:
        self.db = db
        self.client = client
        self.use_transactions = use_transactions and client is not None
        self._conversations = db[_CONVERSATIONS]
        self._messages = db[_MESSAGES]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._conversations.create_index(
            [("user_id", 1), ("updated_at", -1)],
            name="idx_user_updated",
        )
        # 复合索引：按对话分区 + 按时间排序
        await self._messages.create_index(
            [("conversation_id", 1), ("created_at", 1)],
            name="idx_conversation_time",
        )
        self._indexes_created = True
        logger.debug("chat 集合索引已就绪")

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncIOMotorClientSession | None]:
        """开启事务会话；未启用事务时产出 ``None``，调用方照常顺序写入。"""
        if not self.use_transactions:
            yield None
            return
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # ── 对话 ──────────────────────────────────────────────────────────

    async def create_conversation(self, user_id: str, title: str | None = None) -> ConversationData:
        """新建一个属于 ``user_id`` 的对话。"""
        await self._ensure_indexes()
        now = datetime.now(timezone.utc)
        doc = {
            "user_id": user_id,
            "title": title or DEFAULT_TITLE,
            "created_at": now,
            "updated_at": now,
        }
        result = await self._conversations.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _to_conversation(doc)

    async def find_conversation(self, conversation_id: str, user_id: str) -> ConversationData | None:
        """查找属于指定用户的对话；不存在、不属于该用户或 ID 非法时返回 ``None``。"""
        oid = _parse_id(conversation_id)
        if oid is None:
            return None
        await self._ensure_indexes()
        doc = await self._conversations.find_one({"_id": oid, "user_id": user_id})
        return _to_conversation(doc) if doc else None

    async def list_conversations(
        self,
        user_id: str,
        skip: int = 0,
        limit: int = 10,
    ) -> list[ConversationData]:
        """分页列出用户的对话（最近更新的在前）。"""
        await self._ensure_indexes()
        cursor = (
            self._conversations
            .find({"user_id": user_id})
            .sort([("updated_at", -1), ("_id", -1)])
            .skip(skip)
            .limit(limit)
        )
        return [_to_conversation(doc) async for doc in cursor]

    async def count_conversations(self, user_id: str) -> int:
        """获取用户的对话总数。"""
        await self._ensure_indexes()
        return await self._conversations.count_documents({"user_id": user_id})

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        """删除对话及其全部消息（同一事务）。

        Returns:
            对话存在且属于该用户并已删除时返回 ``True``。
        """
        oid = _parse_id(conversation_id)
        if oid is None:
            return False
        await self._ensure_indexes()
        async with self._transaction() as session:
            result = await self._conversations.delete_one(
                {"_id": oid, "user_id": user_id}, session=session,
            )
            if result.deleted_count == 0:
                return False
            await self._messages.delete_many(
                {"conversation_id": conversation_id}, session=session,
            )
        return True

    # ── 消息 ──────────────────────────────────────────────────────────

    def _message_doc(
        self,
        conversation_id: str,
        user_id: str,
        role: MessageRole,
        content: str,
        model: str | None,
        usage: TokenUsage | None,
    ) -> dict[str, Any]:
        return {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "role": role,
            "content": content,
            "model": model,
            "prompt_tokens": usage.prompt_tokens if usage else None,
            "completion_tokens": usage.completion_tokens if usage else None,
            "total_tokens": usage.total_tokens if usage else None,
            "created_at": datetime.now(timezone.utc),
        }

    async def save_message(
        self,
        conversation_id: str,
        user_id: str,
        role: MessageRole,
        content: str,
        model: str | None = None,
        usage: TokenUsage | None = None,
    ) -> MessageData:
        """保存一条消息。

        Args:
            conversation_id: 对话 ID。
            user_id: 对话所属用户 ID（助手回复同样归属于该用户）。
            role: 消息角色。
            content: 消息文本。
            model: 生成该消息的模型（仅助手消息）。
            usage: token 用量（仅助手消息）。
        """
        await self._ensure_indexes()
        doc = self._message_doc(conversation_id, user_id, role, content, model, usage)
        result = await self._messages.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _to_message(doc)

    async def save_assistant_reply(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        model: str | None = None,
        usage: TokenUsage | None = None,
    ) -> MessageData:
        """保存助手回复，并在同一事务内刷新对话的 ``updated_at``。"""
        await self._ensure_indexes()
        doc = self._message_doc(conversation_id, user_id, "assistant", content, model, usage)
        async with self._transaction() as session:
            result = await self._messages.insert_one(doc, session=session)
            await self._conversations.update_one(
                {"_id": ObjectId(conversation_id)},
                {"$set": {"updated_at": doc["created_at"]}},
                session=session,
            )
        doc["_id"] = result.inserted_id
        return _to_message(doc)

    async def get_recent_messages(self, conversation_id: str, limit: int = 10) -> list[MessageData]:
        """获取对话最近 N 条消息（按时间倒序，最新的在前）。"""
        await self._ensure_indexes()
        cursor = (
            self._messages
            .find({"conversation_id": conversation_id})
            .sort([("created_at", -1), ("_id", -1)])
            .limit(limit)
        )
        return [_to_message(doc) async for doc in cursor]

    async def get_messages(self, conversation_id: str) -> list[MessageData]:
        """获取对话全部消息（按时间正序）。"""
        await self._ensure_indexes()
        cursor = (
            self._messages
            .find({"conversation_id": conversation_id})
            .sort([("created_at", 1), ("_id", 1)])
        )
        return [_to_message(doc) async for doc in cursor]
