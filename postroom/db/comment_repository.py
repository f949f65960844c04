"""
postroom.db.comment_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

帖子评论持久化仓库 —— 封装 MongoDB ``post_comments`` 集合的增查操作。

每条评论一个文档；``parent_comment_id`` 为空表示顶层评论，否则为回复。
本模块中评论创建后不可修改（编辑 / 删除不在实时评论的职责范围内）。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from postroom.core.logging import get_logger
from postroom.schemas.comments import CommentData

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "post_comments"


def _to_comment(doc: dict[str, Any]) -> CommentData:
    """把 MongoDB 文档转换为对外的评论模型（ObjectId 转字符串）。"""
    return CommentData(
        id=str(doc["_id"]),
        post_id=doc["post_id"],
        created_by=doc["created_by"],
        author_name=doc.get("author_name"),
        body=doc["body"],
        parent_comment_id=doc.get("parent_comment_id"),
        created_at=doc["created_at"],
    )


class CommentRepository:
    """评论持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 复合索引：按帖子分区 + 顶层过滤 + 按时间排序
        await self._collection.create_index(
            [("post_id", 1), ("parent_comment_id", 1), ("created_at", 1)],
            name="idx_post_parent_time",
        )
        self._indexes_created = True
        logger.debug("post_comments 索引已就绪")

    async def create_comment(
        self,
        post_id: str,
        user_id: str,
        body: str,
        parent_comment_id: str | None = None,
        author_name: str | None = None,
    ) -> CommentData:
        """保存一条评论。

        Args:
            post_id: 所属帖子（即房间）ID。
            user_id: 评论作者 ID。
            body: 评论正文。
            parent_comment_id: 被回复的评论 ID，顶层评论为 ``None``。
            author_name: 作者用户名快照，用户资料不在本服务内，发表时一并写入。

        Returns:
            已保存的评论。
        """
        await self._ensure_indexes()
        doc = {
            "post_id": post_id,
            "created_by": user_id,
            "author_name": author_name,
            "body": body,
            "parent_comment_id": parent_comment_id,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self._collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return _to_comment(doc)

    async def find_comment(self, comment_id: str, post_id: str) -> CommentData | None:
        """查找指定帖子下的一条评论，ID 格式非法时视为不存在。"""
        try:
            oid = ObjectId(comment_id)
        except (InvalidId, TypeError):
            return None
        await self._ensure_indexes()
        doc = await self._collection.find_one({"_id": oid, "post_id": post_id})
        return _to_comment(doc) if doc else None

    async def list_top_level(self, post_id: str) -> list[CommentData]:
        """获取帖子下全部顶层评论（按创建时间正序）。

        创建时间相同时按 ``_id`` 排序，保证多次读取顺序一致。
        """
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"post_id": post_id, "parent_comment_id": None})
            .sort([("created_at", 1), ("_id", 1)])
        )
        return [_to_comment(doc) async for doc in cursor]
