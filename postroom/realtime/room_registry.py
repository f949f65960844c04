"""
postroom.realtime.room_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间在线表 —— "谁在哪个房间、用哪条连接" 的唯一事实来源。

数据结构:
  - 正向表 ``room_id -> {user_id -> Connection}``
  - 反向表 ``connection.id -> (user_id, room_id)``，与正向表在同一步中增删

约束:
  - 同一 (room, user) 最多一条存活连接；同一用户重复加入时，旧连接被摘钩并关闭
  - 房间最后一名成员离开后，房间条目随即删除
  - 每次 ``join`` 注册一个一次性关闭钩子，连接关闭时恰好执行一次 ``leave``

两张表只在 ``self._lock`` 内修改，锁内不做任何 await；
关闭传输等 I/O 一律放在锁外执行。
"""
from __future__ import annotations

import threading

from postroom.core.logging import get_logger
from postroom.realtime.connection import Connection

logger = get_logger(__name__)


class RoomRegistry:
    """房间在线表。"""

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, Connection]] = {}
        self._owners: dict[str, tuple[str, str]] = {}
        self._lock = threading.RLock()

    async def join(self, user_id: str, room_id: str, connection: Connection) -> bool:
        """把连接登记为 (user, room) 的唯一在线连接。

        如果该用户在该房间已有另一条连接，旧连接会先被清理（摘钩 + 关闭）。

        Returns:
            参数非法时记录警告并返回 ``False``，不抛异常。
        """
        if not user_id or not room_id or connection is None:
            logger.warning(
                "join 参数非法，已忽略 | user=%s | room=%s | conn=%s",
                user_id, room_id, getattr(connection, "id", None),
            )
            return False

        with self._lock:
            members = self._rooms.setdefault(room_id, {})
            previous = members.get(user_id)
            if previous is connection:
                # 已登记，关闭钩子也已注册过
                return True
            if previous is not None:
                self._owners.pop(previous.id, None)
            members[user_id] = connection
            self._owners[connection.id] = (user_id, room_id)

        if previous is not None:
            logger.info(
                "同一用户重复进入房间，关闭旧连接 | user=%s | room=%s | old=%s | new=%s",
                user_id, room_id, previous.id, connection.id,
            )
            await self.cleanup(previous)

        async def _on_close() -> None:
            await self.leave(user_id, room_id, connection)

        # 清理旧连接期间新连接可能已经断开，此时钩子不会再触发
        if not connection.connected:
            await self.leave(user_id, room_id, connection)
            return False
        connection.once_close(_on_close)
        logger.debug("用户加入房间 | user=%s | room=%s | conn=%s", user_id, room_id, connection.id)
        return True

    async def leave(self, user_id: str, room_id: str, connection: Connection | None = None) -> None:
        """移除 (user, room) 的在线记录（幂等）。

        Args:
            user_id: 用户 ID。
            room_id: 房间 ID。
            connection: 指定时仅当当前登记的正是这条连接才移除，
                避免旧连接的清理误删新连接的登记。
        """
        if not user_id or not room_id:
            logger.warning("leave 参数非法，已忽略 | user=%s | room=%s", user_id, room_id)
            return

        removed: Connection | None = None
        with self._lock:
            members = self._rooms.get(room_id)
            if members is None:
                return
            current = members.get(user_id)
            if current is not None and (connection is None or current is connection):
                del members[user_id]
                self._owners.pop(current.id, None)
                removed = current
            if not members:
                del self._rooms[room_id]
                logger.debug("房间已无成员，移除 | room=%s", room_id)

        if removed is not None:
            logger.debug("用户离开房间 | user=%s | room=%s | conn=%s", user_id, room_id, removed.id)
            await self.cleanup(removed)

    def lookup_connection(self, user_id: str, room_id: str) -> Connection | None:
        """按 (user, room) 查找在线连接，不存在时返回 ``None``。"""
        if not user_id or not room_id:
            return None
        with self._lock:
            return self._rooms.get(room_id, {}).get(user_id)

    def lookup_user(self, connection: Connection) -> str | None:
        """按连接反查用户 ID，未登记时返回 ``None``。"""
        membership = self.lookup_membership(connection)
        return membership[0] if membership else None

    def lookup_membership(self, connection: Connection) -> tuple[str, str] | None:
        """按连接反查 ``(user_id, room_id)``。"""
        if connection is None:
            return None
        with self._lock:
            return self._owners.get(connection.id)

    def members(self, room_id: str) -> list[Connection]:
        """房间当前全部在线连接的快照。"""
        with self._lock:
            return list(self._rooms.get(room_id, {}).values())

    async def cleanup(self, connection: Connection) -> None:
        """摘除连接的全部监听并关闭传输（幂等，永不抛异常）。"""
        if connection is None:
            return
        try:
            connection.remove_all_listeners()
            if connection.connected:
                await connection.close()
        except Exception as e:
            logger.error("清理连接失败 | conn=%s: %s", connection.id, e, exc_info=True)

    def stats(self) -> dict[str, int]:
        """各房间在线人数 ``{room_id: member_count}``（只读快照）。"""
        with self._lock:
            return {room_id: len(members) for room_id, members in self._rooms.items()}

    async def close_all(self) -> None:
        """关闭全部登记的连接（应用关闭时调用）。"""
        with self._lock:
            memberships = [
                (user_id, room_id)
                for room_id, members in self._rooms.items()
                for user_id in members
            ]
        for user_id, room_id in memberships:
            await self.leave(user_id, room_id)
        logger.info("已关闭全部实时连接 | count=%d", len(memberships))
