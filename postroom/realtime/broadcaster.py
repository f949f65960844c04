"""
postroom.realtime.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间广播组 —— 维护每个房间的广播连接集合，提供并发广播能力。
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any

from postroom.core.logging import get_logger
from postroom.realtime.connection import Connection

logger = get_logger(__name__)


class RoomBroadcaster:
    """按房间分组的连接广播器。

    同一房间的所有成员同时收到同一份消息（``asyncio.gather`` 并发发送），
    不同房间之间不保证顺序。
    """

    def __init__(self) -> None:
        self._groups: dict[str, set[Connection]] = {}
        self._lock = threading.Lock()

    def add(self, room_id: str, connection: Connection) -> None:
        """把连接加入房间广播组。"""
        with self._lock:
            self._groups.setdefault(room_id, set()).add(connection)

    def discard(self, room_id: str, connection: Connection) -> None:
        """把连接移出房间广播组，空组随即删除。"""
        with self._lock:
            group = self._groups.get(room_id)
            if group is None:
                return
            group.discard(connection)
            if not group:
                del self._groups[room_id]

    def online_count(self, room_id: str) -> int:
        """房间广播组中的连接数。"""
        with self._lock:
            return len(self._groups.get(room_id, ()))

    async def broadcast(
        self,
        room_id: str,
        event: str,
        data: Any = None,
        exclude: Connection | None = None,
    ) -> int:
        """向房间内所有连接广播事件。

        Args:
            room_id: 房间 ID。
            event: 事件名。
            data: 事件载荷（需可 JSON 序列化）。
            exclude: 不接收本次广播的连接（通常是发送者本人）。

        Returns:
            成功送达的连接数。
        """
        with self._lock:
            targets = [c for c in self._groups.get(room_id, ()) if c is not exclude]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(conn.emit(event, data) for conn in targets),
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "广播失败，移除断开的连接 | room=%s | conn=%s: %s",
                    room_id, conn.id, result,
                )
                self.discard(room_id, conn)
            elif result:
                delivered += 1
        return delivered
