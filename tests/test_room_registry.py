"""
tests.test_room_registry
~~~~~~~~~~~~~~~~~~~~~~~~

RoomRegistry 单元测试：登记、顶替、清理与房间统计。
"""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeWebSocket
from postroom.realtime.connection import Connection, ConnectionState
from postroom.realtime.room_registry import RoomRegistry


def _connection() -> Connection:
    return Connection(FakeWebSocket())


class TestJoinLeave:
    """测试加入与离开。"""

    @pytest.mark.asyncio
    async def test_join_then_lookup(self) -> None:
        registry = RoomRegistry()
        conn = _connection()

        assert await registry.join("u1", "post-1", conn) is True
        assert registry.lookup_connection("u1", "post-1") is conn
        assert registry.lookup_user(conn) == "u1"
        assert registry.lookup_membership(conn) == ("u1", "post-1")

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(self) -> None:
        registry = RoomRegistry()
        conn = _connection()
        await registry.join("u1", "post-1", conn)

        await registry.leave("u1", "post-1")
        await registry.leave("u1", "post-1")
        await registry.leave("u1", "post-1", conn)

        assert registry.lookup_connection("u1", "post-1") is None
        assert registry.lookup_user(conn) is None
        assert conn.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_ignored(self) -> None:
        registry = RoomRegistry()
        conn = _connection()

        assert await registry.join("", "post-1", conn) is False
        assert await registry.join("u1", "", conn) is False
        await registry.leave("", "post-1")

        assert registry.stats() == {}
        assert registry.lookup_connection("", "post-1") is None

    @pytest.mark.asyncio
    async def test_rejoin_with_same_connection_registers_one_hook(self) -> None:
        registry = RoomRegistry()
        conn = _connection()

        await registry.join("u1", "post-1", conn)
        assert await registry.join("u1", "post-1", conn) is True

        assert len(conn._close_listeners) == 1


class TestDuplicateJoin:
    """同一 (user, room) 最多一条在线连接。"""

    @pytest.mark.asyncio
    async def test_second_connection_evicts_first(self) -> None:
        registry = RoomRegistry()
        first, second = _connection(), _connection()

        await registry.join("u1", "post-1", first)
        await registry.join("u1", "post-1", second)

        assert first.state is ConnectionState.CLOSED
        assert first.websocket.close_code == 1000
        assert registry.lookup_connection("u1", "post-1") is second
        assert registry.lookup_user(first) is None
        assert registry.stats() == {"post-1": 1}

    @pytest.mark.asyncio
    async def test_evicted_connection_close_does_not_remove_new_one(self) -> None:
        registry = RoomRegistry()
        first, second = _connection(), _connection()
        await registry.join("u1", "post-1", first)
        await registry.join("u1", "post-1", second)

        # 旧连接再次关闭 / 清理不应影响新连接
        await first.close()
        await first.mark_closed()
        await registry.leave("u1", "post-1", first)

        assert registry.lookup_connection("u1", "post-1") is second

    @pytest.mark.asyncio
    async def test_closing_connection_triggers_leave_once(self) -> None:
        registry = RoomRegistry()
        conn = _connection()
        await registry.join("u1", "post-1", conn)

        await conn.close()
        await conn.close()

        assert registry.lookup_connection("u1", "post-1") is None
        assert registry.stats() == {}
        assert conn._close_listeners == []


class TestStats:
    """房间条目在且仅在最后一名成员离开后消失。"""

    @pytest.mark.asyncio
    async def test_room_removed_after_last_member(self) -> None:
        registry = RoomRegistry()
        await registry.join("u1", "post-1", _connection())
        await registry.join("u2", "post-1", _connection())
        await registry.join("u3", "post-2", _connection())
        assert registry.stats() == {"post-1": 2, "post-2": 1}

        await registry.leave("u1", "post-1")
        assert registry.stats() == {"post-1": 1, "post-2": 1}

        await registry.leave("u2", "post-1")
        assert "post-1" not in registry.stats()
        assert registry.members("post-1") == []

    @pytest.mark.asyncio
    async def test_concurrent_joins_keep_counts_consistent(self) -> None:
        registry = RoomRegistry()
        connections = [_connection() for _ in range(20)]

        await asyncio.gather(*(
            registry.join(f"u{i % 10}", "post-1", conn)
            for i, conn in enumerate(connections)
        ))

        assert registry.stats() == {"post-1": 10}
        closed = [c for c in connections if c.state is ConnectionState.CLOSED]
        assert len(closed) == 10

    @pytest.mark.asyncio
    async def test_close_all(self) -> None:
        registry = RoomRegistry()
        conns = [_connection() for _ in range(3)]
        for i, conn in enumerate(conns):
            await registry.join(f"u{i}", f"post-{i}", conn)

        await registry.close_all()

        assert registry.stats() == {}
        assert all(c.state is ConnectionState.CLOSED for c in conns)


class TestCleanup:
    """cleanup 幂等且永不抛异常。"""

    @pytest.mark.asyncio
    async def test_cleanup_swallows_transport_errors(self) -> None:
        registry = RoomRegistry()
        ws = FakeWebSocket()

        async def _broken_close(code: int = 1000) -> None:
            raise RuntimeError("transport gone")

        ws.close = _broken_close
        conn = Connection(ws)

        await registry.cleanup(conn)
        await registry.cleanup(conn)
        await registry.cleanup(None)

        assert conn.state is ConnectionState.CLOSED
