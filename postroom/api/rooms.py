"""
postroom.api.rooms
~~~~~~~~~~~~~~~~~~

评论房间状态接口。

端点:
  - ``GET /rooms/stats`` → 各房间当前在线人数 ``{room_id: member_count}``
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from postroom.api.deps import get_room_registry
from postroom.realtime.room_registry import RoomRegistry
from postroom.schemas.api_response import ApiResponse

router: APIRouter = APIRouter()


@router.get("/rooms/stats", summary="获取各房间在线人数")
async def room_stats(
    registry: RoomRegistry = Depends(get_room_registry),
) -> ApiResponse[dict[str, int]]:
    """返回所有有成员在线的房间及其人数，没有成员的房间不出现。"""
    return ApiResponse.ok(data=registry.stats())
