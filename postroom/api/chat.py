"""
postroom.api.chat
~~~~~~~~~~~~~~~~~

AI 对话 REST 接口，所有端点都需要 Bearer 令牌。

端点:
  - ``POST   /chat/conversations``                        → 新建对话（限流 5/分钟）
  - ``GET    /chat/conversations``                        → 分页列出对话
  - ``GET    /chat/conversations/{id}``                   → 对话详情（含全部消息）
  - ``DELETE /chat/conversations/{id}``                   → 删除对话及其消息
  - ``POST   /chat/conversations/{id}/messages``          → 发送消息，等待完整回复（限流 10/分钟）
  - ``POST   /chat/conversations/{id}/messages/stream``   → 发送消息，SSE 流式回复（限流 10/分钟）
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from postroom.api.deps import get_chat_service, get_current_user_id
from postroom.core.exceptions import NotFoundError
from postroom.core.logging import get_logger
from postroom.core.rate_limit import CREATE_CONVERSATION_LIMIT, SEND_MESSAGE_LIMIT, limiter
from postroom.schemas.api_response import ApiResponse
from postroom.schemas.chat import (
    ConversationData,
    ConversationDetailData,
    ConversationListData,
    CreateConversationRequest,
    MessageData,
    SendMessageRequest,
)
from postroom.services.chat_service import ChatService
from postroom.services.stream_relay import (
    SSE_HEADERS,
    SSE_MEDIA_TYPE,
    StreamRelay,
    failed_start_frames,
)

logger = get_logger(__name__)

router: APIRouter = APIRouter()


# ── 对话管理 ──────────────────────────────────────────────────────────

@router.post(
    "/conversations",
    summary="新建对话",
    response_model=ApiResponse[ConversationData],
)
@limiter.limit(CREATE_CONVERSATION_LIMIT)
async def create_conversation(
    request: Request,
    body: CreateConversationRequest,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> ApiResponse[ConversationData]:
    conversation = await service.create_conversation(user_id, body.title)
    return ApiResponse.ok(data=conversation)


@router.get(
    "/conversations",
    summary="分页列出对话",
    response_model=ApiResponse[ConversationListData],
)
async def list_conversations(
    offset: int = Query(0, ge=0, description="跳过条数（分页偏移）"),
    limit: int = Query(10, ge=1, le=100, description="每页最大条数"),
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> ApiResponse[ConversationListData]:
    """最近更新的对话排在最前。"""
    data = await service.list_conversations(user_id, offset=offset, limit=limit)
    return ApiResponse.ok(data=data)


@router.get(
    "/conversations/{conversation_id}",
    summary="获取对话详情",
    response_model=ApiResponse[ConversationDetailData],
)
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> ApiResponse[ConversationDetailData]:
    """返回对话及其全部消息（按时间正序）。不存在或不属于当前用户时 404。"""
    data = await service.get_conversation(conversation_id, user_id)
    return ApiResponse.ok(data=data)


@router.delete(
    "/conversations/{conversation_id}",
    summary="删除对话",
    response_model=ApiResponse[None],
)
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> ApiResponse[None]:
    await service.delete_conversation(conversation_id, user_id)
    return ApiResponse.ok(data=None, msg="Conversation deleted")


# ── 消息 ──────────────────────────────────────────────────────────────

@router.post(
    "/conversations/{conversation_id}/messages",
    summary="发送消息（非流式）",
    response_model=ApiResponse[MessageData],
)
@limiter.limit(SEND_MESSAGE_LIMIT)
async def send_message(
    request: Request,
    conversation_id: str,
    body: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> ApiResponse[MessageData]:
    """保存用户消息，等待模型完整回复后返回保存的助手消息。"""
    message = await service.send_message(conversation_id, user_id, body)
    return ApiResponse.ok(data=message)


@router.post(
    "/conversations/{conversation_id}/messages/stream",
    summary="发送消息（SSE 流式）",
)
@limiter.limit(SEND_MESSAGE_LIMIT)
async def stream_message(
    request: Request,
    conversation_id: str,
    body: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    """以 Server-Sent Events 推送模型回复，最后一帧固定为 ``data: [DONE]``。

    对话不存在时在开始推流之前直接返回 404。
    """
    try:
        chunks = await service.open_stream(conversation_id, user_id, body)
    except NotFoundError:
        raise
    except Exception as e:
        logger.error("流式回复启动失败 | conversation=%s: %s", conversation_id, e, exc_info=True)
        return StreamingResponse(
            failed_start_frames(), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS,
        )

    relay = StreamRelay(chunks, label=conversation_id)
    relay.start()
    return StreamingResponse(relay.frames(), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)
