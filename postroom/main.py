"""
postroom.main
~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from postroom.api import chat, comments_ws, rooms
from postroom.core.exceptions import PostroomError
from postroom.core.logging import get_logger, request_id_ctx_var, setup_logging
from postroom.core.rate_limit import WebSocketRateLimiter, limiter
from postroom.core.security import JwtTokenVerifier
from postroom.core.settings import settings
from postroom.db import close_mongo, connect_mongo, get_client, get_database
from postroom.db.chat_repository import ChatRepository
from postroom.db.comment_repository import CommentRepository
from postroom.llm.openrouter_provider import OpenRouterProvider
from postroom.realtime.authenticator import ConnectionAuthenticator
from postroom.realtime.broadcaster import RoomBroadcaster
from postroom.realtime.gateway import RoomGateway
from postroom.realtime.room_registry import RoomRegistry
from postroom.schemas.api_response import ApiResponse
from postroom.services.chat_service import ChatService

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    await connect_mongo()
    database = get_database()

    registry = RoomRegistry()
    verifier = JwtTokenVerifier()
    provider = OpenRouterProvider()

    app.state.room_registry = registry
    app.state.token_verifier = verifier
    app.state.chat_service = ChatService(
        repo=ChatRepository(database, get_client(), settings.MONGO_USE_TRANSACTIONS),
        provider=provider,
    )
    app.state.gateway = RoomGateway(
        registry=registry,
        authenticator=ConnectionAuthenticator(verifier, timeout=settings.WS_AUTH_TIMEOUT),
        comments=CommentRepository(database),
        broadcaster=RoomBroadcaster(),
        error_close_delay=settings.WS_ERROR_CLOSE_DELAY,
        comment_limiter=WebSocketRateLimiter(interval_seconds=settings.WS_COMMENT_INTERVAL),
    )
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await registry.close_all()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="帖子评论实时推送与 AI 对话后端 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── 限流 ──────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """为每个 HTTP 请求设置追踪 ID（优先沿用客户端传入的 ``X-Request-ID``）。"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    token = request_id_ctx_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(chat.router, prefix="/api/chat", tags=["AI Chat"])
app.include_router(rooms.router, prefix="/api", tags=["Comment Rooms"])
app.include_router(comments_ws.router, tags=["WebSocket Comments"])


# ── 异常处理器 ────────────────────────────────────────────────────────

@app.exception_handler(PostroomError)
async def postroom_error_handler(request: Request, exc: PostroomError) -> JSONResponse:
    """业务异常统一经 ApiResponse.from_error() 转换为失败应答。"""
    response = ApiResponse.from_error(exc)
    logger.info("业务异常: %s %s -> %d %s", request.method, request.url.path, response.code, exc.message)
    return JSONResponse(status_code=response.code, content=response.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "Internal server error"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check() -> JSONResponse:
    """验证服务是否正常运行。"""
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "postroom.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
