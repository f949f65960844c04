"""
postroom.llm.client
~~~~~~~~~~~~~~~~~~~

OpenRouter API 客户端工厂 —— 全局共享的客户端创建入口。

OpenRouter 提供 OpenAI 兼容接口，直接使用官方 ``openai`` SDK 的异步客户端。
重试策略属于上游服务，本层不自动重试（``max_retries=0``）。
"""
from __future__ import annotations

from openai import AsyncOpenAI

from postroom.core.settings import settings


def create_openrouter_client() -> AsyncOpenAI:
    """创建 OpenRouter API 客户端实例。

    Returns:
        已认证的 ``AsyncOpenAI``。
    """
    return AsyncOpenAI(
        api_key=settings.OPENROUTER_API_KEY,
        base_url=settings.OPENROUTER_BASE_URL,
        timeout=settings.OPENROUTER_TIMEOUT,
        max_retries=0,
        default_headers={
            "HTTP-Referer": settings.OPENROUTER_APP_URL,
            "X-Title": settings.OPENROUTER_APP_TITLE,
        },
    )
