"""
postroom.llm.openrouter_provider
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

纯 LLM 客户端封装 —— 只负责与 OpenRouter Chat Completion 接口的连接和调用。

不包含任何对话持久化或上下文组装逻辑（这些职责属于 ``ChatService``）。
通过构造函数接受 ``client`` 参数实现依赖注入，方便测试和替换。

调用失败不会返回兜底文案，而是抛出
``ProviderError``，由上层决定如何告知客户端。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Literal, TypedDict

from openai import AsyncOpenAI, OpenAIError

from postroom.core.exceptions import ProviderError
from postroom.core.logging import get_logger
from postroom.core.settings import settings
from postroom.llm.client import create_openrouter_client

logger = get_logger(__name__)


class ChatTurn(TypedDict):
    """发送给模型的一条消息。"""

    role: Literal["user", "assistant", "system"]
    content: str


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(frozen=True)
class CompletionResult:
    """非流式调用结果。

    Attributes:
        content: 模型回复全文。
        model: 上游实际使用的模型。
        usage: token 用量，上游未返回时为 ``None``。
    """

    content: str
    model: str
    usage: TokenUsage | None = None


class OpenRouterProvider:
    """OpenRouter Chat Completion 封装。

    Attributes:
        default_model: 未指定模型时使用的模型名称。
        temperature: 默认采样温度。
        max_tokens: 默认最大回复 token 数。
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        default_model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        """初始化 Provider。

        Args:
            client: 可选的 ``AsyncOpenAI`` 实例（用于测试注入 mock）。
            default_model: 默认模型，缺省读取 ``settings.OPENROUTER_DEFAULT_MODEL``。
            temperature: 默认温度，缺省读取 ``settings.OPENROUTER_TEMPERATURE``。
            max_tokens: 默认最大 token 数，缺省读取 ``settings.OPENROUTER_MAX_TOKENS``。
        """
        self._client: AsyncOpenAI = client or create_openrouter_client()
        self.default_model: str = default_model or settings.OPENROUTER_DEFAULT_MODEL
        self.temperature: float = (
            temperature if temperature is not None else settings.OPENROUTER_TEMPERATURE
        )
        self.max_tokens: int = max_tokens or settings.OPENROUTER_MAX_TOKENS
        logger.info("LLM 客户端已初始化 | default_model=%s", self.default_model)

    def _options(
        self,
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, object]:
        # 0 是合法的温度值，只有 None 才回退到默认值
        return {
            "model": model or self.default_model,
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }

    async def complete(
        self,
        messages: list[ChatTurn],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResult:
        """发送消息并获取完整回复（非流式）。

        Args:
            messages: 按时间正序排列的对话消息。
            model: 模型名称。
            temperature: 采样温度。
            max_tokens: 最大回复 token 数。

        Returns:
            包含回复全文、模型和用量的 ``CompletionResult``。

        Raises:
            ProviderError: 上游调用失败或没有返回任何候选回复。
        """
        options = self._options(model, temperature, max_tokens)
        try:
            completion = await self._client.chat.completions.create(
                messages=[{"role": m["role"], "content": m["content"]} for m in messages],
                stream=False,
                **options,
            )
        except OpenAIError as e:
            logger.error("LLM 调用异常: %s", e, exc_info=True)
            raise ProviderError() from e

        if not completion.choices:
            raise ProviderError("No response from AI")

        usage = None
        if completion.usage is not None:
            usage = TokenUsage(
                prompt_tokens=completion.usage.prompt_tokens,
                completion_tokens=completion.usage.completion_tokens,
                total_tokens=completion.usage.total_tokens,
            )
        return CompletionResult(
            content=completion.choices[0].message.content or "",
            model=completion.model or options["model"],
            usage=usage,
        )

    async def stream(
        self,
        messages: list[ChatTurn],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncGenerator[str, None]:
        """发送消息并以异步生成器返回上游推送的每个文本片段（流式）。

        Yields:
            非空的增量文本片段，顺序与上游一致。

        Raises:
            ProviderError: 建立流或读取流的过程中上游出错。
        """
        options = self._options(model, temperature, max_tokens)
        try:
            response_stream = await self._client.chat.completions.create(
                messages=[{"role": m["role"], "content": m["content"]} for m in messages],
                stream=True,
                **options,
            )
            async for chunk in response_stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except OpenAIError as e:
            logger.error("LLM 流式调用异常: %s", e, exc_info=True)
            raise ProviderError("Streaming failed") from e
