"""
postroom.services.stream_relay
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

把上游模型的增量文本片段转成 Server-Sent Events 帧。

上游读取在独立的后台任务（生产者）中进行，帧经由 ``asyncio.Queue`` 交给
HTTP 响应（消费者）。客户端中途断开只会结束消费者，生产者照常运行到
上游结束，助手回复依然会被保存。

帧格式::

    data: {"content": "..."}\\n\\n     每个文本片段一帧，收到即转发
    data: {"error": "..."}\\n\\n       出错时一帧
    data: [DONE]\\n\\n                  无论成功失败，最后恰好一帧
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterable
from typing import Any

from postroom.core.logging import get_logger

logger = get_logger(__name__)

SSE_MEDIA_TYPE: str = "text/event-stream"
SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
DONE_FRAME: str = "data: [DONE]\n\n"

STREAM_FAILED: str = "Streaming failed"
START_FAILED: str = "Failed to start streaming"

# 后台生产者任务的强引用，防止任务在运行中被垃圾回收
_background_tasks: set[asyncio.Task] = set()


def sse_data(payload: dict[str, Any]) -> str:
    """把一个 JSON 对象编码为一帧 SSE ``data``。"""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def failed_start_frames(message: str = START_FAILED) -> AsyncGenerator[str, None]:
    """流未能建立时返回给客户端的帧：一帧错误加结束标记。"""
    yield sse_data({"error": message})
    yield DONE_FRAME


class StreamRelay:
    """单次流式请求的中继。

    Attributes:
        chunks: 上游文本片段的异步可迭代对象。
        label: 日志中用于标识本次中继的字符串（通常是对话 ID）。
    """

    def __init__(self, chunks: AsyncIterable[str], label: str = "-") -> None:
        self.chunks = chunks
        self.label = label
        # 无界队列：消费者消失后生产者也不会阻塞
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        """启动生产者任务（幂等）。"""
        if self._task is None:
            self._task = asyncio.create_task(self._pump())
            _background_tasks.add(self._task)
            self._task.add_done_callback(_background_tasks.discard)
        return self._task

    async def _pump(self) -> None:
        count = 0
        try:
            async for chunk in self.chunks:
                count += 1
                self._queue.put_nowait(sse_data({"content": chunk}))
            logger.info("流式回复完成 | stream=%s | chunks=%d", self.label, count)
        except Exception as e:
            logger.error("流式回复中断 | stream=%s | chunks=%d: %s", self.label, count, e, exc_info=True)
            self._queue.put_nowait(sse_data({"error": STREAM_FAILED}))
        finally:
            self._queue.put_nowait(DONE_FRAME)
            self._queue.put_nowait(None)

    async def frames(self) -> AsyncGenerator[str, None]:
        """按顺序产出 SSE 帧，直到 ``[DONE]``。"""
        self.start()
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            yield frame
