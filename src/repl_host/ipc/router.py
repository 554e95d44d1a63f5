"""
入站消息路由（按 `type` 分发到 handler）。

说明：
- 每个入站变体必须注册一个 handler（构造时检查穷尽性）；
- 未知 `type` 或字段不合法的消息记录日志后丢弃，不会中断会话；
- handler 可以是同步函数或 coroutine function；异步 handler 作为受跟踪的 task 运行。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from pydantic import ValidationError

from repl_host.ipc.messages import INBOUND_TYPES, parse_inbound

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[None, Awaitable[None]]]


class MessageRouter:
    """入站消息路由器。"""

    def __init__(self, handlers: Mapping[type, Handler]) -> None:
        """
        创建路由器。

        参数：
        - handlers：入站消息类型 → handler；必须覆盖全部入站类型

        异常：
        - ValueError：缺少某个入站类型的 handler，或注册了未知类型
        """

        missing = [t.__name__ for t in INBOUND_TYPES if t not in handlers]
        if missing:
            raise ValueError(f"missing handlers for inbound message types: {', '.join(missing)}")
        unknown = [getattr(t, "__name__", str(t)) for t in handlers if t not in INBOUND_TYPES]
        if unknown:
            raise ValueError(f"handlers registered for unknown message types: {', '.join(unknown)}")
        self._handlers: Dict[type, Handler] = dict(handlers)
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def route(self, obj: Dict[str, Any]) -> Optional[Any]:
        """
        校验并分发一条已解码的消息。

        返回：
        - 校验后的消息对象；被丢弃时返回 None
        """

        try:
            message = parse_inbound(obj)
        except ValidationError as exc:
            msg_type = obj.get("type") if isinstance(obj, dict) else None
            logger.info("Dropping worker message (type=%r): %s", msg_type, exc.errors()[0].get("msg") if exc.errors() else exc)
            return None

        handler = self._handlers[type(message)]
        try:
            result = handler(message)
        except Exception:
            logger.error("Handler for %s failed", message.type, exc_info=True)
            return message

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        return message

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async message handler failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """等待所有进行中的异步 handler 结束（关闭会话前调用）。"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()
