"""
`start-jackin` / `stop-jackin` 处理：把 worker 的生命周期请求转交给 supervisor，并回复结果消息。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from repl_host.core.errors import error_payload_for
from repl_host.ipc.messages import JackinStopped, JackinSuccess, ReplConnectionError, StartJackin, StopJackin
from repl_host.runtime.supervisor import ServerPhase, ServerSupervisor

logger = logging.getLogger(__name__)

Send = Callable[[Any], None]


class LifecycleBridge:
    """
    生命周期桥接。

    参数：
    - supervisor：唯一的 `ServerSupervisor`
    - locate_project：返回当前项目目录（找不到返回 None）
    - send：出站消息发送函数（通常是 `WorkerSession.send`）
    """

    def __init__(self, supervisor: ServerSupervisor, *, locate_project: Callable[[], Optional[Path]], send: Send) -> None:
        self._supervisor = supervisor
        self._locate_project = locate_project
        self._send = send

    async def handle_start(self, message: Optional[StartJackin] = None) -> None:
        project = self._locate_project()
        if project is None:
            logger.warning("start-jackin: no project workspace found")
            self._send(ReplConnectionError(error="No project workspace found"))
            return

        try:
            port = await self._supervisor.start(project)
        except Exception as exc:
            logger.error("start-jackin failed for %s: %s", project, exc)
            payload = error_payload_for(exc)
            self._send(
                ReplConnectionError(error=payload.error, cancelled=payload.cancelled, instructions=payload.instructions)
            )
            return

        self._send(JackinSuccess(port=port))

    async def handle_stop(self, message: Optional[StopJackin] = None) -> None:
        phase = self._supervisor.phase
        if phase is ServerPhase.STARTING:
            task = self._supervisor.cancel_startup()
            if task is not None:
                await task
            self._send(JackinStopped(message="Evaluation server startup cancelled", cancelled=True))
        elif phase is ServerPhase.RUNNING:
            await self._supervisor.stop_and_wait()
            self._send(JackinStopped(message="Evaluation server has been disconnected"))
        else:
            logger.info("stop-jackin: no evaluation server to stop")
            self._send(JackinStopped(message="No evaluation server was running"))
