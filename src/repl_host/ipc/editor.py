"""
编辑器宿主接口（UI 能力的边界）。

说明：
- repl-host 不渲染任何 UI：命令、webview 消息与通知都转交给 `EditorHost`；
- `StreamEditorHost` 是无 UI 环境下的实现：把转交的事件写成 JSON lines（默认 stdout），供外层编辑器插件消费。
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, List, Optional, Protocol, TextIO

from repl_host.workspace import WorkspaceSnapshot

logger = logging.getLogger(__name__)


class EditorHost(Protocol):
    """编辑器宿主协议。"""

    def workspace(self) -> WorkspaceSnapshot:
        """返回当前工作区快照。"""

        ...

    def execute_command(self, command: str, args: List[Any]) -> None:
        ...

    def post_webview_message(self, message: Any) -> None:
        ...

    def show_notification(self, level: str, message: str) -> None:
        """展示通知；level 为 `info` / `warn` / `error`（其它值按 info 处理）。"""

        ...


def normalize_level(level: Optional[str]) -> str:
    lv = str(level or "info").strip().lower()
    if lv in ("warn", "warning"):
        return "warn"
    if lv == "error":
        return "error"
    return "info"


class StreamEditorHost:
    """
    把编辑器事件写为 JSON lines 的宿主实现。

    输出格式：
    - `{"event": "execute-command", "command": ..., "args": [...]}`
    - `{"event": "webview-message", "message": ...}`
    - `{"event": "notification", "level": ..., "message": ...}`
    """

    def __init__(self, snapshot: WorkspaceSnapshot, *, stream: Optional[TextIO] = None) -> None:
        self._snapshot = snapshot
        self._stream = stream

    def workspace(self) -> WorkspaceSnapshot:
        return self._snapshot

    def set_workspace(self, snapshot: WorkspaceSnapshot) -> None:
        self._snapshot = snapshot

    def _emit(self, payload: dict) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(json.dumps(payload, ensure_ascii=False) + "\n")
        stream.flush()

    def execute_command(self, command: str, args: List[Any]) -> None:
        logger.info("Forwarding editor command %s", command)
        self._emit({"event": "execute-command", "command": command, "args": list(args)})

    def post_webview_message(self, message: Any) -> None:
        self._emit({"event": "webview-message", "message": message})

    def show_notification(self, level: str, message: str) -> None:
        lv = normalize_level(level)
        log = {"error": logger.error, "warn": logger.warning}.get(lv, logger.info)
        log("Notification: %s", message)
        self._emit({"event": "notification", "level": lv, "message": message})
