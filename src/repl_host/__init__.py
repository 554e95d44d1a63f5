"""
REPL host（Python）。

说明：
- 监管一个外部启动的长驻 evaluation server（JVM nREPL 进程）：classpath 组装、启动、端口发现、停止/取消；
- 与第二个长驻 worker 进程通过 stdio 管道交换换行分隔的 JSON 消息（framing + 路由）；
- 编辑器 UI（webview/命令/通知）只在 `EditorHost` 协议边界上对接。
"""

from __future__ import annotations

from repl_host.app import ReplHostApp
from repl_host.runtime.supervisor import ServerPhase, ServerStatus, ServerSupervisor

__all__ = ["ReplHostApp", "ServerPhase", "ServerStatus", "ServerSupervisor", "__version__"]

__version__ = "0.3.0"
