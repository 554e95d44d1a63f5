"""
应用上下文：显式构造并持有 supervisor / worker 会话 / 路由器。

说明：
- 不提供模块级单例；一个 `ReplHostApp` 就是一个 host 实例（测试可以并存多个）；
- worker 的每条入站消息：framer → `MessageRouter.route` → lifecycle / 项目查询 / 编辑器宿主；
- 依赖描述文件监听随 worker 会话启动、在 shutdown 时停止。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from repl_host.config.loader import ReplHostConfig
from repl_host.ipc.editor import EditorHost
from repl_host.ipc.dependency_watcher import DependencyWatcher
from repl_host.ipc.lifecycle import LifecycleBridge
from repl_host.ipc.messages import (
    CheckDirsExist,
    CheckFileExists,
    ExecuteCommand,
    GetWorkspaceInfo,
    Notification,
    ResolveDependencies,
    StartJackin,
    StopJackin,
    WebviewMessage,
)
from repl_host.ipc.project_queries import ProjectQueries
from repl_host.ipc.router import MessageRouter
from repl_host.ipc.worker import WorkerSession
from repl_host.runtime.classpath import ClasspathResolver
from repl_host.runtime.launcher import RuntimeLauncher
from repl_host.runtime.paths import HostPaths, get_host_paths
from repl_host.runtime.supervisor import ServerSupervisor
from repl_host.workspace import find_project_dir

logger = logging.getLogger(__name__)


def build_supervisor(config: ReplHostConfig, paths: HostPaths) -> ServerSupervisor:
    """按配置组装 supervisor（resolver + launcher + 端口扫描 patterns）。"""

    return ServerSupervisor(
        resolver=ClasspathResolver(config.classpath),
        launcher=RuntimeLauncher(config.runtime, marker_file_name=config.marker_file_name),
        bundled_dir=paths.bundle_dir,
        config=config.supervisor,
        marker_file_name=config.marker_file_name,
        scanner_patterns=list(config.scanner.patterns),
    )


class ReplHostApp:
    """
    REPL host 应用。

    参数：
    - config：已校验配置
    - editor：编辑器宿主（工作区快照 + UI 转交）
    - paths：数据目录（缺省按配置推导）
    - supervisor：可注入的 supervisor（缺省按配置构造）
    - send：出站消息发送函数（缺省写入 worker 会话）
    - exclude：定位项目时需要跳过的目录
    """

    def __init__(
        self,
        config: ReplHostConfig,
        *,
        editor: EditorHost,
        paths: Optional[HostPaths] = None,
        supervisor: Optional[ServerSupervisor] = None,
        send: Optional[Callable[[Any], None]] = None,
        exclude: Sequence[Path] = (),
    ) -> None:
        self.config = config
        self.paths = paths or get_host_paths(config)
        self.editor = editor
        self.supervisor = supervisor or build_supervisor(config, self.paths)
        self._send_override = send
        self._exclude = tuple(Path(p) for p in exclude)
        self._worker: Optional[WorkerSession] = None

        self.lifecycle = LifecycleBridge(self.supervisor, locate_project=self.locate_project, send=self.send)
        self.queries = ProjectQueries(
            editor=editor,
            locate_project=self.locate_project,
            send=self.send,
            debounce_sec=config.dependencies.debounce_sec,
        )
        self.router = MessageRouter(self._handlers())
        self.watcher = DependencyWatcher(
            locate_project=self.locate_project,
            send=self.send,
            file_names=config.dependencies.watch_files,
            interval_sec=config.dependencies.watch_interval_sec,
        )

    def _handlers(self) -> Dict[type, Callable[[Any], Any]]:
        return {
            StartJackin: self.lifecycle.handle_start,
            StopJackin: self.lifecycle.handle_stop,
            ExecuteCommand: lambda m: self.editor.execute_command(m.command, list(m.args or [])),
            WebviewMessage: lambda m: self.editor.post_webview_message(m.message),
            Notification: lambda m: self.editor.show_notification(m.level, m.message),
            CheckFileExists: self.queries.check_file_exists,
            CheckDirsExist: self.queries.check_dirs_exist,
            ResolveDependencies: self.queries.resolve_dependencies,
            GetWorkspaceInfo: self.queries.workspace_info,
        }

    @property
    def worker(self) -> Optional[WorkerSession]:
        return self._worker

    def locate_project(self) -> Optional[Path]:
        """当前项目目录（包含活动文件的工作区 folder 优先）。"""

        return find_project_dir(self.editor.workspace(), exclude=self._exclude)

    def send(self, message: Any) -> None:
        """发送出站消息（worker 不在运行时丢弃并记录 debug 日志）。"""

        if self._send_override is not None:
            self._send_override(message)
            return
        if self._worker is None:
            logger.debug("No worker session; dropping outbound message %s", getattr(message, "type", "?"))
            return
        self._worker.send(message)

    def handle_worker_message(self, obj: Dict[str, Any]) -> None:
        self.router.route(obj)

    async def start_worker(self) -> WorkerSession:
        """
        按配置启动 worker 会话。

        异常：
        - ValueError：未配置 `worker.argv`
        """

        argv = list(self.config.worker.argv)
        if not argv:
            raise ValueError("worker.argv is not configured")
        cwd = Path(self.config.worker.cwd).expanduser() if self.config.worker.cwd else None
        session = WorkerSession(argv, on_message=self.handle_worker_message, cwd=cwd)
        await session.start()
        self._worker = session
        self.watcher.start()
        return session

    async def run(self) -> int:
        """启动 worker 并一直运行到 worker 退出；退出后停止 evaluation server。返回 worker 退出码。"""

        session = await self.start_worker()
        try:
            code = await session.wait()
        finally:
            await self.shutdown()
        return int(code or 0)

    async def shutdown(self) -> None:
        """关闭：停止依赖监听与进行中的 handler，再停止 worker 和 evaluation server。"""

        await self.watcher.stop()
        self.router.cancel_pending()
        await self.router.drain()
        if self._worker is not None:
            await self._worker.stop()
            self._worker = None
        await self.supervisor.stop_and_wait()
        logger.info("REPL host shut down")
