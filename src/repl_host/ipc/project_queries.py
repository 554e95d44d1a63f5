"""
项目相关查询（依赖配置检测、依赖目录检测、依赖解析、工作区信息）。

说明：
- 相对路径都以当前项目目录为基准（见 `repl_host.workspace.find_project_workspace`）；
- `resolve-dependencies` 带防抖：距上一次被接受的请求不足 `debounce_sec`，或上一次仍在进行中时，新请求被忽略（只记录日志，不回复）。
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

from repl_host.ipc.editor import EditorHost
from repl_host.ipc.messages import (
    ActiveEditorInfo,
    CheckDirsExist,
    CheckFileExists,
    ConfigDetected,
    DirsChecked,
    GetWorkspaceInfo,
    ResolutionComplete,
    ResolveDependencies,
    WorkspaceFolderInfo,
    WorkspaceInfo,
)

logger = logging.getLogger(__name__)

Send = Callable[[Any], None]


class ProjectQueries:
    """项目查询 handler 集合。"""

    def __init__(
        self,
        *,
        editor: EditorHost,
        locate_project: Callable[[], Optional[Path]],
        send: Send,
        debounce_sec: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        参数：
        - editor：编辑器宿主（工作区快照、结果通知）
        - locate_project：返回当前项目目录（找不到返回 None）
        - send：出站消息发送函数
        - debounce_sec：`resolve-dependencies` 防抖窗口
        - clock：单调时钟（测试可注入）
        """

        self._editor = editor
        self._locate_project = locate_project
        self._send = send
        self._debounce_sec = float(debounce_sec)
        self._clock = clock
        self._last_resolution: Optional[float] = None
        self._resolution_in_progress = False

    @property
    def resolution_in_progress(self) -> bool:
        return self._resolution_in_progress

    def check_file_exists(self, message: CheckFileExists) -> None:
        project = self._locate_project()
        exists = project is not None and (project / message.filename).exists()
        logger.info("Config check %s (%s): %s", message.config_type, message.filename, "found" if exists else "not found")
        self._send(ConfigDetected(config_type=message.config_type, exists=exists))

    def check_dirs_exist(self, message: CheckDirsExist) -> None:
        project = self._locate_project()
        resolved = False
        if project is not None:
            for raw in message.dirs:
                p = Path(os.path.expanduser(raw))
                if not p.is_absolute():
                    p = project / p
                if p.exists():
                    resolved = True
                    break
        logger.info("Dependencies check %s: %s", message.config_type, "resolved" if resolved else "unresolved")
        self._send(DirsChecked(config_type=message.config_type, resolved=resolved))

    async def resolve_dependencies(self, message: ResolveDependencies) -> None:
        """在项目目录执行依赖解析命令，完成后回复 `resolution-complete`。"""

        now = self._clock()
        if self._last_resolution is not None and now - self._last_resolution < self._debounce_sec:
            logger.warning("Ignoring duplicate resolve-dependencies request for %s (debounce)", message.config_type)
            return
        if self._resolution_in_progress:
            logger.warning("Ignoring resolve-dependencies request for %s (already in progress)", message.config_type)
            return

        self._resolution_in_progress = True
        self._last_resolution = now
        try:
            await self._run_resolution(message)
        finally:
            self._resolution_in_progress = False

    async def _run_resolution(self, message: ResolveDependencies) -> None:
        config_type = message.config_type
        description = message.description or config_type
        project = self._locate_project()
        if project is None:
            logger.error("No project workspace found for dependency resolution")
            self._send(ResolutionComplete(config_type=config_type, success=False, error="No project workspace found"))
            return

        logger.info("Resolving %s dependencies in %s: %s", description, project, message.command)
        try:
            proc = await asyncio.create_subprocess_shell(
                message.command,
                cwd=str(project),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to execute dependency resolution for %s: %s", config_type, exc)
            self._send(ResolutionComplete(config_type=config_type, success=False, error=str(exc)))
            self._editor.show_notification("error", f"Failed to execute dependency resolution: {exc}")
            return

        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            self._send(ResolutionComplete(config_type=config_type, success=False, error="Cancelled by user"))
            raise

        success = proc.returncode == 0
        output = out.decode("utf-8", errors="replace").strip()
        error = err.decode("utf-8", errors="replace").strip()
        logger.info("Dependency resolution for %s finished with exit code %s", config_type, proc.returncode)
        self._send(ResolutionComplete(config_type=config_type, success=success, output=output, error=error))
        if success:
            self._editor.show_notification("info", f"{description} dependencies resolved successfully")
        else:
            self._editor.show_notification("error", f"Failed to resolve {description} dependencies: {error or 'Unknown error'}")

    def workspace_info(self, message: Optional[GetWorkspaceInfo] = None) -> None:
        snapshot = self._editor.workspace()
        active = snapshot.active_editor
        self._send(
            WorkspaceInfo(
                folders=[WorkspaceFolderInfo(name=f.name, uri=f.uri, fs_path=str(f.path)) for f in snapshot.folders],
                active_editor=(
                    ActiveEditorInfo(file_name=active.file_name, language_id=active.language_id) if active else None
                ),
            )
        )
