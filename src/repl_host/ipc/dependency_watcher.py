"""
依赖描述文件监听（`deps.edn` / `project.clj` 等）。

说明：
- 轮询当前项目根目录下的描述文件，比较 `(mtime_ns, size)`，变化时向 worker 发送 `file-change`；
- 项目目录切换时只重建基线，不发送消息；
- `poll_once()` 是同步的单次比较，后台任务只是按间隔反复调用它。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from repl_host.ipc.messages import FileChange

logger = logging.getLogger(__name__)

Send = Callable[[Any], None]
_Stamp = Tuple[int, int]


class DependencyWatcher:
    """
    依赖描述文件轮询器。

    参数：
    - locate_project：返回当前项目目录（找不到返回 None）
    - send：出站消息发送函数
    - file_names：监听的文件名（相对项目根目录）
    - interval_sec：轮询间隔
    """

    def __init__(
        self,
        *,
        locate_project: Callable[[], Optional[Path]],
        send: Send,
        file_names: Sequence[str],
        interval_sec: float = 1.0,
    ) -> None:
        self._locate_project = locate_project
        self._send = send
        self._file_names = tuple(file_names)
        self._interval_sec = float(interval_sec)
        self._project: Optional[Path] = None
        self._stamps: Dict[str, _Stamp] = {}
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _snapshot(self, project: Path) -> Dict[str, _Stamp]:
        out: Dict[str, _Stamp] = {}
        for name in self._file_names:
            try:
                st = (project / name).stat()
            except OSError:
                continue
            out[name] = (st.st_mtime_ns, st.st_size)
        return out

    def poll_once(self) -> list[FileChange]:
        """比较一次并发送变化；返回本次发送的消息。"""

        project = self._locate_project()
        if project is None:
            self._project = None
            self._stamps = {}
            return []

        current = self._snapshot(project)
        if project != self._project:
            self._project = project
            self._stamps = current
            return []

        changes: list[FileChange] = []
        for name in self._file_names:
            before = self._stamps.get(name)
            after = current.get(name)
            if before == after:
                continue
            if before is None:
                kind = "created"
            elif after is None:
                kind = "deleted"
            else:
                kind = "changed"
            changes.append(FileChange(filename=name, full_path=str(project / name), change_type=kind))
        self._stamps = current

        for change in changes:
            logger.info("Dependency file %s: %s", change.change_type, change.filename)
            self._send(change)
        return changes

    async def _run(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception:
                logger.exception("Dependency file poll failed")
            await asyncio.sleep(self._interval_sec)

    def start(self) -> None:
        """启动后台轮询（间隔为 0 或已在运行时 no-op）。先建立基线，再开始比较。"""

        if self.running or self._interval_sec <= 0:
            return
        self.poll_once()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
