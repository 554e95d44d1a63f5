"""
Classpath 组装（bundled 归档 + 项目依赖）。

语义：
- bundled 归档是前置条件：目录缺失或没有任何归档时抛 `MissingBundleError`（这里不重试、不自动补救）；
- 项目依赖是 best-effort：构建工具缺失/失败/超时只记录 warning，降级为 bundled-only；
- bundled 条目总是排在项目条目之前。
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from repl_host.config.loader import ReplHostClasspathConfig
from repl_host.core.errors import MissingBundleError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classpath:
    """有序 classpath 条目（绝对路径字符串）。"""

    entries: tuple[str, ...]
    bundled_count: int = 0

    def joined(self, separator: str = os.pathsep) -> str:
        """用平台分隔符拼接为单个字符串（POSIX `:`，Windows `;`）。"""

        return separator.join(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


class ProjectClasspathError(RuntimeError):
    """项目构建工具无法给出 classpath（只在 resolver 内部使用，随后降级）。"""


def _split_classpath(raw: str, separator: str = os.pathsep) -> list[str]:
    """切分构建工具输出的 classpath（去掉空白与空项，保序）。"""

    return [part.strip() for part in raw.strip().split(separator) if part.strip()]


class ClasspathResolver:
    """
    Classpath 解析器。

    说明：
    - `resolve()` 是 `bundled_dir` + `project_dir` 的纯函数（外部构建工具调用除外）；
    - 构建工具按 `build_tools` 顺序匹配项目根目录下的描述文件（`deps.edn` / `project.clj`）。
    """

    def __init__(self, config: Optional[ReplHostClasspathConfig] = None) -> None:
        """
        创建 resolver。

        参数：
        - config：classpath 配置；缺省时使用 pydantic 默认值（不含任何构建工具）
        """

        self._config = config or ReplHostClasspathConfig()

    def bundled_entries(self, bundled_dir: Path) -> list[str]:
        """
        列出 bundled 目录下的归档（按文件名排序）。

        异常：
        - MissingBundleError：目录不存在，或不含任何归档
        """

        lib_dir = Path(bundled_dir)
        suffix = self._config.archive_suffix
        if not lib_dir.is_dir():
            raise MissingBundleError(f"Library directory not found: {lib_dir}", details={"bundled_dir": str(lib_dir)})
        archives = sorted(p for p in lib_dir.iterdir() if p.is_file() and p.name.endswith(suffix))
        if not archives:
            raise MissingBundleError(
                f"No {suffix} archives found in {lib_dir}",
                details={"bundled_dir": str(lib_dir), "suffix": suffix},
            )
        logger.info("Bundled classpath built with %d archives from %s", len(archives), lib_dir)
        return [str(p.resolve()) for p in archives]

    def build_tool_argv(self, project_dir: Path) -> Optional[Sequence[str]]:
        """返回项目根目录匹配到的构建工具 argv；没有描述文件时返回 None。"""

        for tool in self._config.build_tools:
            if (Path(project_dir) / tool.descriptor).is_file():
                return list(tool.argv)
        return None

    async def resolve_project_classpath(self, project_dir: Path) -> list[str]:
        """
        调用项目构建工具获取项目 classpath。

        返回：
        - list[str]：项目 classpath 条目；项目没有构建描述文件时为空列表

        异常：
        - ProjectClasspathError：构建工具缺失、非 0 退出或超时
        """

        argv = self.build_tool_argv(project_dir)
        if argv is None:
            logger.info("No build descriptor found in %s; using bundled classpath only", project_dir)
            return []

        logger.info("Resolving project classpath: %s (cwd=%s)", " ".join(argv), project_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(project_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProjectClasspathError(f"failed to run {argv[0]}: {exc}") from exc

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self._config.timeout_sec)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ProjectClasspathError(f"{argv[0]} timed out after {self._config.timeout_sec}s") from exc

        if proc.returncode != 0:
            stderr = err.decode("utf-8", errors="replace").strip()
            raise ProjectClasspathError(f"{argv[0]} exited with code {proc.returncode}: {stderr}")
        return _split_classpath(out.decode("utf-8", errors="replace"))

    async def resolve(self, bundled_dir: Path, project_dir: Path) -> Classpath:
        """
        组装完整 classpath：bundled 在前，项目依赖在后。

        参数：
        - bundled_dir：bundled 归档目录
        - project_dir：项目根目录
        """

        bundled = self.bundled_entries(bundled_dir)
        try:
            project = await self.resolve_project_classpath(Path(project_dir))
        except ProjectClasspathError as exc:
            logger.warning("Failed to get project classpath, using bundled only: %s", exc)
            project = []

        if project:
            logger.info("Combined classpath: bundled (%d) + project (%d entries)", len(bundled), len(project))
        return Classpath(entries=tuple(bundled + project), bundled_count=len(bundled))
