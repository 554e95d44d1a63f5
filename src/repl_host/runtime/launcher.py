"""
Evaluation server 启动器（JVM 子进程）。

语义：
- 通过 PATH 探测运行时可执行文件，并执行一次 version check；失败抛 `RuntimeNotFoundError`；
- 参数向量固定：classpath、编码、工作目录属性、额外 JVM 选项、入口、middleware、`--port 0`；
- spawn 前删除项目下残留的端口公布文件（避免读到上一次崩溃留下的端口）。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from repl_host.config.loader import ReplHostRuntimeConfig
from repl_host.core.errors import RuntimeNotFoundError
from repl_host.runtime.classpath import Classpath
from repl_host.runtime.paths import marker_file_path

logger = logging.getLogger(__name__)


class RuntimeLauncher:
    """
    JVM evaluation server 启动器。

    说明：
    - stdout/stderr 作为两个独立管道捕获（端口发现读 stdout；失败信息取 stderr）；
    - stdin 保持为管道（当前未使用）。
    """

    def __init__(self, config: Optional[ReplHostRuntimeConfig] = None, *, marker_file_name: str = ".rt-port") -> None:
        """
        创建启动器。

        参数：
        - config：运行时配置（可执行文件、入口、middleware、JVM 选项）
        - marker_file_name：端口公布文件名（spawn 前删除）
        """

        self._config = config or ReplHostRuntimeConfig()
        self._marker_file_name = marker_file_name
        self._executable: Optional[str] = None

    async def find_runtime_executable(self) -> str:
        """
        定位运行时可执行文件（结果缓存）。

        异常：
        - RuntimeNotFoundError：PATH 中找不到，或 version check 失败/超时
        """

        if self._executable is not None:
            return self._executable

        name = self._config.executable
        found = shutil.which(name)
        if found is None:
            raise RuntimeNotFoundError(f"{name} not found in PATH. Please install Java 8+ and ensure it's in your PATH.")

        try:
            proc = await asyncio.create_subprocess_exec(
                found,
                *self._config.version_args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise RuntimeNotFoundError(f"{name} could not be executed: {exc}") from exc
        try:
            await asyncio.wait_for(proc.communicate(), timeout=self._config.version_check_timeout_sec)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise RuntimeNotFoundError(f"{name} version check timed out") from exc
        if proc.returncode != 0:
            raise RuntimeNotFoundError(f"{name} version check failed with exit code {proc.returncode}")

        self._executable = found
        return found

    def build_argv(self, executable: str, project_dir: Path, classpath: Classpath) -> list[str]:
        """
        构造完整进程参数（含可执行文件本身）。

        参数：
        - executable：运行时可执行文件
        - project_dir：项目根目录（作为 `user.dir` 与 cwd）
        - classpath：已组装的 classpath
        """

        project = str(Path(project_dir).resolve())
        argv = [
            executable,
            "-cp",
            classpath.joined(),
            "-Dfile.encoding=UTF-8",
            f"-Duser.dir={project}",
        ]
        argv.extend(opt.replace("{project}", project) for opt in self._config.jvm_opts)
        argv.append(self._config.main_class)
        argv.extend(self._config.main_args)
        if self._config.middleware:
            argv.extend(["--middleware", self._config.middleware])
        argv.extend(["--port", "0"])
        return argv

    def remove_stale_marker(self, project_dir: Path) -> None:
        """删除项目下残留的端口公布文件（不存在则 no-op）。"""

        marker = marker_file_path(project_dir, file_name=self._marker_file_name)
        if marker.exists():
            logger.info("Removing stale port file %s", marker)
            with contextlib.suppress(FileNotFoundError):
                marker.unlink()

    async def launch(self, project_dir: Path, classpath: Classpath) -> asyncio.subprocess.Process:
        """
        启动 evaluation server 子进程。

        返回：
        - asyncio.subprocess.Process：stdin/stdout/stderr 均为管道

        异常：
        - RuntimeNotFoundError：找不到运行时
        - OSError：spawn 失败（由 supervisor 映射为 StartupFailedError）
        """

        project = Path(project_dir).resolve()
        executable = await self.find_runtime_executable()
        argv = self.build_argv(executable, project, classpath)
        self.remove_stale_marker(project)

        logger.info("Starting evaluation server in %s", project)
        logger.debug("Evaluation server command: %s", " ".join(argv))
        env = dict(os.environ)
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(project),
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
