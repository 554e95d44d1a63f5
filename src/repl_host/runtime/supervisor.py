"""
Evaluation server 生命周期 supervisor（单进程、单事件循环）。

状态机：
- IDLE → STARTING（classpath → spawn → 端口发现）→ RUNNING → IDLE
- 任何失败都会在子进程退出之后回到 IDLE（`start()` 抛错后可立即重试）

约束：
- 同一时刻最多一个受管子进程；所有状态变更都发生在同一个事件循环里，用 phase 判断代替锁；
- 每次启动只有一个 pending future 与一个超时 timer；future 只会被 resolve/reject 一次，timer 在每条结束路径上都会被取消；
- 切换项目时先 `stop_and_wait()` 再启动新进程（避免两个进程争用同一个 marker 文件）。
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from repl_host.config.loader import ReplHostSupervisorConfig
from repl_host.core.errors import (
    AlreadyStartingError,
    ReplHostError,
    StartupCancelledError,
    StartupFailedError,
)
from repl_host.runtime.classpath import ClasspathResolver
from repl_host.runtime.launcher import RuntimeLauncher
from repl_host.runtime.paths import marker_file_path
from repl_host.runtime.port_scanner import DEFAULT_PORT_PATTERNS, PortScanner, TextPortScanner

logger = logging.getLogger(__name__)

ScannerFactory = Callable[[Path, Callable[[int], None]], PortScanner]

_READ_CHUNK = 4096
_READER_DRAIN_SEC = 1.0
_PARTIAL_SCAN_SEC = 0.2


class ServerPhase(str, Enum):
    """Supervisor 生命周期阶段。"""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"


@dataclass(frozen=True)
class ServerStatus:
    """对外状态快照（`status()` 返回值）。"""

    running: bool
    starting: bool
    project: Optional[str]
    port: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        """转换为 JSON 可序列化 dict。"""

        return {"running": self.running, "starting": self.starting, "project": self.project, "port": self.port}


@dataclass
class ServerState:
    """
    Supervisor 的可变状态（唯一拥有者是 `ServerSupervisor`）。

    不变量：
    - phase=RUNNING ⇒ process 存在且 port > 0
    - phase=STARTING ⇒ port == 0 且 pending 存在（classpath 解析期间 process 为空）
    - phase=IDLE ⇒ 其它字段全部为空
    """

    phase: ServerPhase = ServerPhase.IDLE
    project: Optional[Path] = None
    port: int = 0
    process: Optional[asyncio.subprocess.Process] = None
    pending: Optional["asyncio.Future[int]"] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None


@dataclass
class _ServerSession:
    """一次启动尝试所拥有的 IO 资源（reader tasks、stderr 尾部、停止标记）。"""

    project: Path
    pending: "asyncio.Future[int]"
    process: Optional[asyncio.subprocess.Process] = None
    stderr_tail: bytearray = field(default_factory=bytearray)
    readers: List["asyncio.Task[None]"] = field(default_factory=list)
    watcher: Optional["asyncio.Task[None]"] = None
    stopping: bool = False

    def stderr_text(self) -> str:
        return bytes(self.stderr_tail).decode("utf-8", errors="replace")


def _consume_result(fut: "asyncio.Future[Any]") -> None:
    """取走 future 的异常（调用方已不再等待时，避免 "exception was never retrieved" 噪声）。"""

    if not fut.cancelled():
        fut.exception()


def _default_scanner_factory(patterns: List[str]) -> ScannerFactory:
    def factory(marker_path: Path, on_port: Callable[[int], None]) -> PortScanner:
        return TextPortScanner(marker_path=marker_path, on_port=on_port, patterns=patterns)

    return factory


class ServerSupervisor:
    """
    Evaluation server supervisor。

    说明：
    - 由 `ReplHostApp` 显式构造并持有（不提供模块级单例），测试可以注入 resolver/launcher/scanner；
    - 所有 public 方法都必须在同一个事件循环里调用。
    """

    def __init__(
        self,
        *,
        resolver: ClasspathResolver,
        launcher: RuntimeLauncher,
        bundled_dir: Path,
        config: Optional[ReplHostSupervisorConfig] = None,
        marker_file_name: str = ".rt-port",
        scanner_factory: Optional[ScannerFactory] = None,
        scanner_patterns: Optional[List[str]] = None,
    ) -> None:
        """
        创建 supervisor。

        参数：
        - resolver / launcher：classpath 解析器与进程启动器
        - bundled_dir：bundled 归档目录
        - config：超时与 stderr 捕获上限
        - marker_file_name：端口公布文件名
        - scanner_factory：端口发现器工厂（`(marker_path, on_port) -> PortScanner`）；缺省使用正则扫描
        - scanner_patterns：缺省工厂使用的正则列表
        """

        self._resolver = resolver
        self._launcher = launcher
        self._bundled_dir = Path(bundled_dir)
        self._config = config or ReplHostSupervisorConfig()
        self._marker_file_name = marker_file_name
        self._scanner_factory = scanner_factory or _default_scanner_factory(
            list(scanner_patterns or DEFAULT_PORT_PATTERNS)
        )
        self._state = ServerState()
        self._session: Optional[_ServerSession] = None
        self._stop_task: Optional["asyncio.Task[None]"] = None

    @property
    def phase(self) -> ServerPhase:
        return self._state.phase

    @property
    def state(self) -> ServerState:
        """当前状态（只读使用；不要在外部修改）。"""

        return self._state

    def status(self) -> ServerStatus:
        """返回当前状态快照。"""

        st = self._state
        return ServerStatus(
            running=st.phase is ServerPhase.RUNNING,
            starting=st.phase is ServerPhase.STARTING,
            project=str(st.project) if st.project is not None else None,
            port=st.port if st.port > 0 else None,
        )

    async def start(self, project: Path) -> int:
        """
        为 `project` 启动（或复用）evaluation server，返回端口。

        行为：
        - 同项目 RUNNING：直接返回当前端口（不 spawn）
        - 同项目 STARTING：抛 `AlreadyStartingError`
        - 其它项目处于 STARTING/RUNNING：先 `stop_and_wait()`，再启动

        异常：
        - MissingBundleError / RuntimeNotFoundError / StartupFailedError / StartupCancelledError
        - asyncio.CancelledError：调用方任务被取消（同时取消本次启动）
        """

        project_dir = Path(project).resolve()
        while True:
            st = self._state
            if st.phase is ServerPhase.RUNNING and st.project == project_dir:
                logger.info("Evaluation server already running for %s on port %d", project_dir, st.port)
                return st.port
            if st.phase is ServerPhase.STARTING and st.project == project_dir:
                raise AlreadyStartingError("REPL startup already in progress. Please wait or cancel the current startup.")
            if st.phase is ServerPhase.IDLE:
                break
            logger.info("Switching evaluation server from %s to %s", st.project, project_dir)
            await self.stop_and_wait()

        loop = asyncio.get_running_loop()
        pending: "asyncio.Future[int]" = loop.create_future()
        pending.add_done_callback(_consume_result)
        session = _ServerSession(project=project_dir, pending=pending)
        self._session = session
        self._state = ServerState(phase=ServerPhase.STARTING, project=project_dir, pending=pending)
        logger.info("Starting evaluation server for %s", project_dir)

        try:
            await self._spawn(session)
        except ReplHostError as exc:
            self._reject(session, exc)
        except OSError as exc:
            self._reject(session, StartupFailedError(f"Failed to start evaluation server: {exc}"))
        except asyncio.CancelledError:
            self._cancel_session(session)
            raise

        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            if not pending.done():
                self._cancel_session(session)
            raise
        except ReplHostError as exc:
            logger.error("Evaluation server startup failed for %s: %s", project_dir, exc)
            await self._finish_failed(session)
            raise

    def stop(self) -> "asyncio.Task[None]":
        """
        停止当前 evaluation server（如有），返回可 await 的停止任务。

        说明：
        - 进行中的启动会以 `StartupCancelledError` 被 reject；
        - 重复调用会复用同一个进行中的停止任务。
        """

        if self._stop_task is None or self._stop_task.done():
            self._stop_task = asyncio.get_running_loop().create_task(self._stop_current())
        return self._stop_task

    async def stop_and_wait(self) -> None:
        """停止并等待子进程退出、状态回到 IDLE。"""

        await self.stop()

    async def wait_exit(self) -> None:
        """等待当前受管进程退出（没有受管进程时立即返回）。"""

        session = self._session
        if session is None or session.watcher is None:
            return
        await asyncio.wait([session.watcher])

    def cancel_startup(self) -> Optional["asyncio.Task[None]"]:
        """
        取消进行中的启动（仅 STARTING 有效）。

        返回：
        - asyncio.Task：正在执行的停止任务
        - None：当前不在 STARTING（no-op）
        """

        session = self._session
        if session is None or self._state.phase is not ServerPhase.STARTING:
            logger.debug("cancel_startup ignored (phase=%s)", self._state.phase.value)
            return None
        return self._cancel_session(session)

    def _cancel_session(self, session: _ServerSession) -> Optional["asyncio.Task[None]"]:
        if self._session is not session:
            return None
        logger.info("Cancelling evaluation server startup for %s", session.project)
        self._reject(session, StartupCancelledError("REPL startup cancelled"))
        return self.stop()

    async def _spawn(self, session: _ServerSession) -> None:
        classpath = await self._resolver.resolve(self._bundled_dir, session.project)
        if self._session is not session:
            logger.info("Discarding classpath for cancelled startup of %s", session.project)
            raise StartupCancelledError("REPL startup cancelled")

        process = await self._launcher.launch(session.project, classpath)
        if self._session is not session:
            logger.info("Startup of %s was cancelled during spawn; terminating the new process", session.project)
            await self._terminate(process)
            raise StartupCancelledError("REPL startup cancelled")

        session.process = process
        self._state.process = process
        logger.info("Evaluation server process started (pid=%s)", process.pid)

        marker = marker_file_path(session.project, file_name=self._marker_file_name)
        scanner = self._scanner_factory(marker, lambda port: self._on_port(session, port))
        loop = asyncio.get_running_loop()
        session.readers = [
            loop.create_task(self._read_stdout(session, process.stdout, scanner)),
            loop.create_task(self._read_stderr(session, process.stderr)),
        ]
        session.watcher = loop.create_task(self._watch_exit(session, process))
        self._state.timeout_handle = loop.call_later(self._config.startup_timeout_sec, self._on_timeout, session)

    def _is_starting(self, session: _ServerSession) -> bool:
        return self._session is session and self._state.phase is ServerPhase.STARTING

    def _cancel_timeout(self) -> None:
        handle = self._state.timeout_handle
        if handle is not None:
            handle.cancel()
            self._state.timeout_handle = None

    def _reject(self, session: _ServerSession, exc: BaseException) -> None:
        """reject 本次启动（future 已完成或已不是当前启动时 no-op）。"""

        if session.pending.done() or self._state.pending is not session.pending:
            return
        self._cancel_timeout()
        session.pending.set_exception(exc)

    def _on_port(self, session: _ServerSession, port: int) -> None:
        if not self._is_starting(session) or session.pending.done():
            return
        self._cancel_timeout()
        self._state.phase = ServerPhase.RUNNING
        self._state.port = port
        logger.info("Evaluation server for %s listening on port %d", session.project, port)
        session.pending.set_result(port)

    def _on_timeout(self, session: _ServerSession) -> None:
        self._state.timeout_handle = None
        if not self._is_starting(session):
            return
        timeout = self._config.startup_timeout_sec
        logger.warning("Evaluation server startup timed out after %ss", timeout)
        self._reject(
            session,
            StartupFailedError(f"REPL startup timed out after {timeout:g} seconds", stderr=session.stderr_text()),
        )

    def _on_exit(self, session: _ServerSession, returncode: Optional[int]) -> None:
        if session.stopping or self._session is not session:
            return
        if self._state.phase is ServerPhase.STARTING:
            logger.error("Evaluation server exited with code %s before announcing a port", returncode)
            self._reject(
                session,
                StartupFailedError(
                    f"REPL process exited with code {returncode} before announcing a port",
                    stderr=session.stderr_text(),
                ),
            )
        else:
            logger.warning("Evaluation server for %s exited unexpectedly with code %s", session.project, returncode)
        self._reset(session)

    def _reset(self, session: _ServerSession) -> None:
        if self._session is not session:
            return
        self._cancel_timeout()
        self._session = None
        self._state = ServerState()

    def _accepting_port(self, session: _ServerSession) -> bool:
        return self._is_starting(session) and not session.pending.done() and not session.stopping

    def _scan(self, session: _ServerSession, scanner: PortScanner, text: str) -> None:
        """把 stdout 文本交给 scanner；启动已结束（超时/取消/失败）后不再发现端口，也不写 marker。"""

        if scanner.port is not None or not self._accepting_port(session):
            return
        try:
            scanner.feed(text)
        except OSError as exc:
            logger.error("Failed to write port file for %s: %s", session.project, exc)
            self._reject(session, StartupFailedError(f"Failed to write port file: {exc}", stderr=session.stderr_text()))

    async def _read_stdout(self, session: _ServerSession, stream: Optional[asyncio.StreamReader], scanner: PortScanner) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        partial = ""
        scan_partial = False
        while True:
            if scan_partial and scanner.port is None:
                # 没有换行的公布行：输出静默片刻后按整块扫描
                try:
                    data = await asyncio.wait_for(stream.read(_READ_CHUNK), timeout=_PARTIAL_SCAN_SEC)
                except asyncio.TimeoutError:
                    scan_partial = False
                    self._scan(session, scanner, partial)
                    continue
            else:
                data = await stream.read(_READ_CHUNK)
            if not data:
                break
            text = partial + decoder.decode(data)
            complete, sep, partial = text.rpartition("\n")
            scan_partial = bool(partial)
            if not sep:
                partial = complete + partial
                continue
            logger.debug("[server stdout] %s", complete)
            self._scan(session, scanner, complete + sep)
        tail = partial + decoder.decode(b"", final=True)
        if tail:
            self._scan(session, scanner, tail)

    async def _read_stderr(self, session: _ServerSession, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        cap = self._config.stderr_capture_bytes
        while True:
            data = await stream.read(_READ_CHUNK)
            if not data:
                break
            logger.debug("[server stderr] %s", data.decode("utf-8", errors="replace").rstrip())
            session.stderr_tail.extend(data)
            if len(session.stderr_tail) > cap:
                del session.stderr_tail[: len(session.stderr_tail) - cap]

    async def _watch_exit(self, session: _ServerSession, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if session.readers:
            await asyncio.wait(session.readers, timeout=_READER_DRAIN_SEC)
        self._on_exit(session, returncode)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM → 等待 grace → SIGKILL → 等待 kill_wait（仍未退出时只记录 error）。"""

        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._config.stop_grace_sec)
            return
        except asyncio.TimeoutError:
            logger.warning("Evaluation server (pid=%s) did not exit after SIGTERM; sending SIGKILL", process.pid)

        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._config.kill_wait_sec)
        except asyncio.TimeoutError:
            logger.error("Evaluation server (pid=%s) did not exit after SIGKILL; resetting state anyway", process.pid)

    async def _stop_current(self) -> None:
        session = self._session
        if session is None:
            return

        logger.info("Stopping evaluation server for %s", session.project)
        session.stopping = True
        self._reject(session, StartupCancelledError("REPL startup cancelled"))
        self._cancel_timeout()
        if session.process is not None:
            await self._terminate(session.process)

        pending_tasks = [t for t in session.readers if not t.done()]
        if pending_tasks:
            await asyncio.wait(pending_tasks, timeout=_READER_DRAIN_SEC)
        for task in [*session.readers, session.watcher]:
            if task is not None and not task.done():
                task.cancel()

        self._reset(session)
        logger.info("Evaluation server stopped")

    async def _finish_failed(self, session: _ServerSession) -> None:
        """失败路径收尾：确保子进程已退出、状态已回到 IDLE。"""

        if self._session is session:
            await self.stop_and_wait()
        elif self._stop_task is not None and not self._stop_task.done():
            await self._stop_task
