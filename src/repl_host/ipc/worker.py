"""
Worker 进程会话（stdio 上的换行分隔 JSON）。

说明：
- 出站：`json.dumps(message) + "\\n"` 写入 worker stdin；
- 入站：stdout 字节按 UTF-8 增量解码后交给本会话独占的 `MessageFramer`，再逐条交给 `on_message`；
- 会话结束（stop 或 worker 退出）时丢弃 framer，下一次 `start()` 使用新的 framer。
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from repl_host.ipc.framing import MessageFramer

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


def encode_message(message: Any) -> bytes:
    """把出站消息（pydantic 消息或 dict）编码为一行 JSON（UTF-8，含结尾换行）。"""

    payload = message.to_wire() if hasattr(message, "to_wire") else message
    return (json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class WorkerSession:
    """单个 worker 进程会话。"""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        on_message: Callable[[Dict[str, Any]], None],
        cwd: Optional[Path] = None,
    ) -> None:
        """
        参数：
        - argv：worker 启动命令
        - on_message：每个解码出的 JSON object 的回调（在事件循环线程中调用）
        - cwd：worker 工作目录
        """

        if not argv:
            raise ValueError("worker argv must not be empty")
        self._argv: List[str] = [str(a) for a in argv]
        self._on_message = on_message
        self._cwd = Path(cwd) if cwd is not None else None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._framer: Optional[MessageFramer] = None
        self._tasks: List["asyncio.Task[None]"] = []
        self._exited = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def framer(self) -> Optional[MessageFramer]:
        return self._framer

    async def start(self) -> None:
        """启动 worker 进程（已在运行时抛 RuntimeError）。"""

        if self.running:
            raise RuntimeError("worker session already running")
        logger.info("Starting worker: %s", " ".join(self._argv))
        self._exited = asyncio.Event()
        self._framer = MessageFramer()
        self._process = await asyncio.create_subprocess_exec(
            *self._argv,
            cwd=str(self._cwd) if self._cwd is not None else None,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        loop = asyncio.get_running_loop()
        process, framer = self._process, self._framer
        self._tasks = [
            loop.create_task(self._read_stdout(process, framer)),
            loop.create_task(self._read_stderr(process)),
            loop.create_task(self._watch_exit(process)),
        ]

    def send(self, message: Any) -> bool:
        """
        向 worker 发送一条消息。

        返回：
        - True：已写入 stdin
        - False：worker 不在运行（消息被丢弃）
        """

        process = self._process
        if process is None or process.returncode is not None or process.stdin is None or process.stdin.is_closing():
            logger.debug("Worker not running; dropping outbound message")
            return False
        process.stdin.write(encode_message(message))
        return True

    async def wait(self) -> Optional[int]:
        """等待 worker 退出，返回退出码。"""

        await self._exited.wait()
        return self._process.returncode if self._process is not None else None

    async def stop(self, *, grace_sec: float = 3.0) -> None:
        """终止 worker（SIGTERM，超时后 SIGKILL），并丢弃本会话的 framer。"""

        process = self._process
        if process is not None and process.returncode is None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_sec)
            except asyncio.TimeoutError:
                logger.warning("Worker did not exit after SIGTERM; sending SIGKILL")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        self._framer = None

    async def _read_stdout(self, process: asyncio.subprocess.Process, framer: MessageFramer) -> None:
        if process.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(_READ_CHUNK)
            if not data:
                break
            for obj in framer.feed(decoder.decode(data)):
                try:
                    self._on_message(obj)
                except Exception:
                    logger.error("Worker message callback failed", exc_info=True)
        if framer.buffer.strip():
            logger.debug("Worker stdout closed with %d unconsumed characters", len(framer.buffer))

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            data = await process.stderr.read(_READ_CHUNK)
            if not data:
                break
            logger.info("[worker stderr] %s", data.decode("utf-8", errors="replace").rstrip())

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        logger.info("Worker exited with code %s", code)
        if process is self._process:
            self._framer = None
        self._exited.set()
