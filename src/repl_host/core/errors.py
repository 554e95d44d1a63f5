"""
REPL host 错误分类（异常类型）。

说明：
- 每个错误携带稳定 `code`、可读 `message`，以及可选的补救 `instructions`（展示给操作者）；
- Launcher/Scanner/Supervisor 抛出的错误都会中止当前 `start()` 并回到 IDLE（可立即重试）；
- 单行 JSON 解析失败（`json.JSONDecodeError`）在 framer 内部恢复，不属于本分类、也不会向外传播。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ErrorPayload:
    """错误的出站结构（对应 `repl-connection-error` 的字段）。"""

    error: str
    cancelled: bool = False
    instructions: Optional[str] = None


class ReplHostError(Exception):
    """REPL host 错误基类（不建议直接抛出）。"""

    code = "REPL_HOST_ERROR"
    cancelled = False
    default_instructions: Optional[str] = None

    def __init__(self, message: str, *, instructions: Optional[str] = None, details: Dict[str, Any] | None = None) -> None:
        """创建错误。

        参数：
        - `message`：可读错误信息（原样展示给操作者）
        - `instructions`：补救说明；缺省时使用类级默认值
        - `details`：结构化上下文信息（仅用于日志）
        """

        super().__init__(message)
        self.message = message
        self.instructions = instructions if instructions is not None else self.default_instructions
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回可读错误信息。"""

        return self.message

    def to_payload(self) -> ErrorPayload:
        """转换为出站错误结构。"""

        return ErrorPayload(error=self.message, cancelled=self.cancelled, instructions=self.instructions)


class MissingBundleError(ReplHostError):
    """bundled 库目录缺失或没有任何归档（前置条件未满足，不重试）。"""

    code = "MISSING_BUNDLE"
    default_instructions = "Run `repl-host bundle` to download the bundled libraries, then try again."


class RuntimeNotFoundError(ReplHostError):
    """找不到语言运行时可执行文件（环境配置错误）。"""

    code = "RUNTIME_NOT_FOUND"
    default_instructions = "Install Java 8+ and make sure `java` is on your PATH."


class AlreadyStartingError(ReplHostError):
    """同一项目的启动已在进行中（调用方应等待或重试）。"""

    code = "ALREADY_STARTING"
    cancelled = True
    default_instructions = "REPL startup was cancelled or already in progress."


class StartupCancelledError(ReplHostError):
    """进行中的启动被取消（`cancel_startup()` / 切换项目 / 调用方任务被取消）。"""

    code = "STARTUP_CANCELLED"
    cancelled = True
    default_instructions = "REPL startup was cancelled or already in progress."


class StartupFailedError(ReplHostError):
    """启动失败（超时、进程错误、在端口公布前退出）；携带捕获到的 stderr。"""

    code = "STARTUP_FAILED"
    default_instructions = "Make sure Java is installed and try again. Check the repl-host log for more details."

    def __init__(self, message: str, *, stderr: str = "", instructions: Optional[str] = None) -> None:
        """创建 `StartupFailedError`。

        参数：
        - `message`：可读错误信息
        - `stderr`：evaluation server 的 stderr（尾部）；非空时附加到 message，原样展示
        - `instructions`：补救说明
        """

        self.stderr = stderr or ""
        text = message
        if self.stderr.strip():
            text = f"{message}. Error output: {self.stderr.strip()}"
        super().__init__(text, instructions=instructions)


def error_payload_for(exc: BaseException) -> ErrorPayload:
    """
    把任意异常映射为出站错误结构。

    说明：
    - `ReplHostError` 使用自身的 message/instructions；
    - 其它异常按启动失败处理（不吞掉信息：message 取 `str(exc)`）。
    """

    if isinstance(exc, ReplHostError):
        return exc.to_payload()
    msg = str(exc) or type(exc).__name__
    return ErrorPayload(error=msg, cancelled=False, instructions=StartupFailedError.default_instructions)


class BundleDownloadError(ReplHostError):
    """bundled 归档下载失败（网络错误或非 2xx 响应）。"""

    code = "BUNDLE_DOWNLOAD_FAILED"
    default_instructions = "Check your network connection (or the configured artifact URLs) and run `repl-host bundle` again."
