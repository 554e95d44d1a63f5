"""
端口发现（扫描 evaluation server 的 stdout 文本）。

说明：
- 外部进程只在控制台输出里公布端口，这里是一个兼容层；
- supervisor 只依赖 `PortScanner` 协议，将来若 server 提供结构化握手，可直接替换实现。
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_PORT_PATTERNS: tuple[str, ...] = (
    r"nREPL server started.*port (\d+)",
    r"nREPL.*started.*port (\d+)",
    r"started.*port (\d+)",
    r"port (\d+)",
)


@runtime_checkable
class PortScanner(Protocol):
    """端口发现协议：逐块喂入 stdout 文本，发现端口后返回它。"""

    @property
    def port(self) -> Optional[int]:
        """已发现的端口（未发现为 None）。"""

        ...

    def feed(self, chunk: str) -> Optional[int]:
        """喂入一块 stdout 文本；本块首次发现端口时返回端口，否则返回 None。"""

        ...


def match_port(chunk: str, patterns: Sequence[re.Pattern[str]]) -> Optional[int]:
    """
    按顺序尝试 patterns，返回第一个匹配到的有效端口。

    说明：
    - 逐个 pattern 在整块文本上搜索，第一个命中的 pattern 获胜；
    - 端口不在 1..65535 时视为未命中，继续尝试后续 pattern。
    """

    for pattern in patterns:
        m = pattern.search(chunk)
        if m is None:
            continue
        try:
            port = int(m.group(1))
        except (IndexError, ValueError):
            continue
        if 0 < port < 65536:
            return port
    return None


class TextPortScanner:
    """
    基于正则的端口发现器（每次启动一个实例）。

    行为：
    - 命中后把端口写入 marker 文件（十进制文本），再调用 `on_port` 回调；
    - 之后的输出全部忽略（幂等）：`feed()` 只会返回一次非 None。
    """

    def __init__(
        self,
        *,
        marker_path: Optional[Path] = None,
        on_port: Optional[Callable[[int], None]] = None,
        patterns: Sequence[str] = DEFAULT_PORT_PATTERNS,
    ) -> None:
        """
        创建端口发现器。

        参数：
        - marker_path：端口公布文件路径；None 表示不落盘
        - on_port：发现端口后的回调（在写 marker 之后调用）
        - patterns：从最具体到最宽泛的正则列表（大小写不敏感；第一个捕获组为端口）
        """

        self._marker_path = Path(marker_path) if marker_path is not None else None
        self._on_port = on_port
        self._patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self._port: Optional[int] = None

    @property
    def port(self) -> Optional[int]:
        return self._port

    def feed(self, chunk: str) -> Optional[int]:
        if self._port is not None or not chunk:
            return None
        port = match_port(chunk, self._patterns)
        if port is None:
            return None

        self._port = port
        if self._marker_path is not None:
            self._marker_path.write_text(str(port), encoding="utf-8")
            logger.info("Wrote port %d to %s", port, self._marker_path)
        if self._on_port is not None:
            self._on_port(port)
        return port
