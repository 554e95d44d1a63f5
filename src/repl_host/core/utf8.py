"""
stdio 编码兜底（CLI 入口用）。

说明：
- `C` locale 下 stdout/stderr 可能是 ASCII；JSON 输出与日志里的非 ASCII 路径会触发 `UnicodeEncodeError`；
- 入口应尽早调用（在 argparse/help 或任何输出之前）。
"""

from __future__ import annotations

import sys


def ensure_utf8_stdio() -> None:
    """best-effort 把 stdout/stderr reconfigure 为 UTF-8（不支持 `reconfigure()` 的流保持原样）。"""

    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if not callable(reconfigure):
            continue
        try:
            reconfigure(encoding="utf-8", errors="replace")
        except (OSError, ValueError):
            continue
