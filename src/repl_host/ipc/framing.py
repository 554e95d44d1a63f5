"""
Worker stdout 的换行分隔 JSON framing（带花括号平衡恢复）。

背景：
- worker 按 `JSON + "\\n"` 输出，但单个对象偶尔会被拆成多行（对象内部带换行）；
- 管道 chunk 边界任意，一行可能跨多个 chunk。

恢复规则：
- 解析失败且包含 `{`/`}` 的行按到达顺序暂存，放回 buffer（位于未完成的尾行之前）；
- 之后的行优先与暂存片段拼接后解析，失败再单独解析；
- 每次 feed 结束时，若 buffer 的 `{`/`}` 数量相等且 > 0，尝试整体解析，成功则清空 buffer。

已知风险：buffer 没有上限（一直无法配平的片段会持续累积）。
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_UNPARSED = object()


def _decode(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return _UNPARSED


class MessageFramer:
    """
    增量 framer：每个 worker 会话一个实例，会话结束即丢弃（不可跨会话复用）。

    用法：
    - `feed(chunk)`：返回本次 chunk 解码出的 JSON object 列表（按到达顺序）
    - `feed_lines(chunk)`：纯行切分（不解码），尾部未完成的行留在 buffer
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def buffer(self) -> str:
        """当前未消费的文本（暂存片段 + 未完成尾行）。"""

        return self._buffer

    def reset(self) -> None:
        self._buffer = ""

    def feed_lines(self, chunk: str) -> List[str]:
        """追加 chunk 并切出所有完整行（不含换行符）；最后一段未完成的行保留在 buffer。"""

        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        """
        追加 chunk 并返回完整解码出的 JSON object。

        说明：
        - 空白行忽略；
        - 解码结果不是 object（如数组、数字）时丢弃并记录日志；
        - 单行解析失败（`json.JSONDecodeError`）在这里恢复，不会抛出。
        """

        out: List[Dict[str, Any]] = []
        fragments: List[str] = []
        for line in self.feed_lines(chunk):
            if not line.strip():
                continue
            if fragments:
                obj = _decode("\n".join([*fragments, line]))
                if obj is not _UNPARSED:
                    fragments.clear()
                    self._emit(obj, out)
                    continue
            obj = _decode(line)
            if obj is not _UNPARSED:
                self._emit(obj, out)
            elif "{" in line or "}" in line:
                fragments.append(line)
            else:
                logger.debug("Dropping unparseable worker line: %r", line[:200])

        if fragments:
            self._buffer = "\n".join(fragments) + "\n" + self._buffer

        balanced = self._try_balanced_buffer()
        if balanced is not None:
            self._emit(balanced, out)
        return out

    def _try_balanced_buffer(self) -> Optional[Any]:
        text = self._buffer.strip()
        if not text:
            return None
        opens = text.count("{")
        if opens == 0 or opens != text.count("}"):
            return None
        obj = _decode(text)
        if obj is _UNPARSED:
            return None
        self._buffer = ""
        return obj

    @staticmethod
    def _emit(obj: Any, out: List[Dict[str, Any]]) -> None:
        if isinstance(obj, dict):
            out.append(obj)
        else:
            logger.debug("Dropping non-object JSON value from worker: %s", type(obj).__name__)
