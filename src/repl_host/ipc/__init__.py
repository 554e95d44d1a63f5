"""
Worker IPC（换行分隔 JSON）。

组成：
- `framing`：字节流 → 完整 JSON 对象（含 brace-balance 恢复）
- `messages`：入站/出站消息的封闭 tagged-variant 集合
- `router`：按 `type` 分发到 handler
- `worker`：worker 进程会话（每个会话独占一个 framer）
"""

from __future__ import annotations
