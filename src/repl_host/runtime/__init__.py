"""
Evaluation server 运行时（classpath → launch → port discovery → supervisor）。

实现定位：
- 同一时刻只监管一个 evaluation server 子进程（由 `ServerSupervisor` 的 phase 字段保证）；
- 所有状态迁移都发生在单个 asyncio event loop 上，不使用锁。
"""

from __future__ import annotations
