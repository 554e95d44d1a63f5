from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

from repl_host.ipc.messages import JackinSuccess
from repl_host.ipc.worker import WorkerSession, encode_message

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX process semantics")

# worker：先输出一个跨行对象与一条噪声，然后把收到的每一行原样包装回显
ECHO_WORKER = "\n".join(
    [
        "import json, sys",
        "sys.stdout.write('{\"type\":\"webview-message\",\\n\"message\":{\"ready\":true}}\\n')",
        "sys.stdout.write('starting worker\\n')",
        "sys.stdout.flush()",
        "for line in sys.stdin:",
        "    sys.stdout.write(json.dumps({'type': 'echo', 'got': json.loads(line)}) + '\\n')",
        "    sys.stdout.flush()",
    ]
)


async def _wait_for(items: List[Any], n: int, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(items) < n:
        if loop.time() > deadline:
            raise AssertionError(f"expected {n} messages, got {items}")
        await asyncio.sleep(0.02)


def test_encode_message_is_one_compact_json_line() -> None:
    assert encode_message(JackinSuccess(port=1234)) == b'{"type":"jackin-success","port":1234}\n'
    assert encode_message({"type": "x", "text": "ação"}) == '{"type":"x","text":"ação"}\n'.encode("utf-8")


def test_worker_round_trip(tmp_path: Path) -> None:
    received: List[Dict[str, Any]] = []

    async def _go() -> None:
        session = WorkerSession([sys.executable, "-u", "-c", ECHO_WORKER], on_message=received.append, cwd=tmp_path)
        await session.start()
        assert session.running
        first_framer = session.framer
        assert first_framer is not None

        await _wait_for(received, 1)
        assert session.send(JackinSuccess(port=5555)) is True
        await _wait_for(received, 2)

        await session.stop()
        assert session.running is False
        assert session.framer is None
        assert session.send({"type": "late"}) is False

    asyncio.run(_go())

    assert received[0] == {"type": "webview-message", "message": {"ready": True}}
    assert received[1] == {"type": "echo", "got": {"type": "jackin-success", "port": 5555}}


def test_each_session_gets_a_fresh_framer(tmp_path: Path) -> None:
    async def _go() -> None:
        session = WorkerSession([sys.executable, "-c", "print('{\"partial\": ')"], on_message=lambda m: None)
        await session.start()
        framer_one = session.framer
        assert await session.wait() == 0
        await session.stop()

        await session.start()
        framer_two = session.framer
        assert framer_two is not None and framer_two is not framer_one
        assert framer_two.buffer == ""
        await session.stop()

    asyncio.run(_go())


def test_worker_requires_argv() -> None:
    with pytest.raises(ValueError):
        WorkerSession([], on_message=lambda m: None)
