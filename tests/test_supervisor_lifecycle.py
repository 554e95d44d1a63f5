from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from repl_host.config.loader import ReplHostRuntimeConfig, ReplHostSupervisorConfig
from repl_host.core.errors import (
    AlreadyStartingError,
    MissingBundleError,
    StartupCancelledError,
    StartupFailedError,
)
from repl_host.runtime.classpath import Classpath, ClasspathResolver
from repl_host.runtime.launcher import RuntimeLauncher
from repl_host.runtime.supervisor import ServerPhase, ServerSupervisor

pytestmark = pytest.mark.skipif(os.name == "nt", reason="POSIX signal semantics")

PORT_LINE = "nREPL server started on port {port} on host localhost - nrepl://localhost:{port}"


def _announce(port: int, *, delay: float = 0.0, then: str = "time.sleep(60)") -> str:
    return "\n".join(
        [
            "import sys, time",
            f"time.sleep({delay})",
            f"print({PORT_LINE.format(port=port)!r}, flush=True)",
            then,
        ]
    )


SILENT = "import time; time.sleep(60)"


class ScriptLauncher(RuntimeLauncher):
    """用 `python -c <script>` 代替 JVM（保留 launch() 的 marker 清理与 cwd 语义）。"""

    def __init__(self, script: str) -> None:
        super().__init__(ReplHostRuntimeConfig())
        self.script = script
        self.launches = 0

    async def find_runtime_executable(self) -> str:
        return sys.executable

    def build_argv(self, executable: str, project_dir: Path, classpath: Classpath) -> List[str]:
        return [executable, "-u", "-c", self.script]

    async def launch(self, project_dir: Path, classpath: Classpath) -> asyncio.subprocess.Process:
        self.launches += 1
        return await super().launch(project_dir, classpath)


def _make_supervisor(
    tmp_path: Path,
    launcher: RuntimeLauncher,
    *,
    startup_timeout_sec: float = 10,
    stop_grace_sec: float = 1,
    with_bundle: bool = True,
    marker_file_name: str = ".rt-port",
) -> ServerSupervisor:
    lib = tmp_path / "lib"
    lib.mkdir(exist_ok=True)
    if with_bundle:
        (lib / "nrepl.jar").write_bytes(b"PK")
    return ServerSupervisor(
        resolver=ClasspathResolver(),
        launcher=launcher,
        bundled_dir=lib,
        config=ReplHostSupervisorConfig(
            startup_timeout_sec=startup_timeout_sec,
            stop_grace_sec=stop_grace_sec,
            kill_wait_sec=0.5,
        ),
        marker_file_name=marker_file_name,
    )


def _project(tmp_path: Path, name: str = "proj") -> Path:
    p = tmp_path / name
    p.mkdir(exist_ok=True)
    return p.resolve()


async def _wait_until(pred: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def test_start_discovers_port_and_publishes_marker(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(45678))
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        port = await sup.start(project)
        assert port == 45678
        assert (project / ".rt-port").read_text(encoding="utf-8") == "45678"

        st = sup.status()
        assert st.running is True
        assert st.starting is False
        assert st.project == str(project)
        assert st.port == 45678

        await sup.stop_and_wait()
        assert sup.status().to_dict() == {"running": False, "starting": False, "project": None, "port": None}

    asyncio.run(_go())


def test_start_for_running_project_is_idempotent(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(40001))
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        first = await sup.start(project)
        second = await sup.start(project)
        assert first == second == 40001
        assert launcher.launches == 1
        await sup.stop_and_wait()

    asyncio.run(_go())


def test_concurrent_start_for_same_project_is_single_flight(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(40002, delay=0.5))
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        results = await asyncio.gather(sup.start(project), sup.start(project), return_exceptions=True)
        ports = [r for r in results if isinstance(r, int)]
        errors = [r for r in results if isinstance(r, BaseException)]
        assert ports == [40002]
        assert len(errors) == 1 and isinstance(errors[0], AlreadyStartingError)
        assert errors[0].to_payload().cancelled is True
        assert launcher.launches == 1
        await sup.stop_and_wait()

    asyncio.run(_go())


def test_switching_project_stops_previous_process_first(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(40003))
    sup = _make_supervisor(tmp_path, launcher)
    a = _project(tmp_path, "a")
    b = _project(tmp_path, "b")

    async def _go() -> None:
        await sup.start(a)
        first_process = sup.state.process
        assert first_process is not None

        await sup.start(b)

        assert first_process.returncode is not None
        assert sup.status().project == str(b)
        assert sup.state.process is not first_process
        assert launcher.launches == 2
        await sup.stop_and_wait()

    asyncio.run(_go())


def test_switching_project_cancels_pending_startup(tmp_path: Path) -> None:
    launcher = ScriptLauncher(SILENT)
    sup = _make_supervisor(tmp_path, launcher)
    a = _project(tmp_path, "a")
    b = _project(tmp_path, "b")

    async def _go() -> None:
        first = asyncio.ensure_future(sup.start(a))
        await _wait_until(lambda: sup.state.process is not None)

        launcher.script = _announce(40004)
        port = await sup.start(b)

        assert port == 40004
        with pytest.raises(StartupCancelledError):
            await first
        await sup.stop_and_wait()

    asyncio.run(_go())


def test_startup_timeout_rejects_and_resets_to_idle(tmp_path: Path) -> None:
    launcher = ScriptLauncher(SILENT)
    sup = _make_supervisor(tmp_path, launcher, startup_timeout_sec=0.5)
    project = _project(tmp_path)

    async def _go() -> None:
        with pytest.raises(StartupFailedError) as ei:
            await sup.start(project)
        assert "timed out" in str(ei.value)
        assert sup.phase is ServerPhase.IDLE
        assert sup.state.process is None
        assert sup.state.timeout_handle is None

    asyncio.run(_go())


def test_port_announced_without_trailing_newline(tmp_path: Path) -> None:
    launcher = ScriptLauncher(
        "import sys, time; sys.stdout.write('nREPL server started on port 45999'); sys.stdout.flush(); time.sleep(60)"
    )
    sup = _make_supervisor(tmp_path, launcher, startup_timeout_sec=5)
    project = _project(tmp_path)

    async def _go() -> None:
        assert await sup.start(project) == 45999
        assert (project / ".rt-port").read_text(encoding="utf-8") == "45999"
        await sup.stop_and_wait()

    asyncio.run(_go())


def test_port_announced_after_timeout_is_not_published(tmp_path: Path) -> None:
    launcher = ScriptLauncher(
        "\n".join(
            [
                "import signal, time",
                "signal.signal(signal.SIGTERM, signal.SIG_IGN)",
                "time.sleep(0.8)",
                f"print({PORT_LINE.format(port=40077)!r}, flush=True)",
                "time.sleep(60)",
            ]
        )
    )
    sup = _make_supervisor(tmp_path, launcher, startup_timeout_sec=0.5, stop_grace_sec=1.5)
    project = _project(tmp_path)

    async def _go() -> None:
        with pytest.raises(StartupFailedError) as ei:
            await sup.start(project)
        assert "timed out" in str(ei.value)
        assert sup.phase is ServerPhase.IDLE
        assert sup.status().port is None
        assert not (project / ".rt-port").exists()

    asyncio.run(_go())


def test_marker_write_failure_aborts_startup(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(45998))
    sup = _make_supervisor(tmp_path, launcher, startup_timeout_sec=5, marker_file_name="missing_dir/.rt-port")
    project = _project(tmp_path)

    async def _go() -> float:
        loop = asyncio.get_running_loop()
        began = loop.time()
        with pytest.raises(StartupFailedError) as ei:
            await sup.start(project)
        assert "Failed to write port file" in str(ei.value)
        assert sup.phase is ServerPhase.IDLE
        return loop.time() - began

    assert asyncio.run(_go()) < 4


def test_exit_before_port_reports_captured_stderr(tmp_path: Path) -> None:
    launcher = ScriptLauncher("import sys; sys.stderr.write('Could not locate nrepl/cmdline\\n'); sys.exit(3)")
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        with pytest.raises(StartupFailedError) as ei:
            await sup.start(project)
        assert "code 3" in str(ei.value)
        assert "Could not locate nrepl/cmdline" in ei.value.stderr
        assert "Error output" in str(ei.value)
        assert sup.phase is ServerPhase.IDLE

    asyncio.run(_go())


def test_clean_exit_before_port_is_also_a_failure(tmp_path: Path) -> None:
    launcher = ScriptLauncher("print('bye')")
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        with pytest.raises(StartupFailedError):
            await sup.start(project)
        assert sup.phase is ServerPhase.IDLE

        launcher.script = _announce(40005)
        assert await sup.start(project) == 40005
        await sup.stop_and_wait()

    asyncio.run(_go())


def test_cancel_startup_rejects_pending_start(tmp_path: Path) -> None:
    launcher = ScriptLauncher(SILENT)
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        assert sup.cancel_startup() is None

        task = asyncio.ensure_future(sup.start(project))
        await _wait_until(lambda: sup.state.process is not None)
        process = sup.state.process

        stop_task = sup.cancel_startup()
        assert stop_task is not None
        with pytest.raises(StartupCancelledError) as ei:
            await task
        assert ei.value.to_payload().cancelled is True
        await stop_task

        assert sup.phase is ServerPhase.IDLE
        assert process is not None and process.returncode is not None

    asyncio.run(_go())


def test_cancelling_the_caller_cancels_the_startup(tmp_path: Path) -> None:
    launcher = ScriptLauncher(SILENT)
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        task = asyncio.ensure_future(sup.start(project))
        await _wait_until(lambda: sup.state.process is not None)
        process = sup.state.process

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await sup.stop_and_wait()

        assert sup.phase is ServerPhase.IDLE
        assert process is not None and process.returncode is not None

    asyncio.run(_go())


def test_stale_marker_is_removed_before_spawn(tmp_path: Path) -> None:
    launcher = ScriptLauncher(SILENT)
    sup = _make_supervisor(tmp_path, launcher, startup_timeout_sec=0.5)
    project = _project(tmp_path)
    marker = project / ".rt-port"
    marker.write_text("1111", encoding="utf-8")

    async def _go() -> None:
        with pytest.raises(StartupFailedError):
            await sup.start(project)

    asyncio.run(_go())
    assert not marker.exists()


def test_unexpected_exit_while_running_resets_to_idle(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(40006, then="time.sleep(0.3); sys.exit(1)"))
    sup = _make_supervisor(tmp_path, launcher)
    project = _project(tmp_path)

    async def _go() -> None:
        assert await sup.start(project) == 40006
        await sup.wait_exit()
        await _wait_until(lambda: sup.phase is ServerPhase.IDLE)
        assert sup.status().running is False

    asyncio.run(_go())


def test_stop_escalates_to_sigkill_when_sigterm_is_ignored(tmp_path: Path) -> None:
    script = "\n".join(
        [
            "import signal, sys, time",
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)",
            f"print({PORT_LINE.format(port=40007)!r}, flush=True)",
            "time.sleep(60)",
        ]
    )
    launcher = ScriptLauncher(script)
    sup = _make_supervisor(tmp_path, launcher, stop_grace_sec=0.3)
    project = _project(tmp_path)

    async def _go() -> Optional[int]:
        await sup.start(project)
        process = sup.state.process
        assert process is not None
        await sup.stop_and_wait()
        return process.returncode

    returncode = asyncio.run(_go())
    assert returncode == -signal.SIGKILL


def test_stop_when_idle_is_a_noop(tmp_path: Path) -> None:
    sup = _make_supervisor(tmp_path, ScriptLauncher(SILENT))

    async def _go() -> None:
        await sup.stop_and_wait()
        assert sup.phase is ServerPhase.IDLE

    asyncio.run(_go())


def test_missing_bundle_fails_without_spawning(tmp_path: Path) -> None:
    launcher = ScriptLauncher(_announce(40008))
    sup = _make_supervisor(tmp_path, launcher, with_bundle=False)
    project = _project(tmp_path)

    async def _go() -> None:
        with pytest.raises(MissingBundleError):
            await sup.start(project)
        assert sup.phase is ServerPhase.IDLE

    asyncio.run(_go())
    assert launcher.launches == 0
