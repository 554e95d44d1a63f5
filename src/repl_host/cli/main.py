"""
repl-host CLI。

子命令：
- `start <project>`：前台启动 evaluation server，输出端口后一直运行到收到 SIGINT/SIGTERM 或 server 退出
- `port <project>`：读取项目 marker 文件中公布的端口
- `classpath <project>`：输出将要使用的 classpath
- `bundle`：下载 bundled 库
- `serve`：启动 worker 会话并处理其消息（编辑器事件以 JSON lines 写到 stdout）
- `config`：输出生效配置

约束：
- 使用 argparse；stdout 只输出机器可读 JSON，日志写 stderr（可选同时写文件）
- 失败时也输出 JSON：`{"ok": false, "error": {"code", "message", "instructions"}}`
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from repl_host.app import ReplHostApp, build_supervisor
from repl_host.config.defaults import overlay_paths_from_env
from repl_host.config.loader import ReplHostConfig, load_config
from repl_host.core.errors import ReplHostError
from repl_host.core.utf8 import ensure_utf8_stdio
from repl_host.ipc.editor import StreamEditorHost
from repl_host.runtime.bundle import bundle_dependencies
from repl_host.runtime.classpath import ClasspathResolver
from repl_host.runtime.paths import HostPaths, get_host_paths, marker_file_path, read_marker_port
from repl_host.workspace import ActiveEditor, WorkspaceFolder, WorkspaceSnapshot

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 2
EXIT_CONFIG = 10
EXIT_HOST_ERROR = 20
EXIT_NOT_FOUND = 21

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text, flush=True)


def _error_obj(code: str, message: str, instructions: Optional[str] = None) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message, "instructions": instructions}}


def _dump_host_error(exc: ReplHostError, *, pretty: bool) -> None:
    _dump_json_to_stdout(_error_obj(exc.code, exc.message, exc.instructions), pretty=pretty)


def _setup_logging(config: Optional[ReplHostConfig], cli_level: Optional[str]) -> None:
    """
    配置 root logger：stderr handler + 可选文件 handler。

    说明：
    - `--log-level` 优先于配置 `logging.level`；
    - stdout 保留给 JSON 输出，日志永远不写 stdout。
    """

    level_name = (cli_level or (config.logging.level if config is not None else "INFO")).upper()
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config is not None and config.logging.file:
        log_path = Path(config.logging.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=_LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _load_effective_config(args: argparse.Namespace) -> ReplHostConfig:
    """内置默认配置 + `REPL_HOST_CONFIG` overlays + `--config` overlays（后者覆盖前者）。"""

    overlays = overlay_paths_from_env() + [Path(p).expanduser() for p in (args.config or [])]
    return load_config(overlays)


def _project_dir(raw: str) -> Path:
    p = Path(raw).expanduser().resolve()
    if not p.is_dir():
        raise FileNotFoundError(f"project directory not found: {p}")
    return p


async def _run_start(config: ReplHostConfig, paths: HostPaths, project: Path, *, pretty: bool) -> int:
    supervisor = build_supervisor(config, paths)
    port = await supervisor.start(project)
    _dump_json_to_stdout(
        {
            "ok": True,
            "project": str(project),
            "port": port,
            "marker_file": str(marker_file_path(project, file_name=config.marker_file_name)),
        },
        pretty=pretty,
    )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            pass

    waiters = [
        loop.create_task(stop_requested.wait()),
        loop.create_task(supervisor.wait_exit()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            task.cancel()
        await supervisor.stop_and_wait()
    if not stop_requested.is_set():
        logger.error("Evaluation server exited unexpectedly")
        return EXIT_HOST_ERROR
    return EXIT_OK


async def _run_serve(config: ReplHostConfig, paths: HostPaths, args: argparse.Namespace) -> int:
    folders = tuple(WorkspaceFolder.from_path(Path(p)) for p in (args.project or []))
    active = ActiveEditor(file_name=str(Path(args.active_file).expanduser().resolve())) if args.active_file else None
    editor = StreamEditorHost(WorkspaceSnapshot(folders=folders, active_editor=active))
    app = ReplHostApp(
        config,
        editor=editor,
        paths=paths,
        exclude=[Path(p) for p in (args.exclude or [])],
    )
    return await app.run()


def _handle_start(config: ReplHostConfig, args: argparse.Namespace) -> int:
    project = _project_dir(args.project)
    return asyncio.run(_run_start(config, get_host_paths(config), project, pretty=args.pretty))


def _handle_port(config: ReplHostConfig, args: argparse.Namespace) -> int:
    project = _project_dir(args.project)
    marker = marker_file_path(project, file_name=config.marker_file_name)
    port = read_marker_port(marker)
    _dump_json_to_stdout(
        {"ok": port is not None, "project": str(project), "marker_file": str(marker), "port": port},
        pretty=args.pretty,
    )
    return EXIT_OK if port is not None else EXIT_NOT_FOUND


def _handle_classpath(config: ReplHostConfig, args: argparse.Namespace) -> int:
    project = _project_dir(args.project)
    paths = get_host_paths(config)
    classpath = asyncio.run(ClasspathResolver(config.classpath).resolve(paths.bundle_dir, project))
    _dump_json_to_stdout(
        {
            "ok": True,
            "project": str(project),
            "bundled_dir": str(paths.bundle_dir),
            "bundled_count": classpath.bundled_count,
            "entries": list(classpath.entries),
        },
        pretty=args.pretty,
    )
    return EXIT_OK


def _handle_bundle(config: ReplHostConfig, args: argparse.Namespace) -> int:
    lib_dir = Path(args.lib_dir).expanduser() if args.lib_dir else get_host_paths(config).bundle_dir
    report = asyncio.run(
        bundle_dependencies(lib_dir, config.bundle.artifacts, timeout_sec=config.bundle.timeout_sec)
    )
    _dump_json_to_stdout({"ok": True, **report.to_dict()}, pretty=args.pretty)
    return EXIT_OK


def _handle_serve(config: ReplHostConfig, args: argparse.Namespace) -> int:
    if not config.worker.argv:
        _dump_json_to_stdout(_error_obj("WORKER_NOT_CONFIGURED", "worker.argv is not configured"), pretty=args.pretty)
        return EXIT_CONFIG
    return asyncio.run(_run_serve(config, get_host_paths(config), args))


def _handle_config(config: ReplHostConfig, args: argparse.Namespace) -> int:
    _dump_json_to_stdout({"ok": True, "config": config.model_dump(mode="json")}, pretty=args.pretty)
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="repl-host", description="Evaluation server supervisor and worker IPC host")
    parser.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML overlay (repeatable; applied after REPL_HOST_CONFIG)",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: from config)")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")

    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start the evaluation server for a project (foreground)")
    start.add_argument("project", help="Project directory")

    port = sub.add_parser("port", help="Print the port published in the project's marker file")
    port.add_argument("project", help="Project directory")

    cp = sub.add_parser("classpath", help="Print the classpath used for a project")
    cp.add_argument("project", help="Project directory")

    bundle = sub.add_parser("bundle", help="Download the bundled libraries")
    bundle.add_argument("--lib-dir", default=None, help="Target directory (default: bundled library directory)")

    serve = sub.add_parser("serve", help="Run the worker session and route its messages")
    serve.add_argument("--project", action="append", default=[], help="Workspace folder (repeatable)")
    serve.add_argument("--active-file", default=None, help="Active editor file")
    serve.add_argument("--exclude", action="append", default=[], help="Folder never treated as a project (repeatable)")

    sub.add_parser("config", help="Print the effective configuration")
    return parser


_HANDLERS = {
    "start": _handle_start,
    "port": _handle_port,
    "classpath": _handle_classpath,
    "bundle": _handle_bundle,
    "serve": _handle_serve,
    "config": _handle_config,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）
    """

    ensure_utf8_stdio()

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：--help 为 0，参数错误为 2
        code = getattr(exc, "code", EXIT_USAGE)
        if code is None:
            return EXIT_USAGE
        return int(code)

    try:
        config = _load_effective_config(args)
    except (ValidationError, ValueError, FileNotFoundError) as exc:
        _setup_logging(None, args.log_level)
        logger.error("Invalid configuration: %s", exc)
        _dump_json_to_stdout(_error_obj("CONFIG_INVALID", str(exc)), pretty=args.pretty)
        return EXIT_CONFIG

    _setup_logging(config, args.log_level)

    handler = _HANDLERS[args.command]
    try:
        return handler(config, args)
    except ReplHostError as exc:
        logger.error("%s: %s", exc.code, exc.message)
        _dump_host_error(exc, pretty=args.pretty)
        return EXIT_HOST_ERROR
    except FileNotFoundError as exc:
        _dump_json_to_stdout(_error_obj("NOT_FOUND", str(exc)), pretty=args.pretty)
        return EXIT_NOT_FOUND
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
