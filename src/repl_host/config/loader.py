"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 默认配置：`repl_host/assets/default.yaml`（见 `repl_host.config.defaults`）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import re
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class ReplHostRuntimeConfig(BaseModel):
    """
    JVM 运行时与 evaluation server 入口配置。

    说明：
    - `jvm_opts` 中的 `{project}` 会被替换为项目绝对路径；
    - 端口固定传 `--port 0`（临时端口），不在配置中暴露。
    """

    model_config = ConfigDict(extra="forbid")

    executable: str = Field(default="java", min_length=1)
    version_args: List[str] = Field(default_factory=lambda: ["-version"])
    version_check_timeout_sec: float = Field(default=10, gt=0)
    main_class: str = Field(default="clojure.main", min_length=1)
    main_args: List[str] = Field(default_factory=lambda: ["-m", "nrepl.cmdline"])
    middleware: Optional[str] = "[cider.nrepl/cider-middleware]"
    jvm_opts: List[str] = Field(default_factory=list)


class ReplHostClasspathConfig(BaseModel):
    """Classpath 组装配置（bundled 归档 + 项目构建工具）。"""

    model_config = ConfigDict(extra="forbid")

    class BuildTool(BaseModel):
        """项目构建工具：根目录存在 `descriptor` 时执行 `argv` 输出项目 classpath。"""

        model_config = ConfigDict(extra="forbid")

        descriptor: str = Field(min_length=1)
        argv: List[str] = Field(min_length=1)

    bundle_dir: Optional[str] = None
    archive_suffix: str = Field(default=".jar", min_length=1)
    timeout_sec: float = Field(default=120, gt=0)
    build_tools: List[BuildTool] = Field(default_factory=list)


class ReplHostSupervisorConfig(BaseModel):
    """Supervisor 超时与资源上限。"""

    model_config = ConfigDict(extra="forbid")

    startup_timeout_sec: float = Field(default=30, gt=0)
    stop_grace_sec: float = Field(default=3, ge=0)
    kill_wait_sec: float = Field(default=1, ge=0)
    stderr_capture_bytes: int = Field(default=64 * 1024, ge=0)


class ReplHostScannerConfig(BaseModel):
    """端口发现正则（从最具体到最宽泛；第一个捕获组必须是端口号）。"""

    model_config = ConfigDict(extra="forbid")

    patterns: List[str] = Field(default_factory=list, min_length=1)

    @field_validator("patterns")
    @classmethod
    def _validate_patterns(cls, value: List[str]) -> List[str]:
        """校验每个 pattern 可编译且至少有一个捕获组。"""

        for raw in value:
            try:
                compiled = re.compile(raw)
            except re.error as exc:
                raise ValueError(f"scanner.patterns contains an invalid regex: {raw!r} ({exc})") from exc
            if compiled.groups < 1:
                raise ValueError(f"scanner.patterns entry must capture the port: {raw!r}")
        return value


class ReplHostWorkerConfig(BaseModel):
    """worker 进程启动参数（argv 为空表示不启动 worker）。"""

    model_config = ConfigDict(extra="forbid")

    argv: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None


class ReplHostDependenciesConfig(BaseModel):
    """`resolve-dependencies` 的防抖窗口，以及依赖描述文件的轮询监听（`watch_interval_sec` 为 0 表示不监听）。"""

    model_config = ConfigDict(extra="forbid")

    debounce_sec: float = Field(default=3, ge=0)
    watch_files: List[str] = Field(
        default_factory=lambda: ["deps.edn", "project.clj", "shadow-cljs.edn", "build.boot", "package.json"]
    )
    watch_interval_sec: float = Field(default=1, ge=0)


class ReplHostBundleConfig(BaseModel):
    """bundled 库下载清单（仅由 `repl-host bundle` 使用）。"""

    model_config = ConfigDict(extra="forbid")

    class Artifact(BaseModel):
        """单个归档（文件名 + 下载 URL）。"""

        model_config = ConfigDict(extra="forbid")

        name: str = Field(min_length=1)
        url: str = Field(min_length=1)

        @field_validator("name")
        @classmethod
        def _validate_name(cls, value: str) -> str:
            """文件名不得包含路径分隔符（只允许写入 bundle 目录本身）。"""

            if "/" in value or "\\" in value or value in (".", ".."):
                raise ValueError("bundle.artifacts[].name must be a plain file name")
            return value

    timeout_sec: float = Field(default=60, gt=0)
    artifacts: List[Artifact] = Field(default_factory=list)


class ReplHostLoggingConfig(BaseModel):
    """日志级别与可选日志文件（stdout 保留给 JSON 输出）。"""

    model_config = ConfigDict(extra="forbid")

    level: str = Field(default="INFO")
    file: Optional[str] = None

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        """只接受标准 logging 级别名。"""

        v = str(value or "").strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"logging.level must be a standard level name; got: {value}")
        return v


class ReplHostConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    home_dir: str = Field(default=".repl_host", min_length=1)
    marker_file_name: str = Field(default=".rt-port", min_length=1)
    runtime: ReplHostRuntimeConfig = Field(default_factory=ReplHostRuntimeConfig)
    classpath: ReplHostClasspathConfig = Field(default_factory=ReplHostClasspathConfig)
    supervisor: ReplHostSupervisorConfig = Field(default_factory=ReplHostSupervisorConfig)
    scanner: ReplHostScannerConfig
    worker: ReplHostWorkerConfig = Field(default_factory=ReplHostWorkerConfig)
    dependencies: ReplHostDependenciesConfig = Field(default_factory=ReplHostDependenciesConfig)
    bundle: ReplHostBundleConfig = Field(default_factory=ReplHostBundleConfig)
    logging: ReplHostLoggingConfig = Field(default_factory=ReplHostLoggingConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]], *, with_defaults: bool = True) -> ReplHostConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `ReplHostConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    - with_defaults：是否以内置默认配置为第一层
    """

    merged: Dict[str, Any] = {}
    if with_defaults:
        from repl_host.config.defaults import load_default_config_dict

        _deep_merge(merged, load_default_config_dict())
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return ReplHostConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> ReplHostConfig:
    """
    加载内置默认配置 + 多个 overlay 文件，返回校验后的 `ReplHostConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
