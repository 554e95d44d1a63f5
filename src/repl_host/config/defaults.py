"""
默认配置加载器。

设计目标：
- 作为库被引用时，不依赖仓库相对路径即可运行
- 默认配置通过 `importlib.resources` 随 package 分发
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


def load_default_config_dict() -> Dict[str, Any]:
    """
    读取内置默认配置（YAML）并返回 dict。

    返回：
    - dict：用于与 overlays 做深度合并（overlay 语义由 `repl_host.config.loader` 定义）

    异常：
    - RuntimeError：读取失败或内容不是 mapping(dict)
    """

    try:
        from importlib.resources import files

        text = files("repl_host.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    except (ModuleNotFoundError, FileNotFoundError) as exc:  # pragma: no cover
        raise RuntimeError("failed to load embedded default config (assets not available)") from exc

    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj


def overlay_paths_from_env(*, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    从 `REPL_HOST_CONFIG` 读取 overlay 路径列表（逗号/分号分隔；保序、去空白）。

    参数：
    - env：环境变量映射（默认 `os.environ`）
    """

    raw = str((env if env is not None else os.environ).get("REPL_HOST_CONFIG") or "")
    out: list[Path] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            out.append(Path(s).expanduser())
    return out
