from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from repl_host.config.loader import ReplHostConfig


@dataclass(frozen=True)
class HostPaths:
    """repl-host 数据目录与关键路径集合。"""

    home_dir: Path
    bundle_dir: Path


def get_host_paths(config: ReplHostConfig, *, user_home: Optional[Path] = None) -> HostPaths:
    """
    获取 repl-host 数据目录（默认 `~/.repl_host`）与 bundled 库目录（默认 `<home_dir>/lib`）。

    参数：
    - config：已校验的配置
    - user_home：用户 home（测试可注入；默认 `Path.home()`）
    """

    base = Path(user_home) if user_home is not None else Path.home()
    home = Path(config.home_dir).expanduser()
    if not home.is_absolute():
        home = base / home
    raw_bundle = config.classpath.bundle_dir
    if raw_bundle:
        bundle = Path(raw_bundle).expanduser()
        if not bundle.is_absolute():
            bundle = home / bundle
    else:
        bundle = home / "lib"
    return HostPaths(home_dir=home.resolve(), bundle_dir=bundle.resolve())


def marker_file_path(project_dir: Path, *, file_name: str = ".rt-port") -> Path:
    """
    项目级端口公布文件路径（`<project>/.rt-port`）。

    参数：
    - project_dir：项目根目录
    - file_name：marker 文件名（配置项 `marker_file_name`）
    """

    return (Path(project_dir).resolve() / file_name).resolve()


def read_marker_port(path: Path) -> Optional[int]:
    """
    读取 marker 文件中的端口（best-effort）。

    返回：
    - int：文件存在且内容为正整数
    - None：文件不存在或内容无效
    """

    p = Path(path)
    if not p.exists():
        return None
    try:
        port = int(p.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return port if port > 0 else None
