"""
编辑器工作区模型与项目定位。

说明：
- 工作区由编辑器侧提供（多个 folder + 可选的活动文件）；这里只做纯数据与纯函数；
- 项目目录选择规则：包含活动文件的 folder 优先；否则第一个 folder；
  位于 `exclude` 目录之内（例如 repl-host 自身的安装目录）的 folder 会被跳过，除非只剩下它们。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence


@dataclass(frozen=True)
class WorkspaceFolder:
    """编辑器工作区中的一个根目录。"""

    name: str
    path: Path

    @classmethod
    def from_path(cls, path: Path, *, name: Optional[str] = None) -> "WorkspaceFolder":
        p = Path(path).expanduser().resolve()
        return cls(name=name or p.name, path=p)

    @property
    def uri(self) -> str:
        return self.path.as_uri()


@dataclass(frozen=True)
class ActiveEditor:
    """编辑器当前活动文件。"""

    file_name: str
    language_id: str = "clojure"


@dataclass(frozen=True)
class WorkspaceSnapshot:
    """某一时刻的工作区状态（folders + 活动文件）。"""

    folders: tuple[WorkspaceFolder, ...] = field(default_factory=tuple)
    active_editor: Optional[ActiveEditor] = None


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def find_project_workspace(
    folders: Sequence[WorkspaceFolder],
    active_file: Optional[Path] = None,
    *,
    exclude: Sequence[Path] = (),
) -> Optional[WorkspaceFolder]:
    """
    从工作区 folders 中选出当前项目。

    参数：
    - folders：工作区根目录列表（保序）
    - active_file：活动文件路径（可选）
    - exclude：需要跳过的目录（folder 位于其中即视为非项目）

    返回：
    - WorkspaceFolder：选中的项目；folders 为空时返回 None
    """

    if not folders:
        return None
    excluded = [Path(p).expanduser().resolve() for p in exclude]

    def is_project(folder: WorkspaceFolder) -> bool:
        return not any(_is_within(folder.path, root) for root in excluded)

    if active_file is not None:
        active = Path(active_file).expanduser().resolve()
        for folder in folders:
            if _is_within(active, folder.path) and is_project(folder):
                return folder

    for folder in folders:
        if is_project(folder):
            return folder
    return folders[0]


def find_project_dir(snapshot: WorkspaceSnapshot, *, exclude: Sequence[Path] = ()) -> Optional[Path]:
    """从工作区快照中定位项目目录（见 `find_project_workspace`）。"""

    active = Path(snapshot.active_editor.file_name) if snapshot.active_editor is not None else None
    folder = find_project_workspace(snapshot.folders, active, exclude=exclude)
    return folder.path if folder is not None else None
