from __future__ import annotations

from pathlib import Path

from repl_host.workspace import ActiveEditor, WorkspaceFolder, WorkspaceSnapshot, find_project_dir, find_project_workspace


def _folders(tmp_path: Path, *names: str) -> tuple[WorkspaceFolder, ...]:
    out = []
    for name in names:
        p = tmp_path / name
        p.mkdir()
        out.append(WorkspaceFolder.from_path(p))
    return tuple(out)


def test_folder_containing_active_file_wins(tmp_path: Path) -> None:
    a, b = _folders(tmp_path, "a", "b")
    active = b.path / "src" / "core.clj"
    assert find_project_workspace([a, b], active) == b


def test_first_folder_is_used_without_active_file(tmp_path: Path) -> None:
    a, b = _folders(tmp_path, "a", "b")
    assert find_project_workspace([a, b]) == a


def test_sibling_prefix_is_not_containment(tmp_path: Path) -> None:
    app, app2 = _folders(tmp_path, "app", "app2")
    active = app2.path / "x.clj"
    assert find_project_workspace([app, app2], active) == app2


def test_excluded_folders_are_skipped(tmp_path: Path) -> None:
    host, proj = _folders(tmp_path, "host", "proj")
    active = host.path / "main.clj"
    assert find_project_workspace([host, proj], active, exclude=[host.path]) == proj


def test_excluded_folder_is_used_when_nothing_else_exists(tmp_path: Path) -> None:
    (host,) = _folders(tmp_path, "host")
    assert find_project_workspace([host], exclude=[host.path]) == host


def test_no_folders_means_no_project() -> None:
    assert find_project_workspace([]) is None
    assert find_project_dir(WorkspaceSnapshot()) is None


def test_find_project_dir_uses_snapshot_active_editor(tmp_path: Path) -> None:
    a, b = _folders(tmp_path, "a", "b")
    snap = WorkspaceSnapshot(folders=(a, b), active_editor=ActiveEditor(file_name=str(b.path / "core.clj")))
    assert find_project_dir(snap) == b.path
