from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from repl_host.cli.main import main


def _parse_last_json(text: str) -> Dict[str, Any]:
    lines = [line for line in text.splitlines() if line.strip()]
    assert lines, "expected JSON output on stdout"
    return json.loads(lines[-1])


def _write_overlay(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _no_env_overlays(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REPL_HOST_CONFIG", raising=False)


def test_help_exits_zero(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--help"]) == 0
    assert "repl-host" in capsys.readouterr().out


def test_missing_subcommand_is_usage_error() -> None:
    assert main([]) == 2


def test_config_prints_effective_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    overlay = _write_overlay(tmp_path / "o.yaml", "supervisor:\n  startup_timeout_sec: 5\n")

    assert main(["--config", str(overlay), "config"]) == 0

    obj = _parse_last_json(capsys.readouterr().out)
    assert obj["ok"] is True
    assert obj["config"]["supervisor"]["startup_timeout_sec"] == 5
    assert obj["config"]["marker_file_name"] == ".rt-port"


def test_invalid_config_exits_with_config_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    overlay = _write_overlay(tmp_path / "bad.yaml", "supervisor:\n  startup_timeout_sec: -1\n")

    assert main(["--config", str(overlay), "config"]) == 10

    obj = _parse_last_json(capsys.readouterr().out)
    assert obj["ok"] is False
    assert obj["error"]["code"] == "CONFIG_INVALID"


def test_port_reads_marker_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / ".rt-port").write_text("40123", encoding="utf-8")

    assert main(["port", str(tmp_path)]) == 0

    obj = _parse_last_json(capsys.readouterr().out)
    assert obj["ok"] is True
    assert obj["port"] == 40123


def test_port_without_marker_is_not_found(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["port", str(tmp_path)]) == 21

    obj = _parse_last_json(capsys.readouterr().out)
    assert obj["ok"] is False
    assert obj["port"] is None


def test_port_for_missing_project_dir(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["port", str(tmp_path / "nope")]) == 21
    assert _parse_last_json(capsys.readouterr().out)["error"]["code"] == "NOT_FOUND"


def test_classpath_lists_bundled_archives(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    lib = tmp_path / "lib"
    lib.mkdir()
    (lib / "b.jar").write_bytes(b"")
    (lib / "a.jar").write_bytes(b"")
    (lib / "notes.txt").write_text("x", encoding="utf-8")
    project = tmp_path / "proj"
    project.mkdir()
    overlay = _write_overlay(tmp_path / "o.yaml", f"classpath:\n  bundle_dir: {json.dumps(str(lib))}\n")

    assert main(["--config", str(overlay), "classpath", str(project)]) == 0

    obj = _parse_last_json(capsys.readouterr().out)
    assert obj["bundled_count"] == 2
    assert obj["entries"] == [str((lib / "a.jar").resolve()), str((lib / "b.jar").resolve())]


def test_classpath_without_bundle_reports_host_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = tmp_path / "proj"
    project.mkdir()
    overlay = _write_overlay(
        tmp_path / "o.yaml", f"classpath:\n  bundle_dir: {json.dumps(str(tmp_path / 'missing'))}\n"
    )

    assert main(["--config", str(overlay), "classpath", str(project)]) == 20

    err = _parse_last_json(capsys.readouterr().out)["error"]
    assert err["code"] == "MISSING_BUNDLE"
    assert "repl-host bundle" in err["instructions"]


def test_serve_requires_worker_argv(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    overlay = _write_overlay(tmp_path / "o.yaml", "worker:\n  argv: []\n")

    assert main(["--config", str(overlay), "serve"]) == 10
    assert _parse_last_json(capsys.readouterr().out)["error"]["code"] == "WORKER_NOT_CONFIGURED"
