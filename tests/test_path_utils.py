import os
from pathlib import Path

from stata_mcp_client.utils.path_utils import resolve_run_file_cwd


def test_empty_template_uses_file_directory(tmp_path: Path) -> None:
    do_file = tmp_path / "analysis" / "main.do"

    assert resolve_run_file_cwd(str(do_file)) == str(tmp_path / "analysis")


def test_workspace_variables_expand(tmp_path: Path) -> None:
    do_file = tmp_path / "analysis" / "main.do"

    resolved = resolve_run_file_cwd(
        str(do_file), template="${workspaceFolder}/data", workspace_root=str(tmp_path)
    )

    assert resolved == str(tmp_path / "data")


def test_file_dir_variable_and_unknown_variables(tmp_path: Path) -> None:
    do_file = tmp_path / "src" / "main.do"

    assert resolve_run_file_cwd(str(do_file), template="${fileDir}${bogus}/..") == str(tmp_path)


def test_relative_template_resolves_against_workspace(tmp_path: Path) -> None:
    resolved = resolve_run_file_cwd(
        str(tmp_path / "x.do"), template="output", workspace_root=str(tmp_path / "ws")
    )

    assert resolved == str(tmp_path / "ws" / "output")


def test_template_expanding_to_nothing_falls_back_to_file_directory(tmp_path: Path) -> None:
    do_file = tmp_path / "main.do"

    assert resolve_run_file_cwd(str(do_file), template="${workspaceFolder}") == os.path.normpath(str(tmp_path))


def test_home_prefix_expands(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))

    assert resolve_run_file_cwd("/any/main.do", template="~/stata") == str(tmp_path / "stata")
