from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest
from conftest import write_fake_executable

from hook_bridge.client.headless import (
    HeadlessLauncher,
    HeadlessLaunchError,
    background_project_path,
    build_compile_command,
    build_test_command,
    default_hub_dirs,
    executable_in_install,
    find_host_executable,
    find_project_root,
    read_host_version,
    run_streaming_process,
    sync_background_project,
)
from hook_bridge.commands import CommandKind, CommandRequest
from hook_bridge.config import HeadlessSettings
from hook_bridge.host.engines import TestMode

pytestmark = [
    allure.epic("Hook Client"),
    allure.feature("Headless Fallback"),
]

needs_posix_shell = pytest.mark.skipif(os.name == "nt", reason="uses a POSIX sh launcher")


def _project(tmp_path: Path, version: str = "2022.3.10f1") -> Path:
    root = tmp_path / "Game"
    settings_dir = root / "ProjectSettings"
    settings_dir.mkdir(parents=True)
    (settings_dir / "ProjectVersion.txt").write_text(
        f"m_EditorVersion: {version}\nm_EditorVersionWithRevision: {version} (abc123)\n",
        "utf-8",
    )
    return root


def _install(hub: Path, version: str, platform: str = "linux") -> Path:
    executable = executable_in_install(hub / version, platform)
    executable.parent.mkdir(parents=True)
    executable.write_text("", "utf-8")
    return executable


def test_project_root_is_found_from_nested_directory(tmp_path: Path) -> None:
    root = _project(tmp_path)
    nested = root / "Assets" / "Scripts"
    nested.mkdir(parents=True)

    assert find_project_root(nested) == root.resolve()


def test_project_root_defaults_to_start_directory(tmp_path: Path, caplog) -> None:
    with caplog.at_level("WARNING"):
        assert find_project_root(tmp_path) == tmp_path.resolve()
    assert "Could not find" in caplog.text


def test_host_version_is_read_from_project_settings(tmp_path: Path) -> None:
    assert read_host_version(_project(tmp_path)) == "2022.3.10f1"
    assert read_host_version(tmp_path) is None


def test_default_hub_dirs_per_platform() -> None:
    assert default_hub_dirs("darwin", {}) == [Path("/Applications/Unity/Hub/Editor")]
    assert default_hub_dirs("linux", {"HOME": "/home/dev"}) == [
        Path("/home/dev/Unity/Hub/Editor"),
    ]
    windows = default_hub_dirs("win32", {"ProgramFiles": "D:/Apps"})
    assert windows == [Path("C:/Program Files/Unity/Hub/Editor"), Path("D:/Apps/Unity/Hub/Editor")]


def test_explicit_executable_wins(tmp_path: Path) -> None:
    explicit = tmp_path / "custom" / "Unity"
    explicit.parent.mkdir()
    explicit.write_text("", "utf-8")
    hub = tmp_path / "hub"
    _install(hub, "2022.3.10f1")

    found = find_host_executable("2022.3.10f1", explicit=explicit, hub_dirs=[hub])

    assert found == explicit


def test_exact_version_is_preferred(tmp_path: Path) -> None:
    hub = tmp_path / "hub"
    wanted = _install(hub, "2022.3.10f1")
    _install(hub, "2023.2.1f1")

    found = find_host_executable(
        "2022.3.10f1",
        explicit=tmp_path / "missing" / "Unity",
        hub_dirs=[hub],
        platform="linux",
    )

    assert found == wanted


def test_newest_install_is_used_when_version_is_missing(tmp_path: Path, caplog) -> None:
    hub = tmp_path / "hub"
    _install(hub, "2021.3.5f1")
    newest = _install(hub, "2023.2.1f1")

    with caplog.at_level("WARNING"):
        found = find_host_executable("2022.3.10f1", hub_dirs=[hub], platform="linux")

    assert found == newest
    assert "falling back to 2023.2.1f1" in caplog.text


def test_no_install_resolves_to_none(tmp_path: Path) -> None:
    assert find_host_executable("2022.3.10f1", hub_dirs=[tmp_path / "absent"]) is None


def test_test_command_carries_mode_and_categories() -> None:
    args = build_test_command(
        Path("/opt/Unity"),
        Path("/work/game"),
        TestMode.PLAY_MODE,
        ["A", "B"],
    )

    assert args[:3] == [str(Path("/opt/Unity")), "-projectPath", str(Path("/work/game"))]
    assert "-batchmode" in args
    assert args[args.index("-testPlatform") + 1] == "PlayMode"
    assert args[args.index("-testFilter") + 1] == "category=A;B"
    assert args[-2:] == ["-logFile", "-"]


def test_test_command_without_categories_has_no_filter() -> None:
    args = build_test_command(Path("/opt/Unity"), Path("/work/game"), TestMode.EDIT_MODE)

    assert "-testFilter" not in args


def test_compile_command_executes_method_and_quits() -> None:
    args = build_compile_command(Path("/opt/Unity"), Path("/work/game"), "Checks.Compile")

    assert "-quit" in args
    assert args[args.index("-executeMethod") + 1] == "Checks.Compile"


def test_background_project_sits_next_to_project(tmp_path: Path) -> None:
    root = tmp_path / "Game"

    assert background_project_path(root, "-BackgroundWorker") == tmp_path / "Game-BackgroundWorker"


def test_sync_without_rclone_raises(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PATH", str(tmp_path / "empty"))
    lines: list[str] = []

    with pytest.raises(HeadlessLaunchError, match="rclone not found"):
        sync_background_project(_project(tmp_path), "-Mirror", emit=lines.append)
    assert lines == []


@needs_posix_shell
def test_sync_invokes_rclone_and_reports(tmp_path: Path, monkeypatch) -> None:
    bin_dir = tmp_path / "bin"
    calls = tmp_path / "calls.txt"
    write_fake_executable(
        bin_dir / "rclone",
        f"import sys\nopen({str(calls)!r}, 'w').write(' '.join(sys.argv[1:]))",
    )
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ['PATH']}")
    root = _project(tmp_path)
    lines: list[str] = []

    destination = sync_background_project(root, "-Mirror", emit=lines.append)

    assert destination == tmp_path / "Game-Mirror"
    assert destination.is_dir()
    assert calls.read_text("utf-8") == f"sync {root} {destination}"
    assert lines[-1] == "Sync completed"


@needs_posix_shell
def test_failed_sync_raises(tmp_path: Path, monkeypatch) -> None:
    bin_dir = tmp_path / "bin"
    write_fake_executable(
        bin_dir / "rclone",
        "import sys\nsys.stderr.write('permission denied')\nsys.exit(3)",
    )
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ['PATH']}")

    with pytest.raises(HeadlessLaunchError, match="permission denied"):
        sync_background_project(_project(tmp_path), "-Mirror", emit=lambda line: None)


@needs_posix_shell
def test_streaming_process_relays_output_and_exit_code(tmp_path: Path) -> None:
    script = write_fake_executable(
        tmp_path / "tool",
        "import sys\nprint('first')\nprint('second', file=sys.stderr)\nsys.exit(4)",
    )
    lines: list[str] = []

    exit_code = run_streaming_process([str(script)], emit=lines.append, timeout_seconds=30)

    assert exit_code == 4
    assert sorted(lines) == ["first", "second"]


@needs_posix_shell
def test_streaming_process_is_killed_on_timeout(tmp_path: Path) -> None:
    script = write_fake_executable(tmp_path / "tool", "import time\ntime.sleep(30)")
    lines: list[str] = []

    exit_code = run_streaming_process([str(script)], emit=lines.append, timeout_seconds=0.5)

    assert exit_code == 1
    assert lines[-1] == "Headless host timed out after 0.5 s"


def test_streaming_process_launch_failure_raises(tmp_path: Path) -> None:
    with pytest.raises(HeadlessLaunchError, match="Failed to launch"):
        run_streaming_process([str(tmp_path / "nope")], emit=lambda line: None, timeout_seconds=1)


def test_launcher_without_executable_fails(tmp_path: Path) -> None:
    lines: list[str] = []
    launcher = HeadlessLauncher(emit=lines.append, hub_dirs=[tmp_path / "hub"])

    exit_code = launcher.run(CommandRequest(), _project(tmp_path))

    assert exit_code == 1
    assert lines[0].startswith("Host executable not found for version 2022.3.10f1")


@needs_posix_shell
def test_launcher_runs_test_command_in_project(tmp_path: Path) -> None:
    host = write_fake_executable(
        tmp_path / "host" / "Unity",
        "import os, sys\nprint(os.getcwd())\nprint(' '.join(sys.argv[1:]))\nsys.exit(2)",
    )
    root = _project(tmp_path)
    lines: list[str] = []
    launcher = HeadlessLauncher(
        settings=HeadlessSettings(host_path=host, timeout_seconds=30),
        emit=lines.append,
        hub_dirs=[],
    )

    exit_code = launcher.run(
        CommandRequest(mode=TestMode.PLAY_MODE, categories=("Smoke",)),
        root,
    )

    assert exit_code == 2
    assert lines[0] == f"Launching headless host: {host}"
    assert lines[1] == str(root.resolve())
    assert "-runTests -testPlatform PlayMode -testFilter category=Smoke" in lines[2]


@needs_posix_shell
def test_launcher_runs_compile_method(tmp_path: Path) -> None:
    host = write_fake_executable(
        tmp_path / "host" / "Unity",
        "import sys\nprint(' '.join(sys.argv[1:]))",
    )
    lines: list[str] = []
    launcher = HeadlessLauncher(
        settings=HeadlessSettings(host_path=host, compile_method="Checks.Compile"),
        emit=lines.append,
        hub_dirs=[],
    )

    exit_code = launcher.run(CommandRequest(command=CommandKind.COMPILE_CHECK), _project(tmp_path))

    assert exit_code == 0
    assert "-executeMethod Checks.Compile" in lines[-1]
