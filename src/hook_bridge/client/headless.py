"""Fallback: run a job in a disposable, non-interactive host instance."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from hook_bridge.commands import CommandKind, CommandRequest
from hook_bridge.config import HeadlessSettings
from hook_bridge.host.engines import TestMode

logger = logging.getLogger(__name__)

PROJECT_VERSION_FILE = Path("ProjectSettings") / "ProjectVersion.txt"
VERSION_KEY = "m_EditorVersion:"
MAX_SEARCH_DEPTH = 10
TIMEOUT_EXIT_CODE = 1

EmitLine = Callable[[str], None]


class HeadlessLaunchError(RuntimeError):
    """Raised when a headless host or the workspace mirror cannot be prepared."""


def find_project_root(start: Path | None = None) -> Path:
    """Directory holding ``ProjectSettings/ProjectVersion.txt`` at or above ``start``."""

    origin = (start or Path.cwd()).resolve()
    directory = origin
    for _ in range(MAX_SEARCH_DEPTH):
        if (directory / PROJECT_VERSION_FILE).is_file():
            return directory
        if directory.parent == directory:
            break
        directory = directory.parent
    logger.warning("Could not find %s, using %s", PROJECT_VERSION_FILE, origin)
    return origin


def read_host_version(project_root: Path) -> str | None:
    try:
        content = (project_root / PROJECT_VERSION_FILE).read_text("utf-8")
    except OSError as exc:
        logger.warning("Cannot read host version: %s", exc)
        return None
    for line in content.splitlines():
        if line.startswith(VERSION_KEY):
            version = line[len(VERSION_KEY) :].strip()
            return version or None
    return None


def default_hub_dirs(
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> list[Path]:
    """Standard per-version install roots for the current platform."""

    platform = platform or sys.platform
    env = os.environ if environ is None else environ
    if platform.startswith("win"):
        dirs = [Path("C:/Program Files/Unity/Hub/Editor")]
        program_files = env.get("ProgramFiles")
        if program_files:
            candidate = Path(program_files) / "Unity" / "Hub" / "Editor"
            if candidate not in dirs:
                dirs.append(candidate)
        return dirs
    if platform == "darwin":
        return [Path("/Applications/Unity/Hub/Editor")]
    return [Path(env.get("HOME", str(Path.home()))) / "Unity" / "Hub" / "Editor"]


def executable_in_install(install_dir: Path, platform: str | None = None) -> Path:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return install_dir / "Editor" / "Unity.exe"
    if platform == "darwin":
        return install_dir / "Unity.app" / "Contents" / "MacOS" / "Unity"
    return install_dir / "Editor" / "Unity"


def find_host_executable(
    version: str | None,
    *,
    explicit: Path | None = None,
    hub_dirs: Sequence[Path] | None = None,
    platform: str | None = None,
) -> Path | None:
    """Resolve the host executable: explicit path, exact version, newest install."""

    if explicit is not None:
        if explicit.is_file():
            return explicit
        logger.warning("Configured host executable does not exist: %s", explicit)

    roots = list(hub_dirs) if hub_dirs is not None else default_hub_dirs(platform)
    if version:
        for root in roots:
            candidate = executable_in_install(root / version, platform)
            if candidate.is_file():
                logger.info("Found host %s in %s", version, root)
                return candidate

    for root in roots:
        if not root.is_dir():
            continue
        for install in sorted((p for p in root.iterdir() if p.is_dir()), reverse=True):
            candidate = executable_in_install(install, platform)
            if candidate.is_file():
                logger.warning(
                    "Host %s not installed, falling back to %s",
                    version or "(unknown version)",
                    install.name,
                )
                return candidate
    return None


def build_test_command(
    executable: Path,
    project_path: Path,
    mode: TestMode,
    categories: Sequence[str] = (),
) -> list[str]:
    args = [
        str(executable),
        "-projectPath",
        str(project_path),
        "-batchmode",
        "-nographics",
        "-runTests",
        "-testPlatform",
        mode.value,
    ]
    if categories:
        args.extend(["-testFilter", "category=" + ";".join(categories)])
    args.extend(["-logFile", "-"])
    return args


def build_compile_command(executable: Path, project_path: Path, method: str) -> list[str]:
    return [
        str(executable),
        "-projectPath",
        str(project_path),
        "-batchmode",
        "-nographics",
        "-quit",
        "-executeMethod",
        method,
        "-logFile",
        "-",
    ]


def background_project_path(project_root: Path, suffix: str) -> Path:
    return project_root.parent / f"{project_root.name}{suffix}"


def sync_background_project(
    project_root: Path,
    suffix: str,
    *,
    emit: EmitLine,
    rclone: str = "rclone",
) -> Path:
    """Mirror ``project_root`` next to itself with ``rclone sync``."""

    executable = shutil.which(rclone)
    if executable is None:
        raise HeadlessLaunchError(
            "rclone not found. Background project mode requires rclone "
            "(https://rclone.org/install/).",
        )
    destination = background_project_path(project_root, suffix)
    destination.mkdir(parents=True, exist_ok=True)
    emit(f"Syncing project to background project: {project_root} -> {destination}")
    try:
        completed = subprocess.run(  # noqa: S603
            [executable, "sync", str(project_root), str(destination)],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise HeadlessLaunchError(f"rclone sync failed: {exc}") from exc
    if completed.returncode != 0:
        detail = completed.stderr.strip() or f"exit code {completed.returncode}"
        raise HeadlessLaunchError(f"rclone sync failed: {detail}")
    emit("Sync completed")
    return destination


def run_streaming_process(
    args: Sequence[str],
    *,
    emit: EmitLine,
    timeout_seconds: float,
    cwd: Path | None = None,
) -> int:
    """Run ``args`` streaming merged output to ``emit``; return its exit code."""

    try:
        process = subprocess.Popen(  # noqa: S603
            list(args),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        raise HeadlessLaunchError(f"Failed to launch {args[0]}: {exc}") from exc

    reader = threading.Thread(
        target=_pump_output,
        args=(process, emit),
        name="hook-bridge-headless-output",
        daemon=True,
    )
    reader.start()

    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            reader.join(timeout=5)
            return returncode
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            reader.join(timeout=5)
            emit(f"Headless host timed out after {timeout_seconds:g} s")
            return TIMEOUT_EXIT_CODE
        time.sleep(0.1)


def _pump_output(process: subprocess.Popen[str], emit: EmitLine) -> None:
    if process.stdout is None:
        return
    for line in process.stdout:
        emit(line.rstrip("\r\n"))


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


class HeadlessLauncher:
    """Runs a command in a fresh batch-mode host when no host is listening."""

    def __init__(
        self,
        *,
        settings: HeadlessSettings | None = None,
        emit: EmitLine,
        hub_dirs: Sequence[Path] | None = None,
    ) -> None:
        self._settings = settings or HeadlessSettings()
        self._emit = emit
        self._hub_dirs = hub_dirs

    def run(self, request: CommandRequest, project_root: Path) -> int:
        version = read_host_version(project_root)
        executable = find_host_executable(
            version,
            explicit=self._settings.host_path,
            hub_dirs=self._hub_dirs,
        )
        if executable is None:
            self._emit(
                f"Host executable not found for version {version or '(unknown)'}; "
                "set HOOK_BRIDGE_HOST_PATH or pass --hostPath.",
            )
            return 1

        if request.command is CommandKind.COMPILE_CHECK:
            args = build_compile_command(executable, project_root, self._settings.compile_method)
        else:
            args = build_test_command(executable, project_root, request.mode, request.categories)

        self._emit(f"Launching headless host: {executable}")
        logger.info("Headless command: %s", " ".join(args))
        try:
            return run_streaming_process(
                args,
                emit=self._emit,
                timeout_seconds=self._settings.timeout_seconds,
                cwd=project_root,
            )
        except HeadlessLaunchError as exc:
            self._emit(str(exc))
            return 1
