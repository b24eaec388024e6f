"""Runtime configuration for the host channel, jobs and hook clients."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEFAULT_PREFERENCES_PATH = Path("~/.hook_bridge/preferences.json")
MAX_PORT = 65_535


@dataclass(slots=True)
class ChannelSettings:
    """Command channel listener settings."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    startup_timeout_seconds: float = 10.0
    shutdown_timeout_seconds: int = 5


@dataclass(slots=True)
class CompileCheckSettings:
    """Compile check state machine limits."""

    timeout_seconds: float = 600.0
    grace_seconds: float = 5.0
    error_marker: str = "error CS"


@dataclass(slots=True)
class ClientSettings:
    """Hook-side request settings."""

    request_timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class HeadlessSettings:
    """Fallback launch of a disposable host instance."""

    host_path: Path | None = None
    timeout_seconds: float = 600.0
    compile_method: str = "HookBridgeCompileCheck.Run"


@dataclass(slots=True)
class BackgroundProjectSettings:
    """Mirrored workspace used to run tests without touching the open project."""

    enabled: bool = False
    suffix: str = "-BackgroundWorker"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    preferences_path: Path = DEFAULT_PREFERENCES_PATH
    channel: ChannelSettings = field(default_factory=ChannelSettings)
    compile_check: CompileCheckSettings = field(default_factory=CompileCheckSettings)
    client: ClientSettings = field(default_factory=ClientSettings)
    headless: HeadlessSettings = field(default_factory=HeadlessSettings)
    background_project: BackgroundProjectSettings = field(
        default_factory=BackgroundProjectSettings,
    )

    @classmethod
    def from_env(cls, preferences_path: Path | None = None) -> Settings:
        """Load settings from environment, falling back to stored preferences."""

        resolved_preferences = (
            preferences_path
            or Path(
                os.getenv("HOOK_BRIDGE_PREFERENCES_PATH", str(DEFAULT_PREFERENCES_PATH)),
            )
        ).expanduser()
        raw_port = os.getenv("HOOK_BRIDGE_PORT")
        if raw_port is None or not raw_port.strip():
            port = HostPreferences(resolved_preferences).load_port()
        else:
            port = _parse_int("HOOK_BRIDGE_PORT", raw_port)
        host_path = os.getenv("HOOK_BRIDGE_HOST_PATH", "").strip()
        return cls(
            preferences_path=resolved_preferences,
            channel=ChannelSettings(
                host=os.getenv("HOOK_BRIDGE_BIND_HOST", "127.0.0.1"),
                port=port,
            ),
            compile_check=CompileCheckSettings(
                timeout_seconds=_env_float("HOOK_BRIDGE_COMPILE_TIMEOUT_SECONDS", 600.0),
                grace_seconds=_env_float("HOOK_BRIDGE_COMPILE_GRACE_SECONDS", 5.0),
                error_marker=os.getenv("HOOK_BRIDGE_COMPILE_ERROR_MARKER", "error CS"),
            ),
            client=ClientSettings(
                request_timeout_seconds=_env_float("HOOK_BRIDGE_REQUEST_TIMEOUT_SECONDS", 300.0),
                connect_timeout_seconds=_env_float("HOOK_BRIDGE_CONNECT_TIMEOUT_SECONDS", 10.0),
            ),
            headless=HeadlessSettings(
                host_path=Path(host_path).expanduser() if host_path else None,
                timeout_seconds=_env_float("HOOK_BRIDGE_HEADLESS_TIMEOUT_SECONDS", 600.0),
                compile_method=os.getenv(
                    "HOOK_BRIDGE_COMPILE_METHOD",
                    "HookBridgeCompileCheck.Run",
                ),
            ),
            background_project=BackgroundProjectSettings(
                enabled=_env_bool("HOOK_BRIDGE_BACKGROUND_PROJECT_ENABLED", default=False),
                suffix=os.getenv("HOOK_BRIDGE_BACKGROUND_PROJECT_SUFFIX", "-BackgroundWorker"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if not 0 <= self.channel.port <= MAX_PORT:
            raise ValueError(f"HOOK_BRIDGE_PORT must be within 0..{MAX_PORT}.")
        if not self.channel.host.strip():
            raise ValueError("HOOK_BRIDGE_BIND_HOST must not be empty.")
        if self.compile_check.timeout_seconds <= 0:
            raise ValueError("HOOK_BRIDGE_COMPILE_TIMEOUT_SECONDS must be > 0.")
        if self.compile_check.grace_seconds < 0:
            raise ValueError("HOOK_BRIDGE_COMPILE_GRACE_SECONDS must be >= 0.")
        if self.compile_check.grace_seconds > self.compile_check.timeout_seconds:
            raise ValueError(
                "HOOK_BRIDGE_COMPILE_GRACE_SECONDS must not exceed "
                "HOOK_BRIDGE_COMPILE_TIMEOUT_SECONDS.",
            )
        if self.client.request_timeout_seconds <= 0:
            raise ValueError("HOOK_BRIDGE_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.client.connect_timeout_seconds <= 0:
            raise ValueError("HOOK_BRIDGE_CONNECT_TIMEOUT_SECONDS must be > 0.")
        if self.headless.timeout_seconds <= 0:
            raise ValueError("HOOK_BRIDGE_HEADLESS_TIMEOUT_SECONDS must be > 0.")
        if not self.headless.compile_method.strip():
            raise ValueError("HOOK_BRIDGE_COMPILE_METHOD must not be empty.")
        if self.background_project.enabled and not self.background_project.suffix.strip():
            raise ValueError("HOOK_BRIDGE_BACKGROUND_PROJECT_SUFFIX must not be empty.")


class HostPreferences:
    """Per-user persisted preferences (currently the channel port)."""

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load_port(self) -> int:
        data = self._load()
        port = data.get("port", DEFAULT_PORT)
        if not isinstance(port, int) or isinstance(port, bool) or not 0 <= port <= MAX_PORT:
            logger.warning("Ignoring invalid port %r in %s", port, self._path)
            return DEFAULT_PORT
        return port

    def save_port(self, port: int) -> None:
        if not 0 <= port <= MAX_PORT:
            raise ValueError(f"Port must be within 0..{MAX_PORT}, got {port}.")
        data = self._load()
        data["port"] = port
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(json.dumps(data, indent=2), "utf-8")
        tmp_path.replace(self._path)

    def _load(self) -> dict[str, object]:
        try:
            raw = json.loads(self._path.read_text("utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read preferences %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Preferences file %s is not a JSON object", self._path)
            return {}
        return raw


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
