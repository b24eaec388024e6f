"""Command request carried over the channel, shared by client and host."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from hook_bridge.host.engines import TestMode

COMMAND_HEADER = "command"
TEST_MODE_HEADER = "testMode"
TEST_CATEGORY_HEADER = "testCategory"
REPO_PATH_HEADER = "repoPath"

TESTS_FAILED_MARKER = "Tests failed"
COMPILE_PASSED_MARKER = "Compile check passed"
COMPILE_FAILED_MARKER = "Compile check failed"
BUSY_MESSAGE = "Another job is already running"

FAILURE_LINE_PATTERN = re.compile(r"tests failed|compile check failed", re.IGNORECASE)


class CommandKind(str, Enum):
    RUN_TESTS = "run-tests"
    COMPILE_CHECK = "compile-check"

    @classmethod
    def parse(cls, raw: str | None) -> CommandKind:
        """Anything other than ``compile-check`` runs tests."""

        if (raw or "").strip().lower() == cls.COMPILE_CHECK.value:
            return cls.COMPILE_CHECK
        return cls.RUN_TESTS


def parse_categories(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(slots=True, frozen=True)
class CommandRequest:
    """One job request as parsed from channel headers."""

    command: CommandKind = CommandKind.RUN_TESTS
    mode: TestMode = TestMode.EDIT_MODE
    categories: tuple[str, ...] = ()
    repo_path: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> CommandRequest:
        """Parse request headers leniently; malformed values fall back to defaults."""

        normalized = {str(key).lower(): str(value) for key, value in headers.items()}
        repo_path = normalized.get(REPO_PATH_HEADER.lower(), "").strip()
        return cls(
            command=CommandKind.parse(normalized.get(COMMAND_HEADER.lower())),
            mode=TestMode.parse(normalized.get(TEST_MODE_HEADER.lower())),
            categories=parse_categories(normalized.get(TEST_CATEGORY_HEADER.lower())),
            repo_path=repo_path or None,
        )

    def to_headers(self) -> dict[str, str]:
        headers = {
            COMMAND_HEADER: self.command.value,
            TEST_MODE_HEADER: self.mode.value,
            TEST_CATEGORY_HEADER: ",".join(self.categories),
        }
        if self.repo_path:
            headers[REPO_PATH_HEADER] = self.repo_path
        return headers


def is_failure_line(line: str) -> bool:
    return FAILURE_LINE_PATTERN.search(line) is not None
