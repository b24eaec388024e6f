"""Interfaces of the host services the jobs drive.

The test engine and the compiler pipeline live inside the host. Jobs only
see these protocols, so tests substitute in-process fakes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class CompilationUnsupportedError(RuntimeError):
    """Raised when the host cannot start a compilation on request."""


class TestMode(str, Enum):
    """Test partition executed by the engine."""

    EDIT_MODE = "EditMode"
    PLAY_MODE = "PlayMode"

    @classmethod
    def parse(cls, raw: str | None) -> TestMode:
        """Lenient parse; unknown or missing values select edit mode."""

        normalized = (raw or "").strip().lower()
        for mode in cls:
            if mode.value.lower() == normalized:
                return mode
        return cls.EDIT_MODE


@dataclass(slots=True, frozen=True)
class TestFilter:
    """Which tests to run: one mode and every listed category."""

    mode: TestMode = TestMode.EDIT_MODE
    categories: tuple[str, ...] = ()

    def matches(self, test_categories: Iterable[str]) -> bool:
        present = set(test_categories)
        return all(category in present for category in self.categories)

    @property
    def category_label(self) -> str:
        return ",".join(self.categories)


@dataclass(slots=True, frozen=True)
class TestRunResult:
    """Aggregate outcome reported by the engine at the end of a run."""

    pass_count: int
    fail_count: int
    log_reference: str | None = None


class TestRunCallbacks(Protocol):
    def run_finished(self, result: TestRunResult) -> None: ...


class TestEngine(Protocol):
    def register_callbacks(self, callbacks: TestRunCallbacks) -> None: ...

    def unregister_callbacks(self, callbacks: TestRunCallbacks) -> None: ...

    def execute(self, test_filter: TestFilter) -> None: ...


class CompilePipeline(Protocol):
    def refresh(self) -> None: ...

    def request_compilation(self) -> None: ...

    @property
    def is_compiling(self) -> bool: ...
