"""CLI entrypoint for hook-bridge."""

import logging
from pathlib import Path

import rich_click as click

from hook_bridge import __version__
from hook_bridge.client.controllers import (
    CompileCheckCommand,
    HookCliController,
    RunStepCommand,
    RunTestsCommand,
    StateFinishCommand,
    StateInitCommand,
    StateStepCommand,
    StateWatchCommand,
)
from hook_bridge.host.engines import TestMode

click.rich_click.USE_MARKDOWN = True
HOOK_CONTROLLER = HookCliController(emit=click.echo)

_MODE_CHOICE = click.Choice([mode.value for mode in TestMode], case_sensitive=False)
_LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="hook-bridge")
@click.option(
    "--log-level",
    type=_LOG_LEVELS,
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def hook_bridge(log_level: str) -> None:
    """Run host test and compile jobs from version-control hooks."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@hook_bridge.command("run-tests")
@click.argument("mode", type=_MODE_CHOICE, default=TestMode.EDIT_MODE.value, required=False)
@click.option(
    "--category",
    default="",
    help="Comma-separated test categories; a test must carry **all** of them.",
)
@click.option(
    "--hostPath",
    "--unityPath",
    "--host-path",
    "host_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Host executable for the headless fallback.",
)
@click.option("--port", type=click.IntRange(min=1, max=65_535), default=None, help="Channel port.")
@click.option(
    "--timeout",
    "timeout_ms",
    type=click.IntRange(min=1),
    default=None,
    help="Request timeout in milliseconds.",
)
@click.option(
    "--project-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory (default: discovered from the current directory).",
)
@click.option("--step", default=None, help="Hook step to mark running/completed in job state.")
@click.option(
    "--background-project/--no-background-project",
    default=None,
    help="Run tests headless against a mirrored copy of the project.",
)
@click.option(
    "--background-project-suffix",
    default=None,
    help="Directory suffix of the mirrored project.",
)
def run_tests(  # noqa: PLR0913
    mode: str,
    category: str,
    host_path: Path | None,
    port: int | None,
    timeout_ms: int | None,
    project_path: Path | None,
    step: str | None,
    background_project: bool | None,
    background_project_suffix: str | None,
) -> None:
    """Run host tests and exit non-zero when any test fails."""

    _exit_with(
        _guard(
            lambda: HOOK_CONTROLLER.run_tests(
                RunTestsCommand(
                    mode=mode,
                    categories=category,
                    host_path=host_path,
                    port=port,
                    timeout_ms=timeout_ms,
                    project_path=project_path,
                    step=step,
                    background_project=background_project,
                    background_project_suffix=background_project_suffix,
                ),
            ),
        ),
    )


@hook_bridge.command("compile-check")
@click.option("--port", type=click.IntRange(min=1, max=65_535), default=None, help="Channel port.")
@click.option(
    "--hostPath",
    "--unityPath",
    "--host-path",
    "host_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Host executable for the headless fallback.",
)
@click.option(
    "--timeout",
    "timeout_ms",
    type=click.IntRange(min=1),
    default=None,
    help="Request timeout in milliseconds.",
)
@click.option(
    "--project-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory (default: discovered from the current directory).",
)
@click.option(
    "--step",
    default="compile_check",
    show_default=True,
    help="Hook step to mark running/completed in job state.",
)
def compile_check(
    port: int | None,
    host_path: Path | None,
    timeout_ms: int | None,
    project_path: Path | None,
    step: str,
) -> None:
    """Check that the project compiles without compiler errors."""

    _exit_with(
        _guard(
            lambda: HOOK_CONTROLLER.compile_check(
                CompileCheckCommand(
                    host_path=host_path,
                    port=port,
                    timeout_ms=timeout_ms,
                    project_path=project_path,
                    step=step or None,
                ),
            ),
        ),
    )


@hook_bridge.group()
def state() -> None:
    """Hook job state shared with the host."""


@state.command("init")
@click.argument("hook_name")
@click.argument("steps_csv")
def state_init(hook_name: str, steps_csv: str) -> None:
    """Start a job HOOK_NAME with comma-separated STEPS_CSV, all pending."""

    _emit_lines(
        _guard(
            lambda: HOOK_CONTROLLER.state_init(
                StateInitCommand(hook_name=hook_name, steps_csv=steps_csv),
            ),
        ),
    )


@state.command("start-step")
@click.argument("step_name")
@click.argument("detail", required=False)
def state_start_step(step_name: str, detail: str | None) -> None:
    """Mark a step running."""

    _emit_lines(
        HOOK_CONTROLLER.state_start_step(StateStepCommand(step_name=step_name, detail=detail)),
    )


@state.command("finish-step")
@click.argument("step_name")
@click.argument("result", type=click.Choice(["pass", "fail"], case_sensitive=False))
@click.argument("detail", required=False)
def state_finish_step(step_name: str, result: str, detail: str | None) -> None:
    """Mark a step completed (`pass`) or failed (`fail`)."""

    _emit_lines(
        HOOK_CONTROLLER.state_finish_step(
            StateStepCommand(step_name=step_name, detail=detail, passed=result.lower() == "pass"),
        ),
    )


@state.command("skip-step")
@click.argument("step_name")
@click.argument("detail", required=False)
def state_skip_step(step_name: str, detail: str | None) -> None:
    """Mark a pending step skipped."""

    _emit_lines(
        HOOK_CONTROLLER.state_skip_step(StateStepCommand(step_name=step_name, detail=detail)),
    )


@state.command("finish")
@click.argument("status", type=click.Choice(["passed", "failed", "error"], case_sensitive=False))
@click.argument("error", required=False)
def state_finish(status: str, error: str | None) -> None:
    """Finish the job with a terminal STATUS."""

    _emit_lines(
        _guard(
            lambda: HOOK_CONTROLLER.state_finish(
                StateFinishCommand(status=status.lower(), error=error),
            ),
        ),
    )


@state.command("read")
def state_read() -> None:
    """Print the raw job state as JSON."""

    _emit_lines(HOOK_CONTROLLER.state_read())


@state.command("status")
def state_status() -> None:
    """Print a readable summary of the job state."""

    _emit_lines(HOOK_CONTROLLER.state_status())


@state.command("watch")
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0.05),
    default=1.0,
    show_default=True,
    help="Seconds between polls.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many polls even if the job is still running.",
)
def state_watch(interval_seconds: float, max_polls: int | None) -> None:
    """Follow the job state until it finishes."""

    HOOK_CONTROLLER.state_watch(
        StateWatchCommand(interval_seconds=interval_seconds, max_polls=max_polls),
    )


@hook_bridge.command(
    "run-step",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("step_name")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def run_step(step_name: str, command: tuple[str, ...]) -> None:
    """Run `COMMAND` as hook step STEP_NAME, tracking it in job state.

    Usage: `hook-bridge run-step lint -- ruff check .`
    """

    _exit_with(HOOK_CONTROLLER.run_step(RunStepCommand(step_name=step_name, command=command)))


@hook_bridge.group()
def preferences() -> None:
    """Persisted host preferences."""


@preferences.command("port")
@click.argument("value", type=click.IntRange(min=1, max=65_535), required=False)
def preferences_port(value: int | None) -> None:
    """Show the channel port, or store VALUE as the new port."""

    _emit_lines(HOOK_CONTROLLER.preferences_port(value))


def _guard(action):
    try:
        return action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _exit_with(exit_code: int) -> None:
    if exit_code:
        raise SystemExit(exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    hook_bridge()
