"""CLI entrypoint for stepgate."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from stepgate import __version__
from stepgate.config import Settings
from stepgate.engine.controllers import (
    AbortCommand,
    CreateTaskCommand,
    ListTasksCommand,
    ReportOutcomeCommand,
    RollbackCommand,
    StepgateCliController,
    TaskCommand,
)
from stepgate.engine.errors import StepgateError
from stepgate.engine.models import OutcomeResult

click.rich_click.USE_MARKDOWN = True
CONTROLLER = StepgateCliController()

home_option = click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory (defaults to STEPGATE_HOME or .stepgate).",
)


@click.group()
@click.version_option(version=__version__, prog_name="stepgate")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def stepgate(verbose: bool) -> None:
    """Drive a multi-step plan to completion with validated, resumable steps."""

    with _cli_errors():
        level = "DEBUG" if verbose else Settings.from_env().log_level
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@stepgate.command("create")
@home_option
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Plan JSON document.",
)
@click.option("--task-id", default=None, help="Explicit task id (generated when omitted).")
def create(home: Path | None, plan_path: Path, task_id: str | None) -> None:
    """Validate a plan and create a task for it."""

    with _cli_errors():
        lines = CONTROLLER.create(
            CreateTaskCommand(home=home, plan_path=plan_path, task_id=task_id),
        )
    _emit_lines(lines)


@stepgate.command("next")
@home_option
@click.argument("task_id")
def next_step(home: Path | None, task_id: str) -> None:
    """Show the step to perform next (idempotent while a step is in progress)."""

    with _cli_errors():
        lines = CONTROLLER.next_step(TaskCommand(home=home, task_id=task_id))
    _emit_lines(lines)


@stepgate.command("report")
@home_option
@click.argument("task_id")
@click.option("--step-id", required=True, help="Step the outcome belongs to.")
@click.option(
    "--result",
    type=click.Choice([item.value for item in OutcomeResult]),
    default=OutcomeResult.COMPLETED.value,
    show_default=True,
    help="Outcome of the performed action.",
)
@click.option("--evidence", default=None, help="Evidence text checked by evidence criteria.")
def report(
    home: Path | None,
    task_id: str,
    step_id: str,
    result: str,
    evidence: str | None,
) -> None:
    """Report a step outcome and print the engine decision."""

    with _cli_errors():
        outcome = CONTROLLER.report(
            ReportOutcomeCommand(
                home=home,
                task_id=task_id,
                step_id=step_id,
                result=result,
                evidence=evidence,
            ),
        )
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(f"Task {task_id} halted on step {step_id}.")


@stepgate.command("gate")
@home_option
@click.argument("task_id")
def gate(home: Path | None, task_id: str) -> None:
    """Run the final quality gate."""

    with _cli_errors():
        outcome = CONTROLLER.gate(TaskCommand(home=home, task_id=task_id))
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException("Quality gate blocked.")


@stepgate.command("rollback")
@home_option
@click.argument("task_id")
@click.option("--checkpoint", required=True, help="Name of a reached checkpoint.")
def rollback(home: Path | None, task_id: str, checkpoint: str) -> None:
    """Rewind a task to a reached checkpoint."""

    with _cli_errors():
        lines = CONTROLLER.rollback(
            RollbackCommand(home=home, task_id=task_id, checkpoint=checkpoint),
        )
    _emit_lines(lines)


@stepgate.command("abort")
@home_option
@click.argument("task_id")
@click.option("--reason", default="aborted by operator", show_default=True)
def abort(home: Path | None, task_id: str, reason: str) -> None:
    """Abort a task; it can no longer advance."""

    with _cli_errors():
        lines = CONTROLLER.abort(AbortCommand(home=home, task_id=task_id, reason=reason))
    _emit_lines(lines)


@stepgate.command("status")
@home_option
@click.argument("task_id")
def status(home: Path | None, task_id: str) -> None:
    """Show the task record."""

    with _cli_errors():
        lines = CONTROLLER.status(TaskCommand(home=home, task_id=task_id))
    _emit_lines(lines)


@stepgate.command("history")
@home_option
@click.argument("task_id")
def history(home: Path | None, task_id: str) -> None:
    """Show the decision journal of a task."""

    with _cli_errors():
        lines = CONTROLLER.history(TaskCommand(home=home, task_id=task_id))
    _emit_lines(lines)


@stepgate.command("resume")
@home_option
def resume(home: Path | None) -> None:
    """List unfinished tasks, most recently active first."""

    with _cli_errors():
        lines = CONTROLLER.resume(ListTasksCommand(home=home, include_archived=False))
    _emit_lines(lines)


@stepgate.command("snapshot")
@home_option
@click.argument("task_id")
def snapshot(home: Path | None, task_id: str) -> None:
    """Save a recovery snapshot beside the task record."""

    with _cli_errors():
        lines = CONTROLLER.snapshot(TaskCommand(home=home, task_id=task_id))
    _emit_lines(lines)


@stepgate.command("restore")
@home_option
@click.argument("task_id")
def restore(home: Path | None, task_id: str) -> None:
    """Print the context recovery block for a task."""

    with _cli_errors():
        lines = CONTROLLER.restore(TaskCommand(home=home, task_id=task_id))
    _emit_lines(lines)


@stepgate.command("tasks")
@home_option
@click.option(
    "--active-only",
    is_flag=True,
    default=False,
    help="Hide archived (finished) tasks.",
)
def tasks(home: Path | None, active_only: bool) -> None:
    """List task records."""

    with _cli_errors():
        lines = CONTROLLER.tasks(ListTasksCommand(home=home, include_archived=not active_only))
    _emit_lines(lines)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (StepgateError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    stepgate()
