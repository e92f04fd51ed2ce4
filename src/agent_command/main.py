"""CLI entrypoint for agent-command."""

import logging
from pathlib import Path

import rich_click as click

from agent_command import __version__
from agent_command.controllers import (
    AgentCommandCliController,
    QueueCommand,
    RunCommand,
    ShouldDecomposeCommand,
    StoreCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentCommandCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-command")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging level for engine diagnostics on stderr.",
)
def agent_command(log_level: str) -> None:
    """Agent lifecycle and task orchestration engine.

    Decomposes a prompt into sub-tasks, runs them through CLI sub-agents in
    dependency **waves**, and keeps suspended agents resumable across restarts.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_command.command("run")
@click.argument("prompt")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--commander-id", default=None, help="Reuse a commander id instead of a fresh one.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1),
    default=3600.0,
    show_default=True,
    help="Stop waiting after this long; unfinished agents are suspended for resume.",
)
@click.option(
    "--project-context",
    default=None,
    help="Extra project description appended to the decomposition prompt.",
)
@click.option(
    "--no-restore",
    is_flag=True,
    default=False,
    help="Do not restore suspended agents and unfinished runs before starting.",
)
def run(  # noqa: PLR0913
    prompt: str,
    db_path: Path | None,
    commander_id: str | None,
    timeout_seconds: float,
    project_context: str | None,
    no_restore: bool,
) -> None:
    """Decompose PROMPT, execute the sub-tasks and print the synthesis."""

    result = CONTROLLER.run(
        RunCommand(
            db_path=db_path,
            prompt=prompt,
            commander_id=commander_id,
            timeout_seconds=timeout_seconds,
            project_context=project_context,
            restore=not no_restore,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run did not complete.")


@agent_command.command("should-decompose")
@click.argument("prompt")
def should_decompose(prompt: str) -> None:
    """Report whether PROMPT looks like a multi-step request."""

    _emit_lines(CONTROLLER.should_decompose(ShouldDecomposeCommand(prompt=prompt)))


@agent_command.command("resumes")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def resumes(db_path: Path | None) -> None:
    """List pending resume contexts, newest first."""

    _emit_lines(CONTROLLER.resumes(StoreCommand(db_path=db_path)))


@agent_command.command("queue")
@click.argument("commander_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue(commander_id: str, db_path: Path | None) -> None:
    """Show the persisted sub-task queue of COMMANDER_ID."""

    _emit_lines(CONTROLLER.queue(QueueCommand(db_path=db_path, commander_id=commander_id)))


@agent_command.command("snapshot")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def snapshot(db_path: Path | None) -> None:
    """Summarize the last saved application snapshot."""

    _emit_lines(CONTROLLER.snapshot(StoreCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_command()
