"""CLI entrypoint for scene-studio."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from scene_studio import __version__
from scene_studio.orchestrator.controllers import (
    GENERATION_TARGETS,
    GenerateCommand,
    GenerationCliController,
    ResumeCommand,
    TasksCommand,
)

click.rich_click.USE_MARKDOWN = True
GENERATION_CONTROLLER = GenerationCliController()


@click.group()
@click.version_option(version=__version__, prog_name="scene-studio")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def scene_studio(verbose: bool) -> None:
    """Scene studio generation CLI."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@scene_studio.command("generate")
@click.argument("target", type=click.Choice(GENERATION_TARGETS))
@click.option(
    "--project",
    "project_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Project JSON file; updated in place.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--echo",
    is_flag=True,
    default=False,
    help="Use the local echo backend instead of the remote API.",
)
@click.option(
    "--no-wait",
    is_flag=True,
    default=False,
    help="Return after video submission without waiting for polling.",
)
def generate(
    target: str,
    project_path: Path,
    db_path: Path | None,
    echo: bool,
    no_wait: bool,
) -> None:
    """Run a batch generation over every entity of the project.

    `storyboards` and `videos` process shots grouped by location; `assets`
    generates character and location descriptions and images.
    """

    _emit_lines(
        _run_or_fail(
            lambda: GENERATION_CONTROLLER.generate(
                GenerateCommand(
                    target=target,
                    project_path=project_path,
                    db_path=db_path,
                    echo=echo,
                    wait=not no_wait,
                ),
            ),
        ),
    )


@scene_studio.command("resume")
@click.option(
    "--project",
    "project_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Project JSON file; updated in place.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--echo", is_flag=True, default=False, help="Use the local echo backend.")
def resume(project_path: Path, db_path: Path | None, echo: bool) -> None:
    """Re-attach polling for video jobs left running by a previous session."""

    _emit_lines(
        _run_or_fail(
            lambda: GENERATION_CONTROLLER.resume(
                ResumeCommand(project_path=project_path, db_path=db_path, echo=echo),
            ),
        ),
    )


@scene_studio.group()
def tasks() -> None:
    """In-flight task descriptor commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_list(db_path: Path | None) -> None:
    """List in-flight task descriptors and their age."""

    _emit_lines(GENERATION_CONTROLLER.list_tasks(TasksCommand(db_path=db_path)))


@tasks.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_sweep(db_path: Path | None) -> None:
    """Remove descriptors older than their kind's timeout."""

    _emit_lines(GENERATION_CONTROLLER.sweep_tasks(TasksCommand(db_path=db_path)))


def _run_or_fail(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    scene_studio()
