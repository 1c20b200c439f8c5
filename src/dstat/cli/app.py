"""
Typer application for the ``dstat`` command.

Queries job status across the configured providers and prints the result
to stdout; logs and errors go to stderr.

Exit codes:
    0  success, including zero matching jobs
    1  a provider failed (results from the others are still printed), or
       ``--wait`` ran out of time
    2  invalid criteria or configuration

Multi-value flags accept both forms::

    dstat --status RUNNING SUCCESS --jobs job-a job-b
    dstat --status RUNNING --status SUCCESS --jobs job-a --jobs job-b
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from dstat import __version__
from dstat.core.errors import DstatError, ErrorCategory, InvalidCriteria
from dstat.core.logging import configure_logging, get_logger
from dstat.core.settings import DstatSettings
from dstat.providers._types import JobFilter, TaskStatus
from dstat.query.engine import QueryResult, StatusEngine
from dstat.render import OutputFormat, render

app = typer.Typer(
    name="dstat",
    help="dstat: query the status of batch jobs across providers.",
    add_completion=False,
    rich_markup_mode="rich",
)

err_console = Console(stderr=True)
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_BACKEND_FAILURE = 1
EXIT_INVALID = 2

MULTI_VALUE_OPTIONS = frozenset(
    {
        "--provider", "-p",
        "--status", "-s",
        "--jobs", "-j",
        "--names", "-n",
        "--users", "-u",
        "--label", "-l",
        "--tasks", "-t",
    }
)

_USAGE_CATEGORIES = (ErrorCategory.VALIDATION, ErrorCategory.CONFIG)


# ── Argument expansion ───────────────────────────────────────────────────


def expand_multi_value_args(argv: Sequence[str]) -> list[str]:
    """Rewrite ``--opt a b`` as ``--opt a --opt b`` for multi-value flags."""
    expanded: list[str] = []
    option: str | None = None
    values_seen = 0
    for arg in argv:
        if arg in MULTI_VALUE_OPTIONS:
            option, values_seen = arg, 0
            expanded.append(arg)
        elif option is not None and not arg.startswith("-"):
            if values_seen:
                expanded.append(option)
            expanded.append(arg)
            values_seen += 1
        else:
            option = None
            expanded.append(arg)
    return expanded


# ── Callbacks ────────────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"dstat {__version__}")
        raise typer.Exit()


# ── Command ──────────────────────────────────────────────────────────────


@app.command()
def dstat(
    provider: list[str] | None = typer.Option(
        None, "--provider", "-p", help="Provider(s) to query. Default: DSTAT_PROVIDER."
    ),
    status: list[str] | None = typer.Option(
        None,
        "--status",
        "-s",
        help="RUNNING, SUCCESS, FAILURE, CANCELED, PENDING, UNKNOWN or '*'. "
        "Default: RUNNING, or any status when --jobs is given.",
    ),
    jobs: list[str] | None = typer.Option(None, "--jobs", "-j", help="Job ids."),
    names: list[str] | None = typer.Option(None, "--names", "-n", help="Job names."),
    users: list[str] | None = typer.Option(None, "--users", "-u", help="Submitting users."),
    label: list[str] | None = typer.Option(None, "--label", "-l", help="key=value labels (all must match)."),
    tasks: list[str] | None = typer.Option(None, "--tasks", "-t", help="Task ids."),
    age: str | None = typer.Option(None, "--age", help="Only jobs created within e.g. 30s, 5m, 2h, 1d, 1w."),
    full: bool = typer.Option(False, "--full", "-f", help="Include attributes, all events and tasks."),
    fmt: OutputFormat = typer.Option(OutputFormat.YAML, "--format", help="Output format."),
    summary: bool = typer.Option(False, "--summary", help="Task counts per job name and status."),
    limit: int | None = typer.Option(None, "--limit", min=1, help="Maximum number of jobs."),
    wait: bool = typer.Option(False, "--wait", help="Poll until every matching job is terminal."),
    poll_interval: float | None = typer.Option(None, "--poll-interval", min=0.0, help="Seconds between polls."),
    timeout: float | None = typer.Option(None, "--timeout", min=0.0, help="Give up waiting after this many seconds."),
    project: str | None = typer.Option(None, "--project", help="Cloud project."),
    location: str | None = typer.Option(None, "--location", help="Cloud location (google-cls-v2)."),
    local_root: Path | None = typer.Option(None, "--local-root", help="Local provider job tree."),
    all_or_nothing: bool = typer.Option(False, "--all-or-nothing", help="Fail if any provider fails."),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Show the status of jobs, newest first."""
    try:
        settings = _settings(
            project=project,
            location=location,
            local_root=local_root,
            all_or_nothing=all_or_nothing or None,
            log_level=log_level,
        )
    except ValueError as exc:
        err_console.print(f"[bold red]Invalid configuration[/bold red]: {exc}")
        raise typer.Exit(code=EXIT_INVALID) from exc
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    if status is None:
        status = ["*"] if jobs else [TaskStatus.RUNNING.value]
    try:
        criteria = JobFilter.build(
            statuses=status,
            job_ids=jobs,
            job_names=names,
            user_ids=users,
            task_ids=tasks,
            labels=label,
            age=age,
        )
    except InvalidCriteria as exc:
        err_console.print(f"[bold red]Invalid criteria[/bold red]: {exc}")
        raise typer.Exit(code=EXIT_INVALID) from exc

    try:
        result = asyncio.run(
            _run(
                settings,
                criteria,
                providers=provider,
                limit=limit,
                wait=wait,
                poll_interval=settings.poll_interval_seconds if poll_interval is None else poll_interval,
                timeout=timeout,
            )
        )
    except DstatError as exc:
        code = EXIT_INVALID if exc.category in _USAGE_CATEGORIES else EXIT_BACKEND_FAILURE
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc}")
        raise typer.Exit(code=code) from exc

    typer.echo(render(result.records, fmt, full=full, summary=summary), nl=False)
    raise typer.Exit(code=_exit_code(result, wait=wait))


def _settings(**overrides: Any) -> DstatSettings:
    settings = DstatSettings()
    update = {k: v for k, v in overrides.items() if v is not None}
    if not update:
        return settings
    # Re-validate so CLI values get the same checks as env values.
    return DstatSettings.model_validate({**settings.model_dump(), **update})


async def _run(
    settings: DstatSettings,
    criteria: JobFilter,
    *,
    providers: list[str] | None,
    limit: int | None,
    wait: bool,
    poll_interval: float,
    timeout: float | None,
) -> QueryResult:
    async with StatusEngine.from_settings(settings, providers=providers) as engine:
        if wait:
            return await engine.wait(
                criteria,
                poll_interval=poll_interval,
                timeout=timeout,
                limit=limit,
            )
        return await engine.query(criteria, limit=limit)


def _exit_code(result: QueryResult, *, wait: bool) -> int:
    for failure in result.failures:
        err_console.print(f"[bold red]Provider failed[/bold red] {failure.provider}: {failure.message}")
    if not result.ok:
        return EXIT_BACKEND_FAILURE
    if wait and not result.all_terminal:
        err_console.print("[yellow]Timed out waiting for jobs to finish[/yellow]")
        return EXIT_BACKEND_FAILURE
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> None:
    """Console-script entry point."""
    args = expand_multi_value_args(sys.argv[1:] if argv is None else argv)
    app(args=args, prog_name="dstat")


if __name__ == "__main__":
    main()
