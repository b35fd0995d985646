# cli.py
from __future__ import annotations

import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List

import click

from shipline import settings
from shipline.archive import RunArchive
from shipline.config import load_workflow, parse_duration
from shipline.credentials import CredentialResolver, FileSecretStore, InMemorySecretStore
from shipline.dag import check_acyclic
from shipline.errors import PipelineError
from shipline.executor import SubprocessExecutor
from shipline.git_facts import current_event
from shipline.model import Event, Job, RunStatus
from shipline.scheduler import Scheduler
from shipline.triggers import is_eligible
from shipline.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("shipline_workflow.py", "shipline.yml", ".circleci/config.yml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOW_FILES if (current_dir / name).exists()]
    for path in sorted(current_dir.glob("*_workflow.py")):
        if path not in found:
            found.append(path)
    return found


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, SHIPLINE_WORKFLOW or default names.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()
    workflow_arg = workflow_arg or settings.WORKFLOW

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  shipline run --workflow shipline.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOW_FILES), "  *_workflow.py"],
            suggestion="Specify a workflow explicitly:\n  shipline run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  shipline run --workflow shipline.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def resolve_event(branch: str | None, tag: str | None) -> Event:
    """--branch / --tag, or whatever the current git checkout looks like."""
    console = get_console()
    if branch and tag:
        raise click.UsageError("--branch and --tag are mutually exclusive")
    if branch:
        return Event.branch(branch)
    if tag:
        return Event.tag(tag)
    try:
        event = current_event()
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_error(
            "Could not determine git ref",
            "No --branch/--tag given and the current directory is not a git checkout.",
            suggestion="Specify the event explicitly:\n  shipline run --tag v1.2.3",
        )
        sys.exit(1)
    except ValueError as e:
        console.print_error("Could not determine git ref", str(e))
        sys.exit(1)
    console.print_debug(f"Using event from git checkout: {event.ref_kind.value} {event.ref}")
    return event


def _load_jobs(path: Path, workflow_name: str | None) -> List[Job]:
    console = get_console()
    try:
        return load_workflow(path, workflow=workflow_name)
    except PipelineError as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {path}",
            details=[str(e)],
        )
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def _resolver(secrets: str | None) -> CredentialResolver:
    path = secrets or settings.SECRETS_FILE
    store = FileSecretStore(path) if path else InMemorySecretStore()
    return CredentialResolver(store)


def _timeout(value: str | None) -> float:
    if value is None:
        return settings.DEFAULT_JOB_TIMEOUT
    try:
        return parse_duration(value)
    except PipelineError as e:
        raise click.BadParameter(e.message, param_hint="--timeout")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full job output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print failures and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """shipline: event-triggered release pipeline runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml); discovered if omitted")
@click.option("--workflow-name", default=None, help="Workflow to use when a YAML file defines several")
@click.option("--branch", default=None, help="Simulate a push of this branch")
@click.option("--tag", default=None, help="Simulate a push of this tag")
@click.option("--secrets", default=None, help="YAML file mapping context names to secrets")
@click.option("--workers", default=None, type=int, help="Number of jobs executed concurrently")
@click.option("--timeout", default=None, help="Default per-job timeout (e.g. 30m)")
@click.option("--output-limit", default=None, type=int, help="Bytes of job output kept (tail)")
@click.option("--workdir", default=".", show_default=True, help="Directory jobs run in")
@click.option("--archive/--no-archive", default=True, show_default=True, help="Store finished runs")
@click.option("--database-url", default=None, help="Run archive database (SQLAlchemy URL)")
def run(
    workflow,
    workflow_name,
    branch,
    tag,
    secrets,
    workers,
    timeout,
    output_limit,
    workdir,
    archive,
    database_url,
):
    """Run the pipeline for one branch or tag push."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    jobs = _load_jobs(workflow_path, workflow_name)
    event = resolve_event(branch, tag)

    try:
        executor = SubprocessExecutor(
            default_timeout=_timeout(timeout),
            output_limit=output_limit or settings.OUTPUT_LIMIT,
            passthrough_env=settings.PASSTHROUGH_ENV,
            workdir=workdir,
        )
        scheduler = Scheduler(
            executor,
            _resolver(secrets),
            max_workers=workers or settings.MAX_WORKERS,
            console=console,
            archive=RunArchive(database_url or settings.DATABASE_URL) if archive else None,
        )
        workflow_run = scheduler.create_run(jobs, event)
    except click.ClickException:
        raise
    except PipelineError as e:
        console.print_error("Pipeline rejected", e.message, details=[str(e)])
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    # The run executes off the main thread so Ctrl-C can request a
    # cancellation instead of tearing the scheduler down mid-run.
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="shipline-run") as pool:
        future = pool.submit(scheduler.execute, workflow_run)
        try:
            report = future.result()
        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user, cancelling run")
            scheduler.cancel(workflow_run.run_id)
            report = future.result()
        except Exception as e:
            console.print_exception(e)
            sys.exit(1)

    if report.status is RunStatus.CANCELLED:
        sys.exit(130)
    if report.status is RunStatus.FAILED:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml); discovered if omitted")
@click.option("--workflow-name", default=None, help="Workflow to use when a YAML file defines several")
@click.option("--branch", default=None, help="Plan for a push of this branch")
@click.option("--tag", default=None, help="Plan for a push of this tag")
def plan(workflow, workflow_name, branch, tag):
    """Show the stages and which jobs an event would run. Executes nothing."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    jobs = _load_jobs(workflow_path, workflow_name)
    event = resolve_event(branch, tag)

    try:
        stages = check_acyclic(jobs)
    except PipelineError as e:
        console.print_error("Pipeline rejected", e.message, details=[str(e)])
        sys.exit(1)

    console.print_header(f"Plan for {event.ref_kind.value} {event.ref} ({workflow_path.name})")
    console.print_plan(stages, {j.name: is_eligible(j, event) for j in jobs})


@cli.command()
@click.argument("run_id")
@click.option("--database-url", default=None, help="Run archive database (SQLAlchemy URL)")
def status(run_id, database_url):
    """Show the archived result of a finished run."""
    console = get_console()
    report = RunArchive(database_url or settings.DATABASE_URL).get(run_id)
    if report is None:
        console.print_error("Unknown run", f"No archived run with id {run_id}")
        sys.exit(1)
    console.print_results(report)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .yml); discovered if omitted")
@click.option("--workflow-name", default=None, help="Workflow to use when a YAML file defines several")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--secrets", default=None, help="YAML file mapping context names to secrets")
@click.option("--workers", default=None, type=int, help="Number of jobs executed concurrently per run")
@click.option("--workdir", default=".", show_default=True, help="Directory jobs run in")
@click.option("--database-url", default=None, help="Run archive database (SQLAlchemy URL)")
def serve(workflow, workflow_name, host, port, secrets, workers, workdir, database_url):
    """Accept push events over HTTP and run the pipeline for each."""
    import uvicorn

    from shipline.server import create_app

    workflow_path = discover_workflow(workflow)
    # fail at startup on a broken pipeline file, not on the first event
    _load_jobs(workflow_path, workflow_name)

    scheduler = Scheduler(
        SubprocessExecutor(
            default_timeout=settings.DEFAULT_JOB_TIMEOUT,
            output_limit=settings.OUTPUT_LIMIT,
            passthrough_env=settings.PASSTHROUGH_ENV,
            workdir=workdir,
        ),
        _resolver(secrets),
        max_workers=workers or settings.MAX_WORKERS,
        archive=RunArchive(database_url or settings.DATABASE_URL),
    )
    app = create_app(lambda: load_workflow(workflow_path, workflow=workflow_name), scheduler)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
