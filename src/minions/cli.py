"""minions CLI.

    minions init-db
    minions enqueue owner/repo --title "..." --task "..."
    minions enqueue owner/repo --issue-file body.md --issue-number 42
    minions build owner/repo --title "..." --task-file task.md
    minions worker [--once] [--max-jobs N]
    minions jobs [--status failed]
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import sessionmaker

from . import __version__
from .agent_auth import build_agent_auth_chain
from .classifier import create_failure_classifier
from .config import ProcessEnvironment, Settings, get_database_url, get_settings
from .credentials import build_credential_chain
from .database import init_db, make_engine
from .exceptions import MinionsError
from .github_client import GitHubClient
from .intake import job_from_issue
from .job_queue import SqlJobQueue, new_job_id
from .logging_config import configure_logging, setup_structured_logging
from .models import JobStatus
from .outcomes import PullRequestOpened, is_failure, outcome_name
from .schemas import Job, JobKind
from .store import RunStore
from .worker import JobWorker, failure_text

logger = logging.getLogger(__name__)


class Context:
    """Collaborators shared by all commands, built once per invocation."""

    def __init__(self, settings: Settings, structured: bool = False):
        self.settings = settings
        if structured:
            setup_structured_logging(settings.log_level)
        else:
            configure_logging(
                settings.log_level,
                log_dir=Path(settings.log_dir) if settings.log_dir else None,
                log_to_file=bool(settings.log_dir),
            )
        self.engine = make_engine(get_database_url(settings))
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        init_db(self.engine)

    @property
    def queue(self) -> SqlJobQueue:
        return SqlJobQueue(self.session_factory)

    def worker(self) -> JobWorker:
        settings = self.settings
        store = RunStore(self.session_factory)
        github = GitHubClient(api_url=settings.github_api_url)
        agent_auth = build_agent_auth_chain(settings, store)
        return JobWorker(
            settings=settings,
            env=ProcessEnvironment.capture(),
            store=store,
            queue=self.queue,
            github=github,
            credentials=build_credential_chain(settings, store, github),
            agent_auth=agent_auth,
            classifier=create_failure_classifier(settings, agent_auth),
        )


def _job_from_options(
    repo: str,
    title: Optional[str],
    task: Optional[str],
    task_file: Optional[str],
    branch: Optional[str],
    base: str,
    issue_file: Optional[str],
    issue_number: Optional[int],
    installation_id: Optional[int],
) -> Job:
    if issue_file:
        if issue_number is None:
            raise click.UsageError("--issue-number is required with --issue-file")
        body = Path(issue_file).read_text(encoding="utf-8")
        return job_from_issue(issue_number, body, repo, title=title, installation_id=installation_id)

    if task_file:
        task = Path(task_file).read_text(encoding="utf-8")
    if not task:
        raise click.UsageError("Provide --task, --task-file or --issue-file")
    if not title:
        title = task.strip().splitlines()[0][:80]

    job_id = new_job_id()
    return Job(
        id=job_id,
        kind=JobKind.BUILD,
        target_repo=repo,
        branch_name=branch or f"minions/{job_id[:8]}",
        base_branch=base,
        title=title,
        task_spec=task,
        installation_id=installation_id,
    )


def job_options(func):
    """Options shared by `build` and `enqueue`."""
    decorators = [
        click.argument("repo"),
        click.option("--title", help="PR title (defaults to the first line of the task)"),
        click.option("--task", help="Task specification text"),
        click.option("--task-file", type=click.Path(exists=True, dir_okay=False), help="Read the task from a file"),
        click.option("--branch", help="Feature branch (default: minions/<job id>)"),
        click.option("--base", default="main", show_default=True, help="Base branch for the PR"),
        click.option(
            "--issue-file",
            type=click.Path(exists=True, dir_okay=False),
            help="Build the job from a feedback issue body",
        ),
        click.option("--issue-number", type=int, help="Issue number (branch feedback/issue-<n>)"),
        click.option("--installation-id", type=int, help="GitHub App installation id"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@click.group()
@click.version_option(__version__, prog_name="minions")
@click.option("--structured-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx: click.Context, structured_logs: bool) -> None:
    """minions - build, validate, remediate and publish agent-written changes."""
    ctx.obj = Context(get_settings(), structured=structured_logs)


@cli.command(name="init-db")
@click.pass_obj
def init_db_command(obj: Context) -> None:
    """Create the database tables."""
    obj.init_db()
    click.echo("Database initialized")


@cli.command()
@job_options
@click.pass_obj
def enqueue(obj: Context, repo, title, task, task_file, branch, base, issue_file, issue_number, installation_id) -> None:
    """Queue a build job for a worker."""
    try:
        job = _job_from_options(repo, title, task, task_file, branch, base, issue_file, issue_number, installation_id)
    except (MinionsError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise click.Abort()
    obj.init_db()
    obj.queue.enqueue(job)
    click.echo(job.id)


@cli.command()
@job_options
@click.pass_obj
def build(obj: Context, repo, title, task, task_file, branch, base, issue_file, issue_number, installation_id) -> None:
    """Run one build job in the foreground."""
    try:
        job = _job_from_options(repo, title, task, task_file, branch, base, issue_file, issue_number, installation_id)
    except (MinionsError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise click.Abort()

    obj.init_db()
    obj.queue.ensure(job)
    outcome = obj.worker().process(job)

    click.echo(f"Outcome: {outcome_name(outcome)}")
    if isinstance(outcome, PullRequestOpened):
        click.echo(f"Pull request: {outcome.pr_url}")
    elif is_failure(outcome):
        click.echo(failure_text(outcome)[-2000:], err=True)
        sys.exit(1)


@cli.command()
@click.option("--once", is_flag=True, help="Process at most one job and exit")
@click.option("--max-jobs", type=int, help="Exit after this many jobs")
@click.pass_obj
def worker(obj: Context, once: bool, max_jobs: Optional[int]) -> None:
    """Poll the queue and process jobs."""
    obj.init_db()
    job_worker = obj.worker()
    if once:
        outcome = job_worker.run_once()
        click.echo("No pending jobs" if outcome is None else f"Outcome: {outcome_name(outcome)}")
        return

    stop = threading.Event()

    def _stop(signum, frame):
        logger.info(f"[Worker] Received signal {signum}; finishing current job")
        stop.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    processed = job_worker.run_forever(stop_event=stop, max_jobs=max_jobs)
    click.echo(f"Processed {processed} jobs")


@cli.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in JobStatus]),
    help="Filter by status",
)
@click.option("--limit", type=int, default=20, show_default=True, help="Show the most recent N jobs")
@click.pass_obj
def jobs(obj: Context, status: Optional[str], limit: int) -> None:
    """List queued and finished jobs."""
    obj.init_db()
    records = obj.queue.list_jobs(JobStatus(status) if status else None)
    if not records:
        click.echo("No jobs found")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Repository")
    table.add_column("Branch")
    table.add_column("Outcome")
    table.add_column("PR")
    for record in records[-limit:]:
        table.add_row(
            record.id[:8],
            record.kind,
            record.status.value,
            record.target_repo,
            record.branch_name,
            record.outcome or "-",
            record.pr_url or "-",
        )
    Console().print(table)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
