"""Self-improvement spawner.

When a failed run is classified as the orchestrator's own fault (docs_gap,
widget_bug, agent_bug), open a fix PR against the orchestrator's repository.

Ordering matters: the push-permission check runs before any clone or agent
call. Validation is asymmetric: a build failure aborts, a test failure is
logged as a warning and the PR is still opened.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from .agent_auth import AgentAuthChain
from .codegen import AgentInvoker, CodeGenerator, build_agent_environment, sandbox_environment
from .command_runner import CommandRunner
from .config import ProcessEnvironment, Settings
from .credentials import CredentialChain, CredentialRequest
from .events import EventLog, EventType
from .exceptions import CommandFailed, NotSelfImprovable, ValidationFailure
from .git_adapter import GitAdapter, LocalGitCliAdapter
from .github_client import GitHubClient
from .outcomes import NoChanges, PullRequestOpened
from .prompts import build_self_improvement_pr_body, build_self_improvement_prompt
from .publisher import ChangePublisher, PublishRequest
from .sanitizer import head, redact_secrets
from .schemas import FailureClassification
from .workspace_manager import WorkspaceManager

logger = logging.getLogger(__name__)

PR_TITLE_SUMMARY_CHARS = 60
TEST_WARNING_CHARS = 500


@dataclass(frozen=True)
class FailureContext:
    """What the fix agent is told about the failed run."""

    original_task: str = ""
    log_excerpts: str = ""


def fix_branch_name(classification: FailureClassification, source_job_id: str) -> str:
    return f"fix/{classification.category.value}-{source_job_id[:8]}"


class SelfImprovementSpawner:
    def __init__(
        self,
        settings: Settings,
        env: ProcessEnvironment,
        github: GitHubClient,
        credentials: CredentialChain,
        agent_auth: AgentAuthChain,
        workspace: WorkspaceManager,
        runner: CommandRunner,
        git: GitAdapter,
        generator: CodeGenerator,
        publisher: ChangePublisher,
        event_log: EventLog,
    ):
        self.settings = settings
        self.env = env
        self.github = github
        self.credentials = credentials
        self.agent_auth = agent_auth
        self.workspace = workspace
        self.runner = runner
        self.git = git
        self.generator = generator
        self.publisher = publisher
        self.event_log = event_log

    def spawn_fix(
        self,
        classification: FailureClassification,
        source_job_id: str,
        context: FailureContext,
    ) -> Union[PullRequestOpened, NoChanges]:
        """Open a fix PR against the orchestrator repository.

        Raises:
            NotSelfImprovable: consumer_error or transient.
            CredentialUnavailable: No GitHub token for the orchestrator repo.
            PermissionDenied: The token cannot push there.
            ValidationFailure: The fixed tree does not build.
            InfrastructureError: Clone, install, agent, push or PR failures.
        """
        category = classification.category
        if not category.is_self_improvable:
            raise NotSelfImprovable(f"Category {category.value} is not the orchestrator's fault")

        repo = self.settings.orchestrator_repo
        token = self.credentials.resolve(CredentialRequest(repo))
        self.github.check_push_permission(repo, token=token)

        agent_env = build_agent_environment(self.env, self.agent_auth.resolve(), restricted=False)
        branch = fix_branch_name(classification, source_job_id)
        short = source_job_id[:8]

        with self.workspace.sandbox(source_job_id, repo, token) as handle:
            self.runner.run(self.settings.self_improve_install_cmd, cwd=handle.path)
            self.git.create_branch(handle.path, branch)
            self.event_log.emit(
                EventType.BRANCH_CREATED,
                f"[self-improve] Running agent (category: {category.value})...",
                branch=branch,
            )
            self.generator.invoke(
                build_self_improvement_prompt(
                    classification,
                    context.original_task,
                    context.log_excerpts,
                    repo,
                    self.settings.widget_source_dir,
                ),
                handle.path,
                self.settings.self_improve_agent_timeout_seconds,
                agent_env,
            )

            try:
                self.runner.run(self.settings.self_improve_build_cmd, cwd=handle.path)
            except CommandFailed as e:
                self.event_log.emit(EventType.VALIDATION_FAILED, "[self-improve] Build failed", stage="build")
                raise ValidationFailure("build", redact_secrets(str(e))) from e
            self.event_log.emit(EventType.VALIDATION_PASSED, "[self-improve] Build passed", stage="build")

            try:
                self.runner.run(self.settings.self_improve_test_cmd, cwd=handle.path)
                self.event_log.emit(EventType.VALIDATION_PASSED, "[self-improve] Tests passed", stage="test")
            except CommandFailed as e:
                self.event_log.emit(
                    EventType.WARNING,
                    f"[self-improve] Tests had issues (proceeding): {head(str(e), TEST_WARNING_CHARS)}",
                    stage="test",
                )

            outcome = self.publisher.publish(
                handle,
                PublishRequest(
                    repo=repo,
                    branch=branch,
                    base=self.settings.orchestrator_base_branch,
                    commit_message=(
                        f"fix({category.value}): auto-fix from failed run {short}\n\n"
                        f"Triggered by failure analysis of job {source_job_id}."
                    ),
                    pr_title=f"fix({category.value}): {classification.fix_summary[:PR_TITLE_SUMMARY_CHARS]}",
                    pr_body=build_self_improvement_pr_body(classification, source_job_id),
                    token=token,
                ),
            )

        if isinstance(outcome, PullRequestOpened):
            logger.info(f"[SelfImprove] Opened {outcome.pr_url} for job {short}")
        else:
            logger.warning(f"[SelfImprove] Agent made no changes for job {short}")
        return outcome


def create_self_improvement_spawner(
    settings: Settings,
    env: ProcessEnvironment,
    github: GitHubClient,
    credentials: CredentialChain,
    agent_auth: AgentAuthChain,
    event_log: EventLog,
) -> SelfImprovementSpawner:
    """Wire the real collaborators for one self-improvement job."""
    runner = CommandRunner(sandbox_environment(env), default_timeout=settings.step_timeout_seconds)
    git = LocalGitCliAdapter(runner, settings.git_author_name, settings.git_author_email)
    return SelfImprovementSpawner(
        settings=settings,
        env=env,
        github=github,
        credentials=credentials,
        agent_auth=agent_auth,
        workspace=WorkspaceManager(
            runner,
            scratch_root=settings.scratch_root,
            prefix="self-improve",
            host=settings.github_host,
            instruction_files=(),
            event_log=event_log,
        ),
        runner=runner,
        git=git,
        generator=AgentInvoker(settings.agent_executable, event_log),
        publisher=ChangePublisher(git, github, settings.github_host, event_log),
        event_log=event_log,
    )
