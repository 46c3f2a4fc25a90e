"""Build pipeline: one Job in, one PipelineOutcome out.

    resolve credentials -> clone -> install -> branch -> generate
        -> validate/remediate -> publish

Infrastructure problems (credentials, clone, install, push, host API, unsafe
refs, agent failure on the first generation) become `InfrastructureFailure`
and are never remediated. Validation that is still failing once the
remediation budget is spent becomes `ValidationFailed`. The sandbox is
released on every path.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .agent_auth import AgentAuthChain
from .codegen import AgentInvoker, CodeGenerator, build_agent_environment, sandbox_environment
from .command_runner import CommandRunner
from .config import ProcessEnvironment, Settings, load_project_commands
from .credentials import CredentialChain, CredentialRequest
from .events import EventLog, EventType
from .exceptions import CredentialUnavailable, InfrastructureError, InvalidRefError
from .git_adapter import GitAdapter, LocalGitCliAdapter
from .github_client import GitHubClient
from .outcomes import (
    InfrastructureFailure,
    PipelineOutcome,
    PullRequestOpened,
    RemediationAttempt,
    ValidationFailed,
)
from .prompts import build_pr_body, build_task_prompt
from .publisher import ChangePublisher, PublishRequest
from .remediation import RemediationLoop
from .sanitizer import redact_secrets, tail, validate_ref
from .schemas import Job
from .validator import TieredValidator
from .workspace_manager import WorkspaceManager

logger = logging.getLogger(__name__)

BUILD_FAILED_ERROR_CHARS = 2000


class BuildPipeline:
    """Drives a single build job to its terminal outcome."""

    def __init__(
        self,
        settings: Settings,
        env: ProcessEnvironment,
        workspace: WorkspaceManager,
        runner: CommandRunner,
        git: GitAdapter,
        generator: CodeGenerator,
        validator,
        publisher: ChangePublisher,
        credentials: CredentialChain,
        agent_auth: AgentAuthChain,
        install_command: str,
        event_log: EventLog,
        on_attempt: Optional[Callable[[RemediationAttempt], None]] = None,
    ):
        self.settings = settings
        self.env = env
        self.workspace = workspace
        self.runner = runner
        self.git = git
        self.generator = generator
        self.validator = validator
        self.publisher = publisher
        self.credentials = credentials
        self.agent_auth = agent_auth
        self.install_command = install_command
        self.event_log = event_log
        self.on_attempt = on_attempt

    def run(self, job: Job) -> PipelineOutcome:
        """Process `job`. Never raises for expected failures."""
        try:
            validate_ref(job.branch_name)
            validate_ref(job.base_branch)
            token = self.credentials.resolve(CredentialRequest(job.target_repo, job.installation_id))
            auth = self.agent_auth.resolve()
        except (InvalidRefError, CredentialUnavailable, InfrastructureError) as e:
            return self._infrastructure_failure(e)

        agent_env = build_agent_environment(
            self.env,
            auth,
            restricted=True,
            forward_patterns=self.settings.env_forward_patterns(),
        )

        try:
            with self.workspace.sandbox(job.id, job.target_repo, token) as handle:
                self.event_log.emit(
                    EventType.INSTALLING_DEPENDENCIES,
                    f"Installing dependencies ({self.install_command})...",
                )
                self.runner.run(self.install_command, cwd=handle.path)

                self.git.create_branch(handle.path, job.branch_name)
                self.event_log.emit(
                    EventType.BRANCH_CREATED, f"Created branch: {job.branch_name}", branch=job.branch_name
                )

                self.generator.invoke(
                    build_task_prompt(job),
                    handle.path,
                    self.settings.agent_timeout_seconds,
                    agent_env,
                )

                loop = RemediationLoop(
                    validator=self.validator,
                    generator=self.generator,
                    agent_env=agent_env,
                    agent_timeout=self.settings.agent_timeout_seconds,
                    max_attempts=self.settings.max_remediation_attempts,
                    event_log=self.event_log,
                    on_attempt=self.on_attempt,
                )
                result = loop.run(handle.path)
                if not result.succeeded:
                    final = result.final
                    self.event_log.emit(
                        EventType.BUILD_FAILED,
                        f"Validation still failing after {len(result.attempts)} remediation "
                        f"attempts: {final.stage.value}",
                        stage=final.stage.value,
                        error=tail(final.error_output, BUILD_FAILED_ERROR_CHARS),
                    )
                    return ValidationFailed(stage=final.stage, error_output=final.error_output)

                outcome = self.publisher.publish(
                    handle,
                    PublishRequest(
                        repo=job.target_repo,
                        branch=job.branch_name,
                        base=job.base_branch,
                        commit_message=f"feat: {job.title}\n\nImplemented from job {job.short_id}.",
                        pr_title=f"feat: {job.title}",
                        pr_body=build_pr_body(job),
                        token=token,
                    ),
                )
        except (InfrastructureError, InvalidRefError) as e:
            return self._infrastructure_failure(e)

        if isinstance(outcome, PullRequestOpened):
            self.event_log.emit(
                EventType.BUILD_COMPLETED,
                f"Build completed: PR #{outcome.pr_number}",
                pr_number=outcome.pr_number,
                pr_url=outcome.pr_url,
                head_sha=outcome.head_sha,
            )
        return outcome

    def _infrastructure_failure(self, error: Exception) -> InfrastructureFailure:
        message = redact_secrets(str(error))
        logger.error(f"[Pipeline] Infrastructure failure: {tail(message, 500)}")
        self.event_log.emit(
            EventType.BUILD_FAILED,
            "Build failed: infrastructure error",
            error=tail(message, BUILD_FAILED_ERROR_CHARS),
        )
        return InfrastructureFailure(message=message)


def create_build_pipeline(
    job: Job,
    settings: Settings,
    env: ProcessEnvironment,
    github: GitHubClient,
    credentials: CredentialChain,
    agent_auth: AgentAuthChain,
    event_log: EventLog,
    on_attempt: Optional[Callable[[RemediationAttempt], None]] = None,
) -> BuildPipeline:
    """Wire the real collaborators for one build job.

    Raises:
        ConfigError: The projects file is malformed.
    """
    commands = load_project_commands(job.target_repo, settings)
    runner = CommandRunner(
        sandbox_environment(env, settings.env_forward_patterns()),
        default_timeout=settings.step_timeout_seconds,
    )
    git = LocalGitCliAdapter(runner, settings.git_author_name, settings.git_author_email)
    return BuildPipeline(
        settings=settings,
        env=env,
        workspace=WorkspaceManager(
            runner,
            scratch_root=settings.scratch_root,
            prefix="builder",
            host=settings.github_host,
            instruction_files=settings.stripped_instruction_files(),
            event_log=event_log,
        ),
        runner=runner,
        git=git,
        generator=AgentInvoker(settings.agent_executable, event_log),
        validator=TieredValidator(runner, commands.validation, event_log),
        publisher=ChangePublisher(git, github, settings.github_host, event_log),
        credentials=credentials,
        agent_auth=agent_auth,
        install_command=commands.install,
        event_log=event_log,
        on_attempt=on_attempt,
    )

