"""Fake collaborators shared by the pipeline tests.

Nothing here touches the network or spawns the agent; git and validation
commands are recorded by `FakeRunner` and answered from rules.
"""

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from minions.agent_auth import AgentAuthChain, ApiKeySource
from minions.command_runner import render_command
from minions.config import ProcessEnvironment, Settings, ValidationCommands
from minions.credentials import CredentialChain, StaticCredentialSource
from minions.events import EventLog, RecordingSink
from minions.exceptions import CommandFailed, GitHubAPIError, PermissionDenied
from minions.job_queue import SqlJobQueue
from minions.outcomes import ValidationResult, ValidationStage
from minions.pipeline import BuildPipeline
from minions.publisher import ChangePublisher
from minions.sanitizer import validate_ref
from minions.schemas import Job
from minions.store import RunStore
from minions.workspace_manager import WorkspaceManager

GITHUB_TOKEN = "ghs_" + "a" * 36
AGENT_KEY = "sk-ant-REDACTED"
JOB_ID = "3f2a9c1e-0000-4000-8000-000000000001"


class FakeRunner:
    """CommandRunner stand-in that records commands and fails on matching fragments."""

    def __init__(self):
        self.calls: List[tuple] = []
        self._failures: List[list] = []
        self._handlers: List[tuple] = []
        self._outputs: List[tuple] = []

    def fail_on(self, fragment: str, times: Optional[int] = None, exit_code: int = 1, stderr: str = "boom"):
        self._failures.append([fragment, times, exit_code, stderr])
        return self

    def on(self, fragment: str, action: Callable):
        self._handlers.append((fragment, action))
        return self

    def output(self, fragment: str, stdout: str):
        self._outputs.append((fragment, stdout))
        return self

    def run(self, command, cwd, timeout=None) -> str:
        rendered = render_command(command)
        self.calls.append((rendered, Path(cwd)))
        for fragment, action in self._handlers:
            if fragment in rendered:
                action(command, Path(cwd))
        for rule in self._failures:
            fragment, remaining, exit_code, stderr = rule
            if fragment in rendered and (remaining is None or remaining > 0):
                if remaining is not None:
                    rule[1] = remaining - 1
                raise CommandFailed(rendered, exit_code, stderr_tail=stderr)
        for fragment, stdout in self._outputs:
            if fragment in rendered:
                return stdout
        return ""

    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]


def clone_creates_checkout(command, cwd):
    """Runner handler: `git clone ... <dest>` creates a checkout with a CLAUDE.md."""
    dest = Path(command[-1])
    dest.mkdir(parents=True, exist_ok=True)
    (dest / "CLAUDE.md").write_text("# repo instructions\n")
    (dest / "package.json").write_text("{}\n")


class FakeGit:
    """GitAdapter stand-in; `dirty` decides whether anything is staged."""

    def __init__(self, dirty: bool = True, sha: str = "c0ffee1234567890abcdef1234567890abcdef12"):
        self.dirty = dirty
        self.sha = sha
        self.calls: List[tuple] = []
        self.pushed: List[tuple] = []

    def create_branch(self, workdir, branch):
        validate_ref(branch)
        self.calls.append(("create_branch", branch))

    def stage_all(self, workdir):
        self.calls.append(("stage_all",))

    def staged_diff_stat(self, workdir):
        return " src/app.tsx | 2 +-\n 1 file changed" if self.dirty else ""

    def commit(self, workdir, message):
        self.calls.append(("commit", message))
        return self.sha

    def push(self, workdir, remote_url, branch):
        self.calls.append(("push", branch))
        self.pushed.append((remote_url, branch))


class FakeGenerator:
    """CodeGenerator stand-in. Each invocation consumes the next effect.

    An effect is an exception to raise or a callable `(prompt, workdir)`.
    """

    def __init__(self, effects=None):
        self.effects = list(effects or [])
        self.calls: List[dict] = []

    def invoke(self, prompt, workdir, timeout, env):
        self.calls.append({"prompt": prompt, "workdir": Path(workdir), "timeout": timeout, "env": env})
        if self.effects:
            effect = self.effects.pop(0)
            if isinstance(effect, BaseException):
                raise effect
            if callable(effect):
                effect(prompt, workdir)


class ScriptedValidator:
    """Returns the scripted results in order; the last one repeats."""

    def __init__(self, results: List[ValidationResult]):
        self.results = list(results)
        self.calls = 0

    def validate(self, workdir):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeGitHub:
    """GitHubClient stand-in."""

    def __init__(self, pr_number: int = 42, can_push: bool = True, create_status: Optional[int] = None, existing=None):
        self.pr_number = pr_number
        self.can_push = can_push
        self.create_status = create_status
        self.existing = existing
        self.created: List[dict] = []
        self.permission_checks: List[str] = []

    def create_pull_request(self, repo, title, body, head, base="main", token=None):
        self.created.append({"repo": repo, "title": title, "body": body, "head": head, "base": base, "token": token})
        if self.create_status is not None:
            raise GitHubAPIError(f"HTTP {self.create_status}", status_code=self.create_status)
        return {"number": self.pr_number, "html_url": f"https://github.com/{repo}/pull/{self.pr_number}"}

    def find_open_pull_request(self, repo, head, token=None):
        return self.existing

    def check_push_permission(self, repo, token=None):
        self.permission_checks.append(repo)
        if not self.can_push:
            raise PermissionDenied(f"Token does not have push access to {repo}.")


def failed(stage: ValidationStage, text: str = "error TS2322") -> ValidationResult:
    return ValidationResult(success=False, stage=stage, error_output=text)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        scratch_root=str(tmp_path / "scratch"),
        projects_config_path=str(tmp_path / "missing-projects.yaml"),
        github_token=None,
        anthropic_api_key=None,
        claude_credentials_json=None,
        github_app_id=None,
        github_app_private_key=None,
    )


@pytest.fixture
def env():
    return ProcessEnvironment(
        {
            "HOME": "/home/worker",
            "PATH": "/usr/bin:/bin",
            "NEXT_PUBLIC_SITE_URL": "https://example.test",
            "DATABASE_URL": "postgres://secret@db/prod",
            "GITHUB_TOKEN": GITHUB_TOKEN,
            "CLAUDECODE": "1",
        }
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def event_log(sink):
    return EventLog(JOB_ID, [sink])


@pytest.fixture
def runner():
    return FakeRunner().on("git clone", clone_creates_checkout)


@pytest.fixture
def credentials():
    return CredentialChain([StaticCredentialSource(GITHUB_TOKEN, "GITHUB_TOKEN")])


@pytest.fixture
def agent_auth():
    return AgentAuthChain([ApiKeySource(AGENT_KEY)])


@pytest.fixture
def store(session_factory):
    return RunStore(session_factory)


@pytest.fixture
def queue(session_factory):
    return SqlJobQueue(session_factory)


@pytest.fixture
def job():
    return Job(
        id=JOB_ID,
        target_repo="acme/web",
        branch_name="feedback/issue-7",
        title="Add dark mode toggle",
        task_spec="Add a dark mode toggle to the navbar.",
    )


@pytest.fixture
def validation_commands():
    return ValidationCommands(
        lint="npm run lint --if-present",
        typecheck="npx tsc --noEmit --pretty",
        build="npm run build",
        test="npm test --if-present",
    )


@pytest.fixture
def make_pipeline(settings, env, runner, credentials, agent_auth, event_log):
    """Factory for a BuildPipeline wired with fakes."""

    def _make(generator, validator, git=None, github=None, on_attempt=None, credentials_chain=None):
        git = git or FakeGit()
        github = github or FakeGitHub()
        workspace = WorkspaceManager(
            runner,
            scratch_root=Path(settings.scratch_root),
            event_log=event_log,
        )
        return BuildPipeline(
            settings=settings,
            env=env,
            workspace=workspace,
            runner=runner,
            git=git,
            generator=generator,
            validator=validator,
            publisher=ChangePublisher(git, github, settings.github_host, event_log),
            credentials=credentials_chain or credentials,
            agent_auth=agent_auth,
            install_command="npm ci",
            event_log=event_log,
            on_attempt=on_attempt,
        )

    return _make
