"""End-to-end tests for BuildPipeline with fake collaborators."""

import json
from pathlib import Path
from unittest.mock import MagicMock

from conftest import AGENT_KEY, GITHUB_TOKEN, FakeGenerator, FakeGit, FakeGitHub, ScriptedValidator, failed
from minions.agent_auth import AgentAuthChain, OAuthRefresher, SeedOAuthSource
from minions.credentials import CredentialChain
from minions.events import EventType
from minions.exceptions import AgentInvocationError
from minions.outcomes import (
    InfrastructureFailure,
    NoChanges,
    PullRequestOpened,
    ValidationFailed,
    ValidationResult,
    ValidationStage,
)
from minions.schemas import Job


class TestBuildScenarios:
    """Generation, validation and remediation outcomes."""

    def test_first_pass_green_opens_pr(self, make_pipeline, job, sink):
        """Passing validation on the first try: PR with a head SHA and no attempts."""
        attempts = []
        git = FakeGit()
        pipeline = make_pipeline(
            FakeGenerator(), ScriptedValidator([ValidationResult.passed()]), git=git, on_attempt=attempts.append
        )

        outcome = pipeline.run(job)

        assert isinstance(outcome, PullRequestOpened)
        assert outcome.head_sha == git.sha
        assert attempts == []
        assert sink.of_type(EventType.BUILD_COMPLETED)[0].payload["pr_number"] == 42

    def test_one_remediation_fixes_build(self, make_pipeline, job):
        """Build fails once, attempt 1 fixes it: PR and one attempt at `build`."""
        attempts = []
        validator = ScriptedValidator([failed(ValidationStage.BUILD), ValidationResult.passed()])
        generator = FakeGenerator()

        outcome = make_pipeline(generator, validator, on_attempt=attempts.append).run(job)

        assert isinstance(outcome, PullRequestOpened)
        assert [(a.attempt_number, a.stage) for a in attempts] == [(1, ValidationStage.BUILD)]
        assert len(generator.calls) == 2

    def test_persistent_test_failure_exhausts_budget(self, make_pipeline, job, sink):
        """Tests failing on every pass: ValidationFailed at `test`, two attempts, no third fix."""
        attempts = []
        generator = FakeGenerator()
        github = FakeGitHub()
        validator = ScriptedValidator([failed(ValidationStage.TEST, "2 failing")])

        outcome = make_pipeline(generator, validator, github=github, on_attempt=attempts.append).run(job)

        assert isinstance(outcome, ValidationFailed)
        assert outcome.stage == ValidationStage.TEST
        assert len(attempts) == 2
        assert len(generator.calls) == 3
        assert github.created == []
        assert sink.of_type(EventType.BUILD_FAILED)[0].payload["stage"] == "test"

    def test_no_changes_is_not_a_failure(self, make_pipeline, job, sink):
        """An agent that changes nothing yields NoChanges and no PR."""
        github = FakeGitHub()
        outcome = make_pipeline(
            FakeGenerator(), ScriptedValidator([ValidationResult.passed()]), git=FakeGit(dirty=False), github=github
        ).run(job)

        assert isinstance(outcome, NoChanges)
        assert github.created == []
        assert sink.of_type(EventType.BUILD_FAILED) == []


class TestBuildInfrastructure:
    """Failures that are never remediated."""

    def test_install_failure_skips_generation(self, make_pipeline, job, runner, settings):
        """npm ci failing is an infrastructure failure; the agent never runs."""
        runner.fail_on("npm ci", stderr="ERESOLVE unable to resolve dependency tree")
        generator = FakeGenerator()

        outcome = make_pipeline(generator, ScriptedValidator([ValidationResult.passed()])).run(job)

        assert isinstance(outcome, InfrastructureFailure)
        assert "ERESOLVE" in outcome.message
        assert generator.calls == []
        assert list(Path(settings.scratch_root).iterdir()) == []

    def test_missing_credentials_fail_before_clone(self, make_pipeline, job, runner):
        """No token: nothing is cloned."""
        outcome = make_pipeline(
            FakeGenerator(), ScriptedValidator([ValidationResult.passed()]), credentials_chain=CredentialChain([])
        ).run(job)

        assert isinstance(outcome, InfrastructureFailure)
        assert runner.calls == []

    def test_broken_oauth_refresh_is_infrastructure(self, make_pipeline, job, runner, sink):
        """A refresh endpoint returning garbage ends the job with an outcome."""
        session = MagicMock()
        session.post.return_value = MagicMock(
            status_code=200, text="<html>", json=MagicMock(side_effect=ValueError("not json"))
        )
        expired = json.dumps({"claudeAiOauth": {"accessToken": "a", "refreshToken": "r", "expiresAt": 0}})
        pipeline = make_pipeline(FakeGenerator(), ScriptedValidator([ValidationResult.passed()]))
        pipeline.agent_auth = AgentAuthChain([SeedOAuthSource(expired, None, OAuthRefresher(session=session))])

        outcome = pipeline.run(job)

        assert isinstance(outcome, InfrastructureFailure)
        assert sink.of_type(EventType.BUILD_FAILED)
        assert runner.calls == []

    def test_unsafe_branch_rejected_before_clone(self, make_pipeline, job, runner):
        """A branch name with shell metacharacters never reaches git."""
        bad = job.model_copy(update={"branch_name": "feature/$(curl evil)"})
        outcome = make_pipeline(FakeGenerator(), ScriptedValidator([ValidationResult.passed()])).run(bad)

        assert isinstance(outcome, InfrastructureFailure)
        assert "Invalid ref name" in outcome.message
        assert runner.calls == []

    def test_initial_agent_failure_is_infrastructure(self, make_pipeline, job):
        """The first generation failing is not remediated."""
        generator = FakeGenerator([AgentInvocationError("claude -p <prompt>", None, timed_out=True)])
        validator = ScriptedValidator([ValidationResult.passed()])

        outcome = make_pipeline(generator, validator).run(job)

        assert isinstance(outcome, InfrastructureFailure)
        assert validator.calls == 0

    def test_sandbox_removed_after_success(self, make_pipeline, job, settings):
        """The sandbox is gone once the job finishes."""
        make_pipeline(FakeGenerator(), ScriptedValidator([ValidationResult.passed()])).run(job)
        assert list(Path(settings.scratch_root).iterdir()) == []


class TestAgentEnvironment:
    """What the coding agent is allowed to see."""

    def test_restricted_environment(self, make_pipeline, job):
        """Only HOME, PATH, forwarded keys, CI, NODE_ENV and the agent credential."""
        generator = FakeGenerator()
        make_pipeline(generator, ScriptedValidator([ValidationResult.passed()])).run(job)

        env = generator.calls[0]["env"].as_dict()
        assert env == {
            "HOME": "/home/worker",
            "PATH": "/usr/bin:/bin",
            "NEXT_PUBLIC_SITE_URL": "https://example.test",
            "CI": "true",
            "NODE_ENV": "production",
            "ANTHROPIC_API_KEY": AGENT_KEY,
        }
        assert GITHUB_TOKEN not in env.values()

    def test_prompt_carries_title_and_spec(self, make_pipeline, job):
        """The task prompt is built from the job."""
        generator = FakeGenerator()
        make_pipeline(generator, ScriptedValidator([ValidationResult.passed()])).run(job)
        prompt = generator.calls[0]["prompt"]
        assert job.title in prompt
        assert job.task_spec in prompt


def test_pr_targets_job_base_branch(make_pipeline, job):
    """The PR is opened from the job branch onto its base branch."""
    github = FakeGitHub()
    release_job = Job(**{**job.model_dump(), "base_branch": "release"})
    make_pipeline(FakeGenerator(), ScriptedValidator([ValidationResult.passed()]), github=github).run(release_job)
    assert github.created[0]["base"] == "release"
    assert github.created[0]["title"] == "feat: Add dark mode toggle"
