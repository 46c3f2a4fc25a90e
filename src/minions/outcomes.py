"""Result types produced by the pipeline.

Everything here is immutable. A PipelineOutcome is the only value a build run
returns; the self-improvement pipeline returns the PR / no-op subset of the
same classes because both go through one publisher.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class ValidationStage(str, Enum):
    """Validation tiers, cheapest first."""

    LINT = "lint"
    TYPECHECK = "typecheck"
    BUILD = "build"
    TEST = "test"


@dataclass(frozen=True)
class ValidationResult:
    """Verdict of one tiered validation pass.

    Attributes:
        success: True when every stage passed.
        stage: Failing stage, or TEST when all stages passed.
        error_output: Redacted, bounded failure text ("" on success).
    """

    success: bool
    stage: ValidationStage
    error_output: str = ""

    @classmethod
    def passed(cls) -> "ValidationResult":
        return cls(success=True, stage=ValidationStage.TEST, error_output="")


@dataclass(frozen=True)
class RemediationAttempt:
    """Audit record written before each remediation invocation."""

    attempt_number: int
    stage: ValidationStage
    error_excerpt: str


@dataclass(frozen=True)
class PullRequestOpened:
    pr_number: int
    pr_url: str
    head_sha: str


@dataclass(frozen=True)
class NoChanges:
    """The generator made no modifications. Not an error."""

    reason: str = "No changes generated"


@dataclass(frozen=True)
class ValidationFailed:
    """Validation still failing after the remediation budget was spent."""

    stage: ValidationStage
    error_output: str


@dataclass(frozen=True)
class InfrastructureFailure:
    """Clone, install, push, credential or host API failure. Never remediated."""

    message: str


PublishOutcome = Union[PullRequestOpened, NoChanges]
PipelineOutcome = Union[PullRequestOpened, NoChanges, ValidationFailed, InfrastructureFailure]
SelfImprovementOutcome = PublishOutcome


def outcome_name(outcome: PipelineOutcome) -> str:
    """Stable string used when persisting an outcome."""
    if isinstance(outcome, PullRequestOpened):
        return "pr_opened"
    if isinstance(outcome, NoChanges):
        return "no_changes"
    if isinstance(outcome, ValidationFailed):
        return "validation_failed"
    return "infrastructure_error"


def is_failure(outcome: PipelineOutcome) -> bool:
    return isinstance(outcome, (ValidationFailed, InfrastructureFailure))
