"""Pydantic schemas for jobs and failure classification."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .sanitizer import is_safe_ref


class JobKind(str, Enum):
    BUILD = "build"
    SELF_IMPROVE = "self_improve"


class FailureCategory(str, Enum):
    """Closed taxonomy for terminal failures."""

    DOCS_GAP = "docs_gap"
    WIDGET_BUG = "widget_bug"
    AGENT_BUG = "agent_bug"
    CONSUMER_ERROR = "consumer_error"
    TRANSIENT = "transient"

    @property
    def is_self_improvable(self) -> bool:
        """True for categories that are the orchestrator's own fault."""
        return self in SELF_IMPROVABLE_CATEGORIES


SELF_IMPROVABLE_CATEGORIES = frozenset(
    {FailureCategory.DOCS_GAP, FailureCategory.WIDGET_BUG, FailureCategory.AGENT_BUG}
)


class FailureClassification(BaseModel):
    """Structured verdict from the failure classifier."""

    model_config = ConfigDict(frozen=True)

    category: FailureCategory
    analysis: str = ""
    fix_summary: str = ""


class SelfImprovementRequest(BaseModel):
    """Payload carried by a self_improve job."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_job_id: str
    classification: FailureClassification
    original_task: str = Field(default="", max_length=2000)
    log_excerpts: str = Field(default="", max_length=3000)


class Job(BaseModel):
    """An immutable unit of work, owned by the scheduler."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    kind: JobKind = JobKind.BUILD
    target_repo: str = Field(..., pattern=r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
    branch_name: str
    task_spec: str = ""
    title: str = ""
    base_branch: str = "main"
    installation_id: Optional[int] = None
    self_improvement: Optional[SelfImprovementRequest] = None

    @field_validator("base_branch")
    @classmethod
    def _base_branch_is_safe(cls, value: str) -> str:
        if not is_safe_ref(value):
            raise ValueError(f"unsafe base branch: {value!r}")
        return value

    @property
    def short_id(self) -> str:
        return self.id[:8]
