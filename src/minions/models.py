"""Database models for jobs, run logs, remediation attempts and credentials"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobRecord(Base):
    """Queued unit of work"""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, index=True)
    kind = Column(String, nullable=False, default="build")  # build or self_improve
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)

    target_repo = Column(String, nullable=False)
    branch_name = Column(String, nullable=False)
    base_branch = Column(String, nullable=False, default="main")
    title = Column(String, nullable=False, default="")
    task_spec = Column(Text, nullable=False, default="")
    installation_id = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=True)  # self-improvement request

    worker_id = Column(String, nullable=True)
    outcome = Column(String, nullable=True)  # pr_opened, no_changes, validation_failed, infrastructure_error
    pr_url = Column(String, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    logs = relationship("RunLogEntry", back_populates="job", cascade="all, delete-orphan")
    attempts = relationship(
        "RemediationAttemptRecord", back_populates="job", cascade="all, delete-orphan"
    )
    runs = relationship("PipelineRunRecord", back_populates="job", cascade="all, delete-orphan")


class RunLogEntry(Base):
    """One pipeline event"""

    __tablename__ = "run_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    level = Column(String, nullable=False, default="info")
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    job = relationship("JobRecord", back_populates="logs")


class RemediationAttemptRecord(Base):
    """Audit row written before each remediation invocation"""

    __tablename__ = "remediation_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    stage = Column(String, nullable=False)
    error_excerpt = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    job = relationship("JobRecord", back_populates="attempts")


class PipelineRunRecord(Base):
    """Terminal outcome of one job, plus its failure classification if any"""

    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    outcome = Column(String, nullable=False)
    stage = Column(String, nullable=True)
    pr_number = Column(Integer, nullable=True)
    pr_url = Column(String, nullable=True)
    head_sha = Column(String, nullable=True)
    error_output = Column(Text, nullable=True)

    failure_category = Column(String, nullable=True)
    failure_analysis = Column(Text, nullable=True)
    fix_summary = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utcnow)

    job = relationship("JobRecord", back_populates="runs")


class SystemCredential(Base):
    """Key/value store for refreshable system credentials (agent OAuth JSON)"""

    __tablename__ = "system_credentials"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
