"""Persistence for run logs, remediation attempts, outcomes and credentials.

`RunStore` opens a short session per write so an event from a failing step is
committed even if the job later blows up.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .database import SessionLocal, session_scope
from .events import EventSink, PipelineEvent
from .models import PipelineRunRecord, RemediationAttemptRecord, RunLogEntry, SystemCredential
from .outcomes import (
    InfrastructureFailure,
    PipelineOutcome,
    PullRequestOpened,
    RemediationAttempt,
    ValidationFailed,
    ValidationStage,
    outcome_name,
)
from .sanitizer import redact_secrets
from .schemas import FailureClassification

logger = logging.getLogger(__name__)


class RunStore:
    """Repository over the run tables."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    # ------------------------------------------------------------------
    # Run logs
    # ------------------------------------------------------------------

    def append_event(self, event: PipelineEvent) -> None:
        with session_scope(self.session_factory) as db:
            db.add(
                RunLogEntry(
                    job_id=event.job_id,
                    level=event.level,
                    event_type=event.type.value,
                    message=event.message,
                    payload=event.payload or None,
                    created_at=event.timestamp,
                )
            )

    def event_sink(self) -> EventSink:
        """Sink that writes each event as a `run_logs` row."""
        return self.append_event

    def list_run_logs(self, job_id: str) -> List[RunLogEntry]:
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(RunLogEntry)
                .filter(RunLogEntry.job_id == job_id)
                .order_by(RunLogEntry.id)
                .all()
            )
            db.expunge_all()
            return rows

    def render_logs(self, job_id: str) -> str:
        """Logs as `[level] message` lines, oldest first."""
        return "\n".join(f"[{row.level}] {row.message}" for row in self.list_run_logs(job_id))

    # ------------------------------------------------------------------
    # Remediation attempts
    # ------------------------------------------------------------------

    def record_attempt(self, job_id: str, attempt: RemediationAttempt) -> None:
        with session_scope(self.session_factory) as db:
            db.add(
                RemediationAttemptRecord(
                    job_id=job_id,
                    attempt_number=attempt.attempt_number,
                    stage=attempt.stage.value,
                    error_excerpt=redact_secrets(attempt.error_excerpt),
                )
            )
        logger.debug(f"[RunStore] Recorded remediation attempt {attempt.attempt_number} for {job_id[:8]}")

    def list_remediation_attempts(self, job_id: str) -> List[RemediationAttempt]:
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(RemediationAttemptRecord)
                .filter(RemediationAttemptRecord.job_id == job_id)
                .order_by(RemediationAttemptRecord.attempt_number, RemediationAttemptRecord.id)
                .all()
            )
            return [
                RemediationAttempt(
                    attempt_number=row.attempt_number,
                    stage=ValidationStage(row.stage),
                    error_excerpt=row.error_excerpt,
                )
                for row in rows
            ]

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(self, job_id: str, outcome: PipelineOutcome) -> int:
        """Persist the terminal outcome; returns the pipeline run id."""
        record = PipelineRunRecord(job_id=job_id, outcome=outcome_name(outcome))
        if isinstance(outcome, PullRequestOpened):
            record.pr_number = outcome.pr_number
            record.pr_url = outcome.pr_url
            record.head_sha = outcome.head_sha
        elif isinstance(outcome, ValidationFailed):
            record.stage = outcome.stage.value
            record.error_output = redact_secrets(outcome.error_output)
        elif isinstance(outcome, InfrastructureFailure):
            record.error_output = redact_secrets(outcome.message)

        with session_scope(self.session_factory) as db:
            db.add(record)
            db.flush()
            return record.id

    def record_classification(self, run_id: int, classification: FailureClassification) -> None:
        with session_scope(self.session_factory) as db:
            record = db.get(PipelineRunRecord, run_id)
            if record is None:
                logger.warning(f"[RunStore] Pipeline run {run_id} not found; classification dropped")
                return
            record.failure_category = classification.category.value
            record.failure_analysis = classification.analysis
            record.fix_summary = classification.fix_summary

    def latest_run(self, job_id: str) -> Optional[PipelineRunRecord]:
        with session_scope(self.session_factory) as db:
            row = (
                db.query(PipelineRunRecord)
                .filter(PipelineRunRecord.job_id == job_id)
                .order_by(PipelineRunRecord.id.desc())
                .first()
            )
            if row is not None:
                db.expunge(row)
            return row

    # ------------------------------------------------------------------
    # System credentials
    # ------------------------------------------------------------------

    def get_credential(self, key: str) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            row = db.get(SystemCredential, key)
            return row.value if row is not None else None

    def put_credential(self, key: str, value: str) -> None:
        with session_scope(self.session_factory) as db:
            row = db.get(SystemCredential, key)
            if row is None:
                db.add(SystemCredential(key=key, value=value))
            else:
                row.value = value
