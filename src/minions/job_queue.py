"""Database-backed job queue.

`claim_next` is a compare-and-set (`pending -> processing`) so two workers
polling the same table never process the same job.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from .database import SessionLocal, session_scope
from .models import JobRecord, JobStatus
from .outcomes import PipelineOutcome, PullRequestOpened, outcome_name
from .sanitizer import redact_secrets
from .schemas import Job, JobKind, SelfImprovementRequest

logger = logging.getLogger(__name__)

CLAIM_CANDIDATES = 5


def new_job_id() -> str:
    return str(uuid.uuid4())


def job_to_record(job: Job) -> JobRecord:
    return JobRecord(
        id=job.id,
        kind=job.kind.value,
        status=JobStatus.PENDING,
        target_repo=job.target_repo,
        branch_name=job.branch_name,
        base_branch=job.base_branch,
        title=job.title,
        task_spec=job.task_spec,
        installation_id=job.installation_id,
        payload=job.self_improvement.model_dump(mode="json") if job.self_improvement else None,
    )


def record_to_job(record: JobRecord) -> Job:
    return Job(
        id=record.id,
        kind=JobKind(record.kind),
        target_repo=record.target_repo,
        branch_name=record.branch_name,
        base_branch=record.base_branch,
        title=record.title,
        task_spec=record.task_spec,
        installation_id=record.installation_id,
        self_improvement=(
            SelfImprovementRequest.model_validate(record.payload) if record.payload else None
        ),
    )


class SqlJobQueue:
    """Claim-once job queue over the `jobs` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or SessionLocal

    def enqueue(self, job: Job) -> str:
        with session_scope(self.session_factory) as db:
            db.add(job_to_record(job))
        logger.info(f"[JobQueue] Enqueued {job.kind.value} job {job.short_id} for {job.target_repo}")
        return job.id

    def ensure(self, job: Job) -> None:
        """Insert `job` as already processing unless it exists (direct CLI runs)."""
        with session_scope(self.session_factory) as db:
            if db.get(JobRecord, job.id) is None:
                record = job_to_record(job)
                record.status = JobStatus.PROCESSING
                record.claimed_at = datetime.now(timezone.utc)
                db.add(record)

    def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the oldest pending job, or return None."""
        with session_scope(self.session_factory) as db:
            candidates = (
                db.query(JobRecord.id)
                .filter(JobRecord.status == JobStatus.PENDING)
                .order_by(JobRecord.created_at, JobRecord.id)
                .limit(CLAIM_CANDIDATES)
                .all()
            )
            for (job_id,) in candidates:
                result = db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, JobRecord.status == JobStatus.PENDING)
                    .values(
                        status=JobStatus.PROCESSING,
                        worker_id=worker_id,
                        claimed_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount == 1:
                    record = db.get(JobRecord, job_id)
                    db.refresh(record)
                    logger.info(f"[JobQueue] {worker_id} claimed job {job_id[:8]}")
                    return record_to_job(record)
                logger.debug(f"[JobQueue] Lost claim race for {job_id[:8]}")
        return None

    def complete(self, job_id: str, outcome: PipelineOutcome) -> None:
        """Close a job with its outcome. Failing outcomes mark the job failed."""
        name = outcome_name(outcome)
        status = JobStatus.FAILED if name in ("validation_failed", "infrastructure_error") else JobStatus.COMPLETED
        values = {
            "status": status,
            "outcome": name,
            "completed_at": datetime.now(timezone.utc),
        }
        if isinstance(outcome, PullRequestOpened):
            values["pr_url"] = outcome.pr_url
        error = getattr(outcome, "error_output", None) or getattr(outcome, "message", None)
        if error:
            values["error"] = redact_secrets(error)[-2000:]
        self._update(job_id, **values)

    def fail(self, job_id: str, error: str) -> None:
        """Mark a job failed outside of a pipeline outcome (spawner errors)."""
        self._update(
            job_id,
            status=JobStatus.FAILED,
            error=redact_secrets(error)[-2000:],
            completed_at=datetime.now(timezone.utc),
        )

    def get(self, job_id: str) -> Optional[JobRecord]:
        with session_scope(self.session_factory) as db:
            record = db.get(JobRecord, job_id)
            if record is not None:
                db.expunge(record)
            return record

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobRecord]:
        with session_scope(self.session_factory) as db:
            query = db.query(JobRecord)
            if status is not None:
                query = query.filter(JobRecord.status == status)
            rows = query.order_by(JobRecord.created_at).all()
            db.expunge_all()
            return rows

    def _update(self, job_id: str, **values) -> None:
        with session_scope(self.session_factory) as db:
            db.execute(update(JobRecord).where(JobRecord.id == job_id).values(**values))
