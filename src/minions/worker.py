"""Job worker.

Claims jobs from the queue and dispatches them by kind:

- build: run the build pipeline, record the outcome, and on a terminal
  failure classify it and (for self-improvable categories) enqueue a
  self_improve job.
- self_improve: run the spawner. These jobs are never classified, so a
  failing fix cannot spawn another fix.

The poll loop backs off exponentially while the queue is unreachable.
"""

from __future__ import annotations

import logging
import threading
import time
from functools import partial
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .agent_auth import AgentAuthChain
from .classifier import FailureClassifier
from .config import ProcessEnvironment, Settings
from .credentials import CredentialChain
from .events import EventLog, EventType
from .exceptions import ConfigError, MinionsError, ValidationFailure
from .github_client import GitHubClient
from .job_queue import SqlJobQueue, new_job_id
from .logging_config import job_context
from .outcomes import (
    InfrastructureFailure,
    PipelineOutcome,
    ValidationFailed,
    ValidationStage,
    is_failure,
)
from .pipeline import create_build_pipeline
from .sanitizer import head, redact_secrets, tail
from .schemas import FailureClassification, Job, JobKind, SelfImprovementRequest
from .self_improve import FailureContext, create_self_improvement_spawner, fix_branch_name
from .store import RunStore

logger = logging.getLogger(__name__)

ORIGINAL_TASK_CHARS = 2000
LOG_EXCERPT_CHARS = 3000


def failure_text(outcome: PipelineOutcome) -> str:
    if isinstance(outcome, ValidationFailed):
        return outcome.error_output
    if isinstance(outcome, InfrastructureFailure):
        return outcome.message
    return ""


class JobWorker:
    """Processes one job at a time."""

    def __init__(
        self,
        settings: Settings,
        env: ProcessEnvironment,
        store: RunStore,
        queue: SqlJobQueue,
        github: GitHubClient,
        credentials: CredentialChain,
        agent_auth: AgentAuthChain,
        classifier: Optional[FailureClassifier] = None,
        pipeline_factory: Callable = create_build_pipeline,
        spawner_factory: Callable = create_self_improvement_spawner,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.env = env
        self.store = store
        self.queue = queue
        self.github = github
        self.credentials = credentials
        self.agent_auth = agent_auth
        self.classifier = classifier
        self.pipeline_factory = pipeline_factory
        self.spawner_factory = spawner_factory
        self.sleep = sleep

    def process(self, job: Job) -> PipelineOutcome:
        """Run `job` to its terminal outcome and record it."""
        with job_context(job.id):
            event_log = EventLog(job.id, [self.store.event_sink()])
            logger.info(f"[Worker] Processing {job.kind.value} job {job.short_id} ({job.target_repo})")
            if job.kind == JobKind.SELF_IMPROVE:
                return self._process_self_improve(job, event_log)
            return self._process_build(job, event_log)

    def _process_build(self, job: Job, event_log: EventLog) -> PipelineOutcome:
        try:
            pipeline = self.pipeline_factory(
                job,
                self.settings,
                self.env,
                self.github,
                self.credentials,
                self.agent_auth,
                event_log,
                on_attempt=partial(self.store.record_attempt, job.id),
            )
        except ConfigError as e:
            event_log.emit(EventType.BUILD_FAILED, f"Configuration error: {e}")
            outcome: PipelineOutcome = InfrastructureFailure(message=str(e))
        else:
            outcome = pipeline.run(job)

        run_id = self.store.record_outcome(job.id, outcome)
        self.queue.complete(job.id, outcome)
        if is_failure(outcome):
            self.handle_failed_job(job, outcome, run_id, event_log)
        return outcome

    def _process_self_improve(self, job: Job, event_log: EventLog) -> PipelineOutcome:
        request = job.self_improvement
        if request is None:
            outcome: PipelineOutcome = InfrastructureFailure("self_improve job has no payload")
        else:
            spawner = self.spawner_factory(
                self.settings, self.env, self.github, self.credentials, self.agent_auth, event_log
            )
            try:
                outcome = spawner.spawn_fix(
                    request.classification,
                    request.source_job_id,
                    FailureContext(request.original_task, request.log_excerpts),
                )
            except ValidationFailure as e:
                outcome = ValidationFailed(stage=ValidationStage(e.stage), error_output=e.error_output)
            except MinionsError as e:
                # PermissionDenied lands here too: failed, never retried
                outcome = InfrastructureFailure(message=redact_secrets(str(e)))

        if is_failure(outcome):
            event_log.emit(EventType.BUILD_FAILED, f"[self-improve] Failed: {head(failure_text(outcome), 500)}")
        self.store.record_outcome(job.id, outcome)
        self.queue.complete(job.id, outcome)
        return outcome

    def handle_failed_job(
        self,
        job: Job,
        outcome: PipelineOutcome,
        run_id: int,
        event_log: EventLog,
    ) -> Optional[str]:
        """Classify a failed build job; enqueue a self-improvement job if warranted.

        Returns:
            The id of the enqueued self_improve job, if any.
        """
        if job.kind == JobKind.SELF_IMPROVE:
            return None
        if self.classifier is None:
            logger.info(f"[Worker] No classifier configured; skipping classification of {job.short_id}")
            return None

        logs = self.store.render_logs(job.id)
        classification = self.classifier.classify(logs, failure_text(outcome), job.task_spec, job.kind.value)
        if classification is None:
            return None

        self.store.record_classification(run_id, classification)
        event_log.emit(
            EventType.CLASSIFIED,
            f"Failure classified as {classification.category.value}",
            category=classification.category.value,
            analysis=classification.analysis,
        )
        if not classification.category.is_self_improvable:
            return None

        fix_job = self._self_improvement_job(job, classification, logs)
        self.queue.enqueue(fix_job)
        event_log.emit(
            EventType.SELF_IMPROVE_QUEUED,
            f"Queued self-improvement job {fix_job.short_id} ({classification.category.value})",
            self_improve_job_id=fix_job.id,
        )
        return fix_job.id

    def _self_improvement_job(
        self, job: Job, classification: FailureClassification, logs: str
    ) -> Job:
        return Job(
            id=new_job_id(),
            kind=JobKind.SELF_IMPROVE,
            target_repo=self.settings.orchestrator_repo,
            branch_name=fix_branch_name(classification, job.id),
            base_branch=self.settings.orchestrator_base_branch,
            title=f"fix({classification.category.value}): {classification.fix_summary[:60]}",
            task_spec=classification.fix_summary,
            self_improvement=SelfImprovementRequest(
                source_job_id=job.id,
                classification=classification,
                original_task=job.task_spec[:ORIGINAL_TASK_CHARS],
                log_excerpts=tail(logs, LOG_EXCERPT_CHARS),
            ),
        )

    def run_once(self) -> Optional[PipelineOutcome]:
        """Claim and process at most one job."""
        job = self.queue.claim_next(self.settings.worker_id)
        if job is None:
            return None
        try:
            return self.process(job)
        except Exception as e:
            logger.exception(f"[Worker] Job {job.short_id} crashed")
            self.queue.fail(job.id, f"Worker error: {e}")
            return InfrastructureFailure(message=redact_secrets(str(e)))

    def run_forever(self, stop_event: Optional[threading.Event] = None, max_jobs: Optional[int] = None) -> int:
        """Poll until `stop_event` is set or `max_jobs` jobs were processed.

        Returns:
            Number of jobs processed.
        """
        processed = 0
        consecutive_errors = 0
        logger.info(f"[Worker] {self.settings.worker_id} polling for jobs")
        while not (stop_event and stop_event.is_set()):
            if max_jobs is not None and processed >= max_jobs:
                break
            try:
                outcome = self.run_once()
            except SQLAlchemyError as e:
                consecutive_errors += 1
                delay = self.backoff_delay(consecutive_errors)
                logger.warning(f"[Worker] Queue unavailable ({e}); retrying in {delay:.0f}s")
                self.sleep(delay)
                continue

            consecutive_errors = 0
            if outcome is None:
                self.sleep(self.settings.poll_interval_seconds)
            else:
                processed += 1
        return processed

    def backoff_delay(self, consecutive_errors: int) -> float:
        return min(
            self.settings.poll_interval_seconds * (2 ** (consecutive_errors - 1)),
            self.settings.max_backoff_seconds,
        )
