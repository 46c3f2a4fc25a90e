"""Pipeline event stream.

Every step of a job emits a `PipelineEvent`. The event log redacts the message
and payload, writes it through `logging`, and hands it to each registered sink
(the database sink writes `run_logs` rows). A sink that raises is logged and
skipped; it never fails the job.

Example:
    >>> events = EventLog(job_id="3f2a...", sinks=[recorder])
    >>> events.emit(EventType.VALIDATION_FAILED, "lint failed", stage="lint")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .sanitizer import redact_secrets, sanitize_dict

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted while a job is processed."""

    CLONING = "cloning"
    CLONED = "cloned"
    INSTRUCTION_FILE_REMOVED = "instruction_file_removed"
    INSTALLING_DEPENDENCIES = "installing_dependencies"
    BRANCH_CREATED = "branch_created"
    GENERATION_STARTED = "generation_started"
    AGENT_OUTPUT = "agent_output"
    GENERATION_COMPLETED = "generation_completed"
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    REMEDIATION_ATTEMPT = "remediation_attempt"
    REMEDIATION_AGENT_FAILED = "remediation_agent_failed"
    COMMITTING = "committing"
    PUSHING = "pushing"
    PR_CREATED = "pr_created"
    NO_CHANGES = "no_changes"
    BUILD_COMPLETED = "build_completed"
    BUILD_FAILED = "build_failed"
    CLASSIFIED = "classified"
    SELF_IMPROVE_QUEUED = "self_improve_queued"
    WARNING = "warning"

    @property
    def level(self) -> str:
        if self in _ERROR_TYPES:
            return "error"
        if self in _WARNING_TYPES:
            return "warn"
        return "info"


_ERROR_TYPES = {EventType.BUILD_FAILED}
_WARNING_TYPES = {
    EventType.VALIDATION_FAILED,
    EventType.REMEDIATION_AGENT_FAILED,
    EventType.WARNING,
}

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


@dataclass(frozen=True)
class PipelineEvent:
    """One redacted entry in a job's event stream."""

    job_id: str
    type: EventType
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def level(self) -> str:
        return self.type.level


EventSink = Callable[[PipelineEvent], None]


class EventLog:
    """Redacting fan-out of pipeline events to sinks."""

    def __init__(self, job_id: str, sinks: Optional[List[EventSink]] = None):
        self.job_id = job_id
        self._sinks: List[EventSink] = list(sinks or [])

    def emit(self, event_type: EventType, message: str, **payload: Any) -> PipelineEvent:
        event = PipelineEvent(
            job_id=self.job_id,
            type=event_type,
            message=redact_secrets(message),
            payload=sanitize_dict(payload),
        )
        logger.log(
            _LOG_LEVELS[event.level],
            f"[Job {self.job_id[:8]}] {event.type.value}: {event.message}",
        )
        for sink in self._sinks:
            try:
                sink(event)
            except Exception as e:
                logger.warning(f"[EventLog] Sink failed for {event.type.value}: {e}")
        return event


class RecordingSink:
    """Keeps events in memory; used by the CLI summary and tests."""

    def __init__(self) -> None:
        self.events: List[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[PipelineEvent]:
        return [e for e in self.events if e.type == event_type]

    def types(self) -> List[EventType]:
        return [e.type for e in self.events]

    def render(self) -> str:
        """Render as `[level] message` lines, the shape the classifier reads."""
        return "\n".join(f"[{e.level}] {e.message}" for e in self.events)
