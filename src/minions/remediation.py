"""Remediation loop.

State machine driven by validation results::

    VALIDATING --pass--> SUCCEEDED
    VALIDATING --fail, attempts < max--> REMEDIATING --> VALIDATING
    VALIDATING --fail, attempts == max--> EXHAUSTED_FAILED

Each remediation attempt is recorded through `on_attempt` *before* the agent
is invoked, so the audit trail survives a crash mid-fix. An agent failure
during remediation still consumes the attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from .config import ProcessEnvironment
from .codegen import CodeGenerator
from .events import EventLog, EventType
from .exceptions import AgentInvocationError
from .outcomes import RemediationAttempt, ValidationResult
from .prompts import build_fix_prompt
from .sanitizer import tail

logger = logging.getLogger(__name__)

MAX_REMEDIATION_ATTEMPTS = 2
ERROR_EXCERPT_CHARS = 1000


class LoopState(str, Enum):
    VALIDATING = "validating"
    REMEDIATING = "remediating"
    SUCCEEDED = "succeeded"
    EXHAUSTED_FAILED = "exhausted_failed"


@dataclass(frozen=True)
class RemediationResult:
    state: LoopState
    final: ValidationResult
    attempts: Tuple[RemediationAttempt, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state == LoopState.SUCCEEDED


class RemediationLoop:
    """Validate, and on failure ask the agent to fix it, up to `max_attempts` times."""

    def __init__(
        self,
        validator,
        generator: CodeGenerator,
        agent_env: ProcessEnvironment,
        agent_timeout: int,
        max_attempts: int = MAX_REMEDIATION_ATTEMPTS,
        event_log: Optional[EventLog] = None,
        on_attempt: Optional[Callable[[RemediationAttempt], None]] = None,
    ):
        """
        Args:
            validator: Anything with `validate(workdir) -> ValidationResult`
            generator: Agent invoker used for fixes
            agent_env: Environment for fix invocations
            agent_timeout: Primary agent budget; each fix gets half of it
            max_attempts: Remediation budget
            event_log: Event stream
            on_attempt: Called with each attempt before the agent runs
        """
        self.validator = validator
        self.generator = generator
        self.agent_env = agent_env
        self.fix_timeout = max(1, agent_timeout // 2)
        self.max_attempts = max_attempts
        self.event_log = event_log
        self.on_attempt = on_attempt

    def run(self, workdir: Union[str, Path]) -> RemediationResult:
        attempts: List[RemediationAttempt] = []
        state = LoopState.VALIDATING
        result = self.validator.validate(workdir)

        while True:
            if result.success:
                state = LoopState.SUCCEEDED
                break
            if len(attempts) >= self.max_attempts:
                state = LoopState.EXHAUSTED_FAILED
                break

            state = LoopState.REMEDIATING
            attempt = RemediationAttempt(
                attempt_number=len(attempts) + 1,
                stage=result.stage,
                error_excerpt=tail(result.error_output, ERROR_EXCERPT_CHARS),
            )
            attempts.append(attempt)
            self._record(attempt)

            try:
                self.generator.invoke(
                    build_fix_prompt(result.stage, result.error_output),
                    workdir,
                    self.fix_timeout,
                    self.agent_env,
                )
            except AgentInvocationError as e:
                logger.warning(f"[Remediation] Fix attempt {attempt.attempt_number} agent failed: {e}")
                self._emit(
                    EventType.REMEDIATION_AGENT_FAILED,
                    f"Fix attempt {attempt.attempt_number} agent run failed",
                    attempt=attempt.attempt_number,
                    timed_out=e.timed_out,
                )

            state = LoopState.VALIDATING
            result = self.validator.validate(workdir)

        if state == LoopState.EXHAUSTED_FAILED:
            logger.info(
                f"[Remediation] Still failing at {result.stage.value} after {len(attempts)} attempts"
            )
        return RemediationResult(state=state, final=result, attempts=tuple(attempts))

    def _record(self, attempt: RemediationAttempt) -> None:
        self._emit(
            EventType.REMEDIATION_ATTEMPT,
            f"Remediation attempt {attempt.attempt_number}/{self.max_attempts} ({attempt.stage.value})",
            attempt=attempt.attempt_number,
            stage=attempt.stage.value,
            error=attempt.error_excerpt,
        )
        if self.on_attempt is not None:
            self.on_attempt(attempt)

    def _emit(self, event_type: EventType, message: str, **payload) -> None:
        if self.event_log is not None:
            self.event_log.emit(event_type, message, **payload)
