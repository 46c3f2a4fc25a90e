"""Tiered validation: lint, typecheck, build, test, cheapest first.

The first failing stage short-circuits; later stages are not run. The failure
text is the redacted `CommandFailed` message, so it carries the command, the
exit status and both output tails.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .command_runner import CommandRunner
from .config import ValidationCommands
from .events import EventLog, EventType
from .exceptions import CommandFailed
from .outcomes import ValidationResult, ValidationStage
from .sanitizer import redact_secrets

logger = logging.getLogger(__name__)

STAGE_ORDER = (
    ValidationStage.LINT,
    ValidationStage.TYPECHECK,
    ValidationStage.BUILD,
    ValidationStage.TEST,
)


class TieredValidator:
    """Runs the configured validation commands in order."""

    def __init__(
        self,
        runner: CommandRunner,
        commands: ValidationCommands,
        event_log: Optional[EventLog] = None,
        timeout: Optional[int] = None,
    ):
        self.runner = runner
        self.commands = commands
        self.event_log = event_log
        self.timeout = timeout

    def stages(self) -> List[Tuple[ValidationStage, str]]:
        return [(stage, getattr(self.commands, stage.value)) for stage in STAGE_ORDER]

    def validate(self, workdir: Union[str, Path]) -> ValidationResult:
        for stage, command in self.stages():
            try:
                self.runner.run(command, cwd=workdir, timeout=self.timeout)
            except CommandFailed as e:
                error_output = redact_secrets(str(e))
                logger.info(f"[Validator] {stage.value} failed in {workdir}")
                self._emit(
                    EventType.VALIDATION_FAILED,
                    f"Validation failed at {stage.value}",
                    stage=stage.value,
                    exit_code=e.exit_code,
                    timed_out=e.timed_out,
                )
                return ValidationResult(success=False, stage=stage, error_output=error_output)
            self._emit(EventType.VALIDATION_PASSED, f"{stage.value} passed", stage=stage.value)
        return ValidationResult.passed()

    def _emit(self, event_type: EventType, message: str, **payload) -> None:
        if self.event_log is not None:
            self.event_log.emit(event_type, message, **payload)
