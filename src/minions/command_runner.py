"""Blocking subprocess execution with hard timeouts and redacted failures.

A `str` command goes through the shell, which is how configured validation
commands (`npm run lint --if-present`) are written. A sequence is executed as
argv; every invocation that carries a user-controlled value (branch names,
remote URLs) uses that form.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Optional, Sequence, Union

from .config import ProcessEnvironment
from .exceptions import CommandFailed
from .sanitizer import redact_secrets, tail

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

DEFAULT_STEP_TIMEOUT = 5 * 60
OUTPUT_TAIL_CHARS = 2000


def render_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(part) for part in command)


def kill_process_group(proc: subprocess.Popen) -> None:
    """SIGKILL the whole session started for `proc`, grandchildren included."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _decode(value: Union[str, bytes, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class CommandRunner:
    """Run commands in a working directory with an explicit environment."""

    def __init__(self, env: ProcessEnvironment, default_timeout: int = DEFAULT_STEP_TIMEOUT):
        self.env = env.with_overrides(CI="true")
        self.default_timeout = default_timeout

    def run(self, command: Command, cwd: Union[str, Path], timeout: Optional[int] = None) -> str:
        """Run `command` and return its stdout.

        Raises:
            CommandFailed: non-zero exit, timeout, or an executable that could
                not be started (exit code 127). Command text and output tails
                are redacted.
        """
        budget = timeout or self.default_timeout
        shown = redact_secrets(render_command(command))
        logger.debug(f"[CommandRunner] {shown} (cwd={cwd}, timeout={budget}s)")

        shell = isinstance(command, str)
        args = command if shell else [str(part) for part in command]
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd),
                shell=shell,
                env=self.env.as_dict(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise self._failure(command, 127, str(e), "", False) from e

        try:
            stdout, stderr = proc.communicate(timeout=budget)
        except subprocess.TimeoutExpired:
            logger.warning(f"[CommandRunner] Timed out after {budget}s: {shown}")
            kill_process_group(proc)
            stdout, stderr = proc.communicate()
            raise self._failure(command, None, _decode(stderr), _decode(stdout), True)

        if proc.returncode != 0:
            raise self._failure(command, proc.returncode, stderr, stdout, False)
        return stdout

    @staticmethod
    def _failure(
        command: Command,
        exit_code: Optional[int],
        stderr: str,
        stdout: str,
        timed_out: bool,
    ) -> CommandFailed:
        return CommandFailed(
            command=redact_secrets(render_command(command)),
            exit_code=exit_code,
            stderr_tail=redact_secrets(tail(stderr, OUTPUT_TAIL_CHARS)),
            stdout_tail=redact_secrets(tail(stdout, OUTPUT_TAIL_CHARS)),
            timed_out=timed_out,
        )
