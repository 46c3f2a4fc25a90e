"""Code-generation invoker.

Runs the coding agent CLI non-interactively inside a sandbox:

    claude --dangerously-skip-permissions --verbose --output-format stream-json
           --include-partial-messages -p <prompt>

stdout is consumed line by line; each stream-json record with tool-use or
text content becomes an `AGENT_OUTPUT` event, anything that is not JSON is
forwarded as a raw line. The invoker only reports exit status and budget; it
never judges the code the agent wrote.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from .agent_auth import API_KEY_ENV_VAR, OAUTH_ENV_VAR, AgentAuth
from .command_runner import kill_process_group
from .config import ProcessEnvironment
from .events import EventLog, EventType
from .exceptions import AgentInvocationError
from .sanitizer import redact_secrets, tail

logger = logging.getLogger(__name__)

AGENT_FLAGS = (
    "--dangerously-skip-permissions",
    "--verbose",
    "--output-format",
    "stream-json",
    "--include-partial-messages",
)

RESTRICTED_KEYS = ("HOME", "PATH")
STDERR_TAIL_CHARS = 2000
PREVIEW_CHARS = 200


def sandbox_environment(
    snapshot: ProcessEnvironment, forward_patterns: Sequence[str] = ()
) -> ProcessEnvironment:
    """Environment for git, install and validation commands in a sandbox.

    HOME, PATH and forwarded keys only; worker secrets stay out of the
    target repository's scripts.
    """
    env: Dict[str, str] = {k: snapshot.get(k) for k in RESTRICTED_KEYS if snapshot.get(k) is not None}
    for key, value in snapshot.variables.items():
        if any(fnmatch.fnmatchcase(key, pattern) for pattern in forward_patterns):
            env[key] = value
    env["CI"] = "true"
    return ProcessEnvironment(env)


def build_agent_environment(
    snapshot: ProcessEnvironment,
    auth: Optional[AgentAuth],
    restricted: bool = True,
    forward_patterns: Sequence[str] = (),
) -> ProcessEnvironment:
    """Compute the agent's environment from an explicit snapshot.

    Restricted mode passes only HOME, PATH, CI=true, NODE_ENV=production, the
    auth variable, and keys matching `forward_patterns` (e.g. ``NEXT_PUBLIC_*``).
    Full mode passes everything except CLAUDECODE, and drops ANTHROPIC_API_KEY
    when the agent runs on OAuth.
    """
    if restricted:
        env = sandbox_environment(snapshot, forward_patterns).as_dict()
        env["NODE_ENV"] = "production"
    else:
        env = {k: v for k, v in snapshot.variables.items() if k != "CLAUDECODE"}
        env["CI"] = "true"
        if auth is not None and auth.uses_oauth:
            env.pop(API_KEY_ENV_VAR, None)

    if auth is not None:
        env.update(auth.env())
    return ProcessEnvironment(env)


def auth_method(env: ProcessEnvironment) -> str:
    if env.get(OAUTH_ENV_VAR):
        return "oauth"
    if env.get(API_KEY_ENV_VAR):
        return "api-key"
    return "none"


def summarize_tool_input(tool: str, tool_input: Dict[str, Any]) -> str:
    if tool == "Read":
        return f"Reading {tool_input.get('file_path', 'file')}"
    if tool == "Edit":
        return f"Editing {tool_input.get('file_path', 'file')}"
    if tool == "Write":
        return f"Creating {tool_input.get('file_path', 'file')}"
    if tool == "Bash":
        return f"Running: {str(tool_input.get('command', ''))[:120]}"
    if tool == "Glob":
        return f"Searching files: {tool_input.get('pattern', '')}"
    if tool == "Grep":
        return f"Searching for: {tool_input.get('pattern', '')}"
    return f"Using tool: {tool}"


def parse_stream_line(line: str) -> List[Tuple[str, Dict[str, Any]]]:
    """Turn one stream-json line into `(message, payload)` pairs worth recording."""
    line = line.strip()
    if not line:
        return []
    try:
        record = json.loads(line)
    except ValueError:
        return [(f"[raw] {line[:300]}", {"kind": "raw"})]
    if not isinstance(record, dict):
        return [(f"[raw] {line[:300]}", {"kind": "raw"})]

    if record.get("type") != "assistant":
        return []
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []
    entries: List[Tuple[str, Dict[str, Any]]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use":
            name = block.get("name", "")
            tool_input = block.get("input")
            if not isinstance(tool_input, dict):
                tool_input = {}
            entries.append((summarize_tool_input(name, tool_input), {"kind": "tool_use", "tool": name}))
        elif block.get("type") == "text" and isinstance(block.get("text"), str) and block["text"].strip():
            entries.append((f"[agent] {block['text'].strip()[:PREVIEW_CHARS]}", {"kind": "text"}))
    return entries


class CodeGenerator(Protocol):
    def invoke(
        self, prompt: str, workdir: Union[str, Path], timeout: int, env: ProcessEnvironment
    ) -> None: ...


class AgentInvoker:
    """Spawns the agent CLI and streams its output into the event log."""

    def __init__(self, executable: str = "claude", event_log: Optional[EventLog] = None):
        self.executable = executable
        self.event_log = event_log

    def _command(self, prompt: str) -> List[str]:
        return [self.executable, *AGENT_FLAGS, "-p", prompt]

    def _display(self, prompt: str) -> str:
        return f"{self.executable} {' '.join(AGENT_FLAGS)} -p <prompt: {len(prompt)} chars>"

    def invoke(
        self, prompt: str, workdir: Union[str, Path], timeout: int, env: ProcessEnvironment
    ) -> None:
        """Run the agent to completion.

        Raises:
            AgentInvocationError: non-zero exit, timeout, or missing executable.
        """
        display = self._display(prompt)
        self._emit(
            EventType.GENERATION_STARTED,
            f"Starting agent (auth={auth_method(env)}, cwd={workdir}, prompt={len(prompt)} chars)",
        )
        try:
            proc = subprocess.Popen(
                self._command(prompt),
                cwd=str(workdir),
                env=env.as_dict(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise AgentInvocationError(display, 127, stderr_tail=redact_secrets(str(e))) from e

        stderr_lines: List[str] = []
        timed_out = threading.Event()

        def _drain_stderr() -> None:
            for err_line in proc.stderr:
                stderr_lines.append(err_line)
                if err_line.strip():
                    logger.debug(f"[Agent] [stderr] {redact_secrets(err_line.strip()[:300])}")

        def _kill() -> None:
            timed_out.set()
            kill_process_group(proc)

        drain = threading.Thread(target=_drain_stderr, daemon=True)
        drain.start()
        timer = threading.Timer(timeout, _kill)
        timer.start()
        try:
            for line in proc.stdout:
                for message, payload in parse_stream_line(line):
                    self._emit(EventType.AGENT_OUTPUT, message, **payload)
            proc.wait()
        finally:
            timer.cancel()
            drain.join(timeout=5)

        stderr_tail = redact_secrets(tail("".join(stderr_lines), STDERR_TAIL_CHARS))
        if timed_out.is_set():
            logger.warning(f"[Agent] Timed out after {timeout // 60} minutes")
            raise AgentInvocationError(display, None, stderr_tail=stderr_tail, timed_out=True)
        if proc.returncode != 0:
            raise AgentInvocationError(display, proc.returncode, stderr_tail=stderr_tail)

        self._emit(EventType.GENERATION_COMPLETED, "Agent finished")

    def _emit(self, event_type: EventType, message: str, **payload: Any) -> None:
        if self.event_log is not None:
            self.event_log.emit(event_type, message, **payload)
        else:
            logger.info(f"[Agent] {redact_secrets(message)}")
