"""Sandbox workspace manager.

Clones the target repository into a fresh directory per job and guarantees
the directory is removed when the job is done, whatever the exit path.

Safety properties:
- One sandbox per job id; a stale directory at the same path is wiped first
- The credential appears only in the clone command line; `origin` is reset to
  the clean URL right after cloning
- Clone hooks are disabled (`core.hooksPath=/dev/null`)
- Agent instruction files shipped by the target repo (CLAUDE.md) are deleted

Example:
    >>> with manager.sandbox(job.id, job.target_repo, token) as handle:
    ...     run_pipeline(handle.path)
"""

from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .command_runner import CommandRunner
from .events import EventLog, EventType
from .exceptions import CommandFailed, InfrastructureError
from .git_adapter import LocalGitCliAdapter, authenticated_remote_url, clean_remote_url
from .sanitizer import redact_secrets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspaceHandle:
    """A cloned sandbox owned by one job."""

    job_id: str
    repo: str
    path: Path


class WorkspaceManager:
    """Creates and removes per-job sandboxes under a scratch root."""

    def __init__(
        self,
        runner: CommandRunner,
        scratch_root: Path,
        prefix: str = "builder",
        host: str = "github.com",
        instruction_files: Sequence[str] = ("CLAUDE.md",),
        event_log: Optional[EventLog] = None,
    ):
        """Initialize workspace manager.

        Args:
            runner: Command runner used for git
            scratch_root: Parent directory for sandboxes
            prefix: Directory name prefix (`<prefix>-<job_id[:8]>`)
            host: Repository host for remote URLs
            instruction_files: Repo-relative files removed after cloning
            event_log: Optional event stream for clone/cleanup events
        """
        self.runner = runner
        self.git = LocalGitCliAdapter(runner)
        self.scratch_root = Path(scratch_root)
        self.prefix = prefix
        self.host = host
        self.instruction_files: List[str] = list(instruction_files)
        self.event_log = event_log

    def path_for(self, job_id: str) -> Path:
        return self.scratch_root / f"{self.prefix}-{job_id[:8]}"

    def acquire(self, job_id: str, repo: str, credential: str) -> WorkspaceHandle:
        """Clone `repo` into a fresh sandbox.

        Raises:
            InfrastructureError: If the clone fails. Any partial directory is
                removed before raising.
        """
        path = self.path_for(job_id)
        if path.exists():
            logger.warning(f"[Workspace] Sandbox already exists, removing: {path}")
            shutil.rmtree(path, ignore_errors=True)
        self.scratch_root.mkdir(parents=True, exist_ok=True)

        self._emit(EventType.CLONING, f"Cloning {repo}...")
        try:
            self.git.clone(authenticated_remote_url(repo, credential, self.host), path, self.scratch_root)
            self.git.set_remote_url(path, clean_remote_url(repo, self.host))
        except CommandFailed as e:
            shutil.rmtree(path, ignore_errors=True)
            logger.error(f"[Workspace] Clone of {repo} failed")
            raise InfrastructureError(f"Failed to clone {repo}: {redact_secrets(str(e))}") from e

        handle = WorkspaceHandle(job_id=job_id, repo=repo, path=path)
        self._strip_instruction_files(handle)
        self._emit(EventType.CLONED, f"Cloned {repo}")
        logger.info(f"[Workspace] Created sandbox for job {job_id[:8]}: {path}")
        return handle

    def release(self, handle: WorkspaceHandle) -> None:
        """Remove the sandbox directory. Safe to call more than once."""
        if not handle.path.exists():
            logger.debug(f"[Workspace] Sandbox already gone: {handle.path}")
            return
        shutil.rmtree(handle.path, ignore_errors=True)
        logger.info(f"[Workspace] Removed sandbox: {handle.path}")

    @contextmanager
    def sandbox(self, job_id: str, repo: str, credential: str) -> Iterator[WorkspaceHandle]:
        """Acquire a sandbox and release it on every exit path."""
        handle = self.acquire(job_id, repo, credential)
        try:
            yield handle
        finally:
            self.release(handle)

    def _strip_instruction_files(self, handle: WorkspaceHandle) -> None:
        for name in self.instruction_files:
            target = handle.path / name
            if target.is_file():
                target.unlink()
                self._emit(
                    EventType.INSTRUCTION_FILE_REMOVED,
                    f"Removed {name} from target repo",
                    file=name,
                )

    def _emit(self, event_type: EventType, message: str, **payload) -> None:
        if self.event_log is not None:
            self.event_log.emit(event_type, message, **payload)
