"""Change publisher shared by the build and self-improvement pipelines.

Stages everything, and if the staged diff is empty returns `NoChanges`
without committing, pushing or opening a PR. Otherwise commits as the bot,
pushes `HEAD:refs/heads/<branch>` to a transient authenticated URL, and opens
the pull request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from .events import EventLog, EventType
from .exceptions import GitHubAPIError
from .git_adapter import GitAdapter, authenticated_remote_url
from .github_client import GitHubClient
from .outcomes import NoChanges, PullRequestOpened
from .sanitizer import validate_ref
from .workspace_manager import WorkspaceHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishRequest:
    """What to publish and where."""

    repo: str
    branch: str
    commit_message: str
    pr_title: str
    pr_body: str
    token: str = field(repr=False)
    base: str = "main"


class ChangePublisher:
    def __init__(
        self,
        git: GitAdapter,
        github: GitHubClient,
        host: str = "github.com",
        event_log: Optional[EventLog] = None,
    ):
        self.git = git
        self.github = github
        self.host = host
        self.event_log = event_log

    def publish(
        self, handle: WorkspaceHandle, request: PublishRequest
    ) -> Union[PullRequestOpened, NoChanges]:
        """Commit, push and open a PR, or report that nothing changed.

        Raises:
            CommandFailed: A git step failed (push rejected, etc.).
            GitHubAPIError: PR creation failed.
            InvalidRefError: Unsafe branch or base name.
        """
        validate_ref(request.branch)
        validate_ref(request.base)
        workdir = handle.path

        self._emit(EventType.COMMITTING, "Committing changes...")
        self.git.stage_all(workdir)
        if not self.git.staged_diff_stat(workdir):
            self._emit(EventType.NO_CHANGES, "No changes to commit; the agent made no modifications")
            return NoChanges()

        head_sha = self.git.commit(workdir, request.commit_message)
        self._emit(
            EventType.PUSHING,
            f"Pushing to {request.branch} (SHA: {head_sha[:7]})...",
            branch=request.branch,
            head_sha=head_sha,
        )
        self.git.push(
            workdir,
            authenticated_remote_url(request.repo, request.token, self.host),
            request.branch,
        )

        pr = self._open_pull_request(request)
        opened = PullRequestOpened(pr_number=pr["number"], pr_url=pr["html_url"], head_sha=head_sha)
        self._emit(
            EventType.PR_CREATED,
            f"PR created: #{opened.pr_number} {opened.pr_url}",
            pr_number=opened.pr_number,
            pr_url=opened.pr_url,
            head_sha=head_sha,
        )
        return opened

    def _open_pull_request(self, request: PublishRequest) -> dict:
        try:
            return self.github.create_pull_request(
                request.repo,
                request.pr_title,
                request.pr_body,
                request.branch,
                request.base,
                token=request.token,
            )
        except GitHubAPIError as e:
            # 422 when a PR for this head already exists; reuse it
            if e.status_code != 422:
                raise
            existing = self.github.find_open_pull_request(
                request.repo, request.branch, token=request.token
            )
            if existing is None:
                raise
            logger.info(f"[Publisher] Reusing open PR #{existing['number']} for {request.branch}")
            return existing

    def _emit(self, event_type: EventType, message: str, **payload) -> None:
        if self.event_log is not None:
            self.event_log.emit(event_type, message, **payload)
