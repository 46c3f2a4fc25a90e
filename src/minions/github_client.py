"""Repository-host REST client.

Thin wrapper over the GitHub REST API with the calls the pipeline needs:

- create_pull_request / find_open_pull_request
- check_push_permission (self-improvement pre-flight)
- create_installation_token (GitHub App auth, RS256 JWT via python-jose)

Network errors (connection reset, timeouts) are retried with tenacity, three
attempts with an incremental backoff. HTTP error statuses are not retried;
they surface as `GitHubAPIError` with the status code attached.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests
from jose import jwt
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .exceptions import GitHubAPIError, PermissionDenied
from .sanitizer import redact_secrets, tail

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
REQUEST_TIMEOUT_SECONDS = 30
MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 2.0

# Statuses that mean "this credential cannot see or write the repository"
DENIED_STATUSES = {401, 403, 404}


def create_app_jwt(app_id: str, private_key: str, now: Optional[int] = None) -> str:
    """Sign a short-lived GitHub App JWT (RS256).

    `iat` is backdated 60s for clock drift; GitHub rejects `exp` more than ten
    minutes out.
    """
    issued = int(now if now is not None else time.time())
    claims = {"iat": issued - 60, "exp": issued + 9 * 60, "iss": str(app_id)}
    # Keys stored in env vars usually carry literal "\n" sequences
    key = private_key.replace("\\n", "\n")
    return jwt.encode(claims, key, algorithm="RS256")


class GitHubClient:
    """Minimal GitHub REST client using requests."""

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
        timeout: int = REQUEST_TIMEOUT_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_seconds: float = BACKOFF_SECONDS,
    ):
        """
        Initialize GitHub client.

        Args:
            token: Bearer token (PAT or installation token)
            api_url: API base URL (GitHub Enterprise uses a different one)
            session: Optional requests session (injected in tests)
            timeout: Per-request timeout in seconds
            max_attempts: Attempts for network-level failures
            backoff_seconds: Backoff increment between attempts
        """
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "minions",
        }
        bearer = token or self.token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request, retrying connection errors and timeouts."""
        url = f"{self.api_url}{path}"
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self.session.request(
                        method,
                        url,
                        headers=self._headers(token),
                        timeout=self.timeout,
                        **kwargs,
                    )
        except requests.RequestException as e:
            raise GitHubAPIError(
                f"GitHub API {method} {path} failed after {self.max_attempts} attempts: "
                f"{redact_secrets(str(e))}"
            ) from e
        raise GitHubAPIError(f"GitHub API {method} {path} produced no response")

    @staticmethod
    def _error(response: requests.Response, action: str) -> GitHubAPIError:
        body = redact_secrets(tail(response.text or "", 1000))
        return GitHubAPIError(
            f"{action} failed: HTTP {response.status_code} {body}",
            status_code=response.status_code,
            response_body=body,
        )

    def create_pull_request(
        self,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str = "main",
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a PR and return `{"number": int, "html_url": str}`.

        Raises:
            GitHubAPIError: On any non-2xx response.
        """
        response = self._request(
            "POST",
            f"/repos/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
            token=token,
        )
        if response.status_code >= 300:
            raise self._error(response, f"Create PR for {repo} ({head} -> {base})")
        data = response.json()
        logger.info(f"[GitHub] Opened PR #{data['number']} on {repo}")
        return {"number": data["number"], "html_url": data["html_url"]}

    def find_open_pull_request(
        self, repo: str, head: str, token: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Return the open PR whose head is `head` in `repo`, if any."""
        owner = repo.split("/", 1)[0]
        response = self._request(
            "GET",
            f"/repos/{repo}/pulls",
            params={"state": "open", "head": f"{owner}:{head}"},
            token=token,
        )
        if response.status_code >= 300:
            logger.warning(f"[GitHub] Lookup of open PR for {head} failed: HTTP {response.status_code}")
            return None
        data = response.json()
        if not data:
            return None
        return {"number": data[0]["number"], "html_url": data[0]["html_url"]}

    def check_push_permission(self, repo: str, token: Optional[str] = None) -> None:
        """Verify the configured token can push to `repo`.

        Raises:
            PermissionDenied: HTTP 401/403/404, or `permissions.push` is false.
            GitHubAPIError: Any other failure.
        """
        response = self._request("GET", f"/repos/{repo}", token=token)
        if response.status_code in DENIED_STATUSES:
            raise PermissionDenied(
                f"Token cannot access {repo} (HTTP {response.status_code}). "
                "Check the token scopes and repository access."
            )
        if response.status_code >= 300:
            raise self._error(response, f"Permission lookup for {repo}")

        permissions = (response.json() or {}).get("permissions") or {}
        if not permissions.get("push"):
            raise PermissionDenied(
                f"Token does not have push access to {repo}. "
                "Use a fine-grained token with Contents: Read and write."
            )
        logger.debug(f"[GitHub] Push access to {repo} confirmed")

    def create_installation_token(self, installation_id: int, app_jwt: str) -> str:
        """Exchange an App JWT for an installation access token."""
        response = self._request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            token=app_jwt,
        )
        if response.status_code >= 300:
            raise self._error(response, f"Installation token for {installation_id}")
        return response.json()["token"]
