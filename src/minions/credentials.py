"""Prioritized GitHub credential sources.

Each source either produces a token for a request or returns None; the chain
walks them in order. A source that errors is logged and skipped so an expired
App key does not block a job that a static token could still serve.

Default order:
1. GitHub App installation token (job carries an installation id)
2. Token stored in `system_credentials` (key `github_token`)
3. Static `GITHUB_TOKEN`
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from .config import Settings
from .exceptions import CredentialUnavailable, MinionsError
from .github_client import GitHubClient, create_app_jwt
from .sanitizer import redact_secrets

logger = logging.getLogger(__name__)

STORED_GITHUB_TOKEN_KEY = "github_token"


@dataclass(frozen=True)
class CredentialRequest:
    repo: str
    installation_id: Optional[int] = None


class CredentialSource(Protocol):
    name: str

    def get(self, request: CredentialRequest) -> Optional[str]: ...


class StaticCredentialSource:
    """A token fixed at startup (GITHUB_TOKEN)."""

    def __init__(self, token: Optional[str], name: str = "static"):
        self.token = token
        self.name = name

    def get(self, request: CredentialRequest) -> Optional[str]:
        return self.token or None


class StoredCredentialSource:
    """A token kept in the `system_credentials` table."""

    name = "stored"

    def __init__(self, store, key: str = STORED_GITHUB_TOKEN_KEY):
        self.store = store
        self.key = key

    def get(self, request: CredentialRequest) -> Optional[str]:
        return self.store.get_credential(self.key)


class GitHubAppInstallationSource:
    """Short-lived installation token minted from the App's private key."""

    name = "github_app"

    def __init__(self, client: GitHubClient, app_id: str, private_key: str):
        self.client = client
        self.app_id = app_id
        self.private_key = private_key

    def get(self, request: CredentialRequest) -> Optional[str]:
        if request.installation_id is None:
            return None
        app_jwt = create_app_jwt(self.app_id, self.private_key)
        token = self.client.create_installation_token(request.installation_id, app_jwt)
        logger.info(f"[Credentials] Minted installation token for {request.repo}")
        return token


class CredentialChain:
    """Walk sources in priority order and return the first token."""

    def __init__(self, sources: Sequence[CredentialSource]):
        self.sources: List[CredentialSource] = list(sources)

    def resolve(self, request: CredentialRequest) -> str:
        """Return a token for `request`.

        Raises:
            CredentialUnavailable: If no source produced a token.
        """
        for source in self.sources:
            try:
                token = source.get(request)
            except (MinionsError, ValueError) as e:
                logger.warning(
                    f"[Credentials] Source {source.name} failed for {request.repo}: "
                    f"{redact_secrets(str(e))}"
                )
                continue
            if token:
                logger.debug(f"[Credentials] Using {source.name} credential for {request.repo}")
                return token
        raise CredentialUnavailable(
            f"No GitHub credential available for {request.repo} "
            f"(tried: {', '.join(s.name for s in self.sources) or 'none'})"
        )


def build_credential_chain(
    settings: Settings, store=None, client: Optional[GitHubClient] = None
) -> CredentialChain:
    """Assemble the default chain from settings."""
    sources: List[CredentialSource] = []
    if settings.github_app_configured():
        sources.append(
            GitHubAppInstallationSource(
                client or GitHubClient(api_url=settings.github_api_url),
                settings.github_app_id,
                settings.github_app_private_key.get_secret_value(),
            )
        )
    if store is not None:
        sources.append(StoredCredentialSource(store))
    if settings.github_token is not None:
        sources.append(StaticCredentialSource(settings.github_token.get_secret_value(), "GITHUB_TOKEN"))
    return CredentialChain(sources)
