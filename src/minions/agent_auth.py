"""Authentication for the coding agent CLI.

The agent runs either on an OAuth subscription token or on an API key. OAuth
credentials use the CLI's credentials-file shape::

    {"claudeAiOauth": {"accessToken": "...", "refreshToken": "...",
                       "expiresAt": 1760000000000, "scopes": [...]}}

Tokens are refreshed when they expire within five minutes. Refreshed JSON is
written back to `system_credentials` so a restarted worker picks up the latest
refresh token instead of the (now rotated) seed.

Resolution order (`AgentAuthChain`):
1. Stored OAuth JSON (key `system_claude_oauth`)
2. `CLAUDE_CREDENTIALS_JSON` seed (persisted on first use)
3. `ANTHROPIC_API_KEY`
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .config import Settings
from .exceptions import CredentialUnavailable
from .sanitizer import redact_secrets, tail

logger = logging.getLogger(__name__)

OAUTH_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
REFRESH_BUFFER_MS = 5 * 60 * 1000
SYSTEM_CREDENTIAL_KEY = "system_claude_oauth"

OAUTH_ENV_VAR = "CLAUDE_CODE_OAUTH_TOKEN"
API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class OAuthCredentials:
    """Agent OAuth credentials; unknown fields are carried through untouched."""

    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, raw: str) -> "OAuthCredentials":
        """Parse the credentials-file JSON.

        Raises:
            CredentialUnavailable: Malformed JSON or missing tokens.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CredentialUnavailable("Agent OAuth credentials are not valid JSON") from e
        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        if not isinstance(oauth, dict):
            raise CredentialUnavailable("Agent OAuth credentials have no claudeAiOauth object")
        if not isinstance(oauth.get("accessToken"), str) or not isinstance(oauth.get("refreshToken"), str):
            raise CredentialUnavailable("Agent OAuth credentials are missing accessToken or refreshToken")
        try:
            expires_at = int(oauth.get("expiresAt") or 0)
        except (TypeError, ValueError) as e:
            raise CredentialUnavailable("Agent OAuth credentials have an invalid expiresAt") from e
        extra = {
            k: v for k, v in oauth.items() if k not in ("accessToken", "refreshToken", "expiresAt")
        }
        return cls(
            access_token=oauth["accessToken"],
            refresh_token=oauth["refreshToken"],
            expires_at=expires_at,
            extra=extra,
        )

    def to_json(self) -> str:
        oauth = dict(self.extra)
        oauth.update(
            accessToken=self.access_token,
            refreshToken=self.refresh_token,
            expiresAt=self.expires_at,
        )
        return json.dumps({"claudeAiOauth": oauth})

    def needs_refresh(self, now_ms: Optional[int] = None) -> bool:
        now = _now_ms() if now_ms is None else now_ms
        return self.expires_at <= now + REFRESH_BUFFER_MS


class OAuthRefresher:
    """Exchanges a refresh token for a new access token."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        token_url: str = OAUTH_TOKEN_URL,
        client_id: str = OAUTH_CLIENT_ID,
        timeout: int = 30,
    ):
        self.session = session or requests.Session()
        self.token_url = token_url
        self.client_id = client_id
        self.timeout = timeout

    def refresh(self, creds: OAuthCredentials, now_ms: Optional[int] = None) -> OAuthCredentials:
        now = _now_ms() if now_ms is None else now_ms
        try:
            response = self.session.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.client_id,
                    "refresh_token": creds.refresh_token,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CredentialUnavailable(f"OAuth refresh request failed: {redact_secrets(str(e))}") from e

        if response.status_code >= 300:
            raise CredentialUnavailable(
                f"OAuth refresh failed ({response.status_code}): "
                f"{redact_secrets(tail(response.text or '', 500))}"
            )
        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data["expires_in"])
            refresh_token = data.get("refresh_token") or creds.refresh_token
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise CredentialUnavailable(f"OAuth refresh returned an unusable response: {e!r}") from e
        if not isinstance(access_token, str) or not access_token:
            raise CredentialUnavailable("OAuth refresh returned no access token")

        refreshed = replace(
            creds,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + expires_in * 1000,
        )
        logger.info(f"[AgentAuth] Token refreshed, valid for {expires_in // 60} min")
        return refreshed


@dataclass(frozen=True)
class AgentAuth:
    """Resolved agent authentication."""

    method: str  # "oauth" or "api_key"
    token: str = field(repr=False)

    def env(self) -> Dict[str, str]:
        if self.method == "oauth":
            return {OAUTH_ENV_VAR: self.token}
        return {API_KEY_ENV_VAR: self.token}

    @property
    def uses_oauth(self) -> bool:
        return self.method == "oauth"


class _OAuthSource(ABC):
    """Shared refresh-and-persist logic for OAuth-backed sources."""

    name = "oauth"

    def __init__(self, store, refresher: Optional[OAuthRefresher] = None, clock: Callable[[], int] = _now_ms):
        self.store = store
        self.refresher = refresher or OAuthRefresher()
        self.clock = clock

    @abstractmethod
    def _load(self) -> Optional[str]:
        """Raw credentials JSON, or None when this source has nothing."""

    def get(self) -> Optional[AgentAuth]:
        raw = self._load()
        if not raw:
            return None
        creds = OAuthCredentials.from_json(raw)
        now = self.clock()
        if creds.needs_refresh(now):
            logger.info("[AgentAuth] Token expired or expiring soon, refreshing...")
            creds = self.refresher.refresh(creds, now)
            self._persist(creds.to_json())
        else:
            logger.debug(f"[AgentAuth] Token valid ({(creds.expires_at - now) // 60000} min remaining)")
        return AgentAuth(method="oauth", token=creds.access_token)

    def _persist(self, raw: str) -> None:
        if self.store is None:
            return
        try:
            self.store.put_credential(SYSTEM_CREDENTIAL_KEY, raw)
        except Exception as e:
            # Non-fatal
            logger.warning(f"[AgentAuth] Failed to persist refreshed credentials: {e}")


class StoredOAuthSource(_OAuthSource):
    """OAuth JSON persisted by an earlier refresh."""

    name = "stored_oauth"

    def _load(self) -> Optional[str]:
        if self.store is None:
            return None
        return self.store.get_credential(SYSTEM_CREDENTIAL_KEY)


class SeedOAuthSource(_OAuthSource):
    """OAuth JSON from `CLAUDE_CREDENTIALS_JSON`, copied to the store on first use."""

    name = "CLAUDE_CREDENTIALS_JSON"

    def __init__(self, raw: Optional[str], store=None, refresher=None, clock=_now_ms):
        super().__init__(store, refresher, clock)
        self.raw = raw

    def _load(self) -> Optional[str]:
        return self.raw

    def get(self) -> Optional[AgentAuth]:
        auth = super().get()
        if auth is not None and self.store is not None and not self.store.get_credential(SYSTEM_CREDENTIAL_KEY):
            self._persist(self.raw)
        return auth


class ApiKeySource:
    name = "ANTHROPIC_API_KEY"

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    def get(self) -> Optional[AgentAuth]:
        if not self.api_key:
            return None
        return AgentAuth(method="api_key", token=self.api_key)


class AgentAuthChain:
    """First source that yields credentials wins."""

    def __init__(self, sources: Sequence):
        self.sources: List = list(sources)

    def resolve(self) -> AgentAuth:
        """Return agent authentication.

        Raises:
            CredentialUnavailable: If no source is configured or all failed.
        """
        for source in self.sources:
            try:
                auth = source.get()
            except CredentialUnavailable as e:
                logger.warning(f"[AgentAuth] {source.name} unusable: {e}")
                continue
            if auth is not None:
                logger.info(f"[AgentAuth] Using {auth.method} auth from {source.name}")
                return auth
        raise CredentialUnavailable(
            "No agent credentials: set CLAUDE_CREDENTIALS_JSON or ANTHROPIC_API_KEY"
        )


def build_agent_auth_chain(settings: Settings, store=None, refresher: Optional[OAuthRefresher] = None) -> AgentAuthChain:
    """Assemble the default chain from settings."""
    seed = settings.claude_credentials_json.get_secret_value() if settings.claude_credentials_json else None
    api_key = settings.anthropic_api_key.get_secret_value() if settings.anthropic_api_key else None
    return AgentAuthChain(
        [
            StoredOAuthSource(store, refresher),
            SeedOAuthSource(seed, store, refresher),
            ApiKeySource(api_key),
        ]
    )
