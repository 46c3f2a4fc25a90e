"""Failure classifier.

Sends a bounded failure context to a model and parses the reply into a
`FailureClassification`. Classification is best effort: a backend error or a
reply that does not parse yields None, which callers read as "skip
self-improvement". It never raises.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from anthropic import Anthropic

from .agent_auth import AgentAuth
from .exceptions import CredentialUnavailable
from .prompts import CLASSIFIER_INSTRUCTIONS, build_classifier_context
from .sanitizer import redact_secrets
from .schemas import FailureCategory, FailureClassification

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5"
MAX_TOKENS = 1024

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

VALID_CATEGORIES = {c.value for c in FailureCategory}


@dataclass(frozen=True)
class ParseError:
    """Why a classifier reply was rejected."""

    reason: str


def parse_classification(text: str) -> Union[FailureClassification, ParseError]:
    """Parse a model reply; fenced JSON is accepted, unknown categories are not."""
    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", (text or "").strip())).strip()
    match = _JSON_OBJECT.search(cleaned)
    if not match:
        return ParseError("no JSON object in reply")

    try:
        data = json.loads(match.group(0))
    except ValueError as e:
        return ParseError(f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return ParseError("reply is not a JSON object")

    category = data.get("category")
    if not isinstance(category, str) or category not in VALID_CATEGORIES:
        return ParseError(f"invalid category: {category!r}")

    return FailureClassification(
        category=FailureCategory(category),
        analysis=str(data.get("analysis") or ""),
        fix_summary=str(data.get("fix_summary") or ""),
    )


class ClassifierBackend(Protocol):
    def complete(self, system: str, context: str) -> str: ...


class AnthropicClassifierBackend:
    """Classifier backend on the Anthropic Messages API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        auth_token: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = 120.0,
        client: Optional[Anthropic] = None,
    ):
        self.model = model
        self.client = client or Anthropic(api_key=api_key, auth_token=auth_token, timeout=timeout)

    @classmethod
    def from_auth(cls, auth: AgentAuth, model: str = DEFAULT_MODEL, timeout: float = 120.0):
        if auth.uses_oauth:
            return cls(auth_token=auth.token, model=model, timeout=timeout)
        return cls(api_key=auth.token, model=model, timeout=timeout)

    def complete(self, system: str, context: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            system=system,
            messages=[{"role": "user", "content": context}],
            temperature=0,
        )
        return "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
        )


class FailureClassifier:
    def __init__(self, backend: ClassifierBackend):
        self.backend = backend

    def classify(
        self,
        logs: str,
        last_error: str,
        task_description: str,
        job_kind: str,
    ) -> Optional[FailureClassification]:
        """Classify a terminal failure, or return None.

        No backend call is made when there are neither logs nor an error.
        """
        if not (logs or "").strip() and not (last_error or "").strip():
            return None

        context = redact_secrets(
            build_classifier_context(logs or "", last_error or "", task_description or "", job_kind)
        )
        try:
            reply = self.backend.complete(CLASSIFIER_INSTRUCTIONS, context)
        except Exception as e:
            logger.error(f"[Classifier] Backend call failed: {redact_secrets(str(e))}")
            return None

        parsed = parse_classification(reply)
        if isinstance(parsed, ParseError):
            logger.error(f"[Classifier] Unusable reply: {parsed.reason}")
            return None

        logger.info(f"[Classifier] Classified as {parsed.category.value}")
        return parsed


def create_failure_classifier(settings, agent_auth=None) -> Optional[FailureClassifier]:
    """Classifier on the Anthropic API, or None when no credentials are configured.

    An explicit ANTHROPIC_API_KEY wins; otherwise the agent's own auth is reused.
    """
    if settings.anthropic_api_key is not None:
        backend = AnthropicClassifierBackend(
            api_key=settings.anthropic_api_key.get_secret_value(),
            model=settings.classifier_model,
            timeout=settings.classifier_timeout_seconds,
        )
        return FailureClassifier(backend)
    if agent_auth is None:
        return None
    try:
        auth = agent_auth.resolve()
    except CredentialUnavailable as e:
        logger.warning(f"[Classifier] Disabled: {e}")
        return None
    return FailureClassifier(
        AnthropicClassifierBackend.from_auth(
            auth, model=settings.classifier_model, timeout=settings.classifier_timeout_seconds
        )
    )
