"""
Sanitization for anything that reaches a shell, a log line, or the database.

- validate_ref: allow-list check for user-controlled git ref names
- redact_secrets: remove credentials embedded in command lines and output
- tail: bound command output before it is wrapped into errors or events

Redaction runs on error paths as well as happy paths; failed git commands are
where authenticated remote URLs most often show up.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Set

SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9._/-]+$")

# Redaction placeholder
REDACTED = "[REDACTED]"

# `scheme:SECRET@host` (x-access-token:ghs_xxx@github.com, user:pass@host).
# The lookahead skips `https://` so the userinfo that follows is matched instead.
TOKEN_PATTERN = re.compile(r"([A-Za-z][A-Za-z0-9+._-]*):(?!//)[^\s@]+@")

SENSITIVE_PATTERNS: List[re.Pattern] = [
    # Bearer tokens
    re.compile(r"bearer\s+[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
    # GitHub tokens (classic, fine-grained, installation, oauth)
    re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b"),
    # Anthropic keys and OAuth tokens
    re.compile(r"\bsk-ant-[A-Za-z0-9_\-]{10,}"),
    # JWT tokens (header.payload.signature format)
    re.compile(r"eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"),
]

# Keys whose values are never persisted
SENSITIVE_KEYS: Set[str] = {
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "authorization",
    "credentials",
    "private_key",
    "client_secret",
}

MAX_NESTED_DEPTH = 5
DEFAULT_TAIL_CHARS = 2000


def validate_ref(name: str) -> str:
    """Validate that a git ref name contains only safe characters.

    Rejects shell metacharacters that could enable command injection.

    Returns:
        The name unchanged, for chaining.

    Raises:
        InvalidRefError: If the name is empty or contains disallowed characters.
    """
    from .exceptions import InvalidRefError

    if not is_safe_ref(name):
        raise InvalidRefError(f'Invalid ref name: "{name}". Only [a-zA-Z0-9._/-] are allowed.')
    return name


def is_safe_ref(name: str) -> bool:
    return bool(name) and SAFE_REF_RE.fullmatch(name) is not None


def redact_token(value: str) -> str:
    """Replace `scheme:SECRET@` with `scheme:[REDACTED]@`. Idempotent."""
    if not value:
        return value
    return TOKEN_PATTERN.sub(rf"\1:{REDACTED}@", value)


def redact_secrets(value: str, extra_secrets: Optional[List[str]] = None) -> str:
    """Redact embedded credentials, well-known token formats and explicit secrets."""
    if not value:
        return value
    result = redact_token(value)
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)
    for secret in extra_secrets or []:
        if secret and len(secret) >= 4:
            result = result.replace(secret, REDACTED)
    return result


def tail(value: Optional[str], limit: int = DEFAULT_TAIL_CHARS) -> str:
    """Keep the last `limit` characters; errors usually live at the end."""
    if not value:
        return ""
    return value[-limit:] if len(value) > limit else value


def head(value: Optional[str], limit: int) -> str:
    if not value:
        return ""
    return value[:limit]


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return key_lower in SENSITIVE_KEYS


def sanitize_value(value: Any, depth: int = 0) -> Any:
    """Recursively redact a JSON-like value before persisting it."""
    if depth > MAX_NESTED_DEPTH:
        return "[NESTED_TOO_DEEP]"

    if value is None or isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, str):
        return redact_secrets(value)

    if isinstance(value, dict):
        return sanitize_dict(value, depth + 1)

    if isinstance(value, (list, tuple)):
        return [sanitize_value(item, depth + 1) for item in value[:50]]

    return redact_secrets(str(value))


def sanitize_dict(data: Dict[str, Any], depth: int = 0) -> Dict[str, Any]:
    """
    Sanitize a dictionary, redacting sensitive keys and values.

    Args:
        data: Dictionary to sanitize
        depth: Current nesting depth

    Returns:
        Sanitized dictionary
    """
    if depth > MAX_NESTED_DEPTH:
        return {"_error": "[NESTED_TOO_DEEP]"}

    result = {}
    for key, value in data.items():
        str_key = str(key)
        if _is_sensitive_key(str_key):
            result[str_key] = REDACTED
        else:
            result[str_key] = sanitize_value(value, depth)
    return result
