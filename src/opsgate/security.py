from __future__ import annotations

import hashlib
import re
from typing import Any


REDACTED = "[REDACTED]"

SECRET_VALUE_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bsk_(?:live|test)_[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{20,}\b"),
    re.compile(r"\bya29\.[A-Za-z0-9\-_]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bAIza[0-9A-Za-z\-_]{20,}\b"),
    re.compile(r"\b\d{8,10}:[A-Za-z0-9_-]{30,}\b"),  # chat bot token
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"-----BEGIN (?:RSA|EC|OPENSSH|PRIVATE) KEY-----"),
]

BEARER_PATTERN = re.compile(r"\b(Bearer|Token)\s+[A-Za-z0-9\-_\.=]{8,}", re.IGNORECASE)
CREDENTIAL_ASSIGNMENT_PATTERN = re.compile(
    r"\b(api[_-]?key|token|secret|password|passwd|pwd|cookie|authorization)\s*([=:])\s*([^\s,;&\"']+)",
    re.IGNORECASE,
)
EMAIL_PATTERN = re.compile(r"\b[\w\.+-]+@[\w\.-]+\.\w{2,}\b")
SENSITIVE_KEY_PATTERN = re.compile(r"token|authorization|password|secret|cookie", re.IGNORECASE)
RAW_TOKEN_KEYS = {"token", "token_id", "approval_token"}


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_token(value: str) -> str:
    """Short stable fingerprint used wherever a raw approval token would leak."""

    return f"tok_{sha256_hex(value)[:16]}"


def hash_email(value: str) -> str:
    return f"email_hash:{sha256_hex(value.strip().lower())[:12]}"


def is_sensitive_key(key: str) -> bool:
    return bool(SENSITIVE_KEY_PATTERN.search(key))


def is_secret_like_text(text: str) -> bool:
    for pattern in SECRET_VALUE_PATTERNS:
        if pattern.search(text):
            return True
    return False


def redact_text(text: str) -> tuple[str, int]:
    """Return `text` with credentials and e-mail addresses masked plus a hit count."""

    hits = 0

    def _count(replacement: str):  # type: ignore[no-untyped-def]
        def _sub(match: re.Match[str]) -> str:
            nonlocal hits
            hits += 1
            return replacement.format(*match.groups())

        return _sub

    redacted = BEARER_PATTERN.sub(_count("{0} " + REDACTED), text)
    redacted = CREDENTIAL_ASSIGNMENT_PATTERN.sub(_count("{0}{1}" + REDACTED), redacted)
    for pattern in SECRET_VALUE_PATTERNS:
        redacted = pattern.sub(_count(REDACTED), redacted)

    def _email(match: re.Match[str]) -> str:
        nonlocal hits
        hits += 1
        return hash_email(match.group(0))

    redacted = EMAIL_PATTERN.sub(_email, redacted)
    return redacted, hits


def payload_contains_secrets(payload: Any) -> bool:
    if isinstance(payload, str):
        return is_secret_like_text(payload) or bool(BEARER_PATTERN.search(payload))
    if isinstance(payload, list):
        return any(payload_contains_secrets(item) for item in payload)
    if isinstance(payload, dict):
        return any(payload_contains_secrets(value) for value in payload.values())
    return False
