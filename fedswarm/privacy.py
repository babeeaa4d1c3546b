"""Default PII scrubber applied to every upload.

Regex tier only: each entry in ``PII_PATTERNS`` is ``(pattern, replacement,
name)`` and patterns are applied in table order, so the most specific
secrets (private keys, vendor tokens) are replaced before the broader
personal-data patterns get a chance to split them.

Usage:
    from fedswarm.privacy import scrub_pii

    clean = scrub_pii({"message": "login failed for bob@example.com"})
    # {"message": "login failed for [EMAIL]"}
"""

from __future__ import annotations

import re
from typing import Any

PII_PATTERNS: list[tuple[str, str, str]] = [
    # Private key blocks
    (
        r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----[\s\S]*?"
        r"-----END (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----",
        "[PRIVATE_KEY]",
        "pem_private_key",
    ),
    # Vendor API keys
    (r"sk-[a-zA-Z0-9_-]{20,}", "[REDACTED_KEY]", "openai_key"),
    (r"gh[pousr]_[a-zA-Z0-9]{36,}", "[REDACTED_KEY]", "github_token"),
    (r"AKIA[A-Z0-9]{16}", "[REDACTED_KEY]", "aws_access_key"),
    (r"AIza[a-zA-Z0-9_-]{35}", "[REDACTED_KEY]", "gcp_api_key"),
    (r"xox[bporas]-[a-zA-Z0-9-]{10,}", "[REDACTED_KEY]", "slack_token"),
    (r"(?:sk|pk|rk)_(?:test|live)_[a-zA-Z0-9]{20,}", "[REDACTED_KEY]", "stripe_key"),
    (r"npm_[a-zA-Z0-9]{36,}", "[REDACTED_KEY]", "npm_token"),
    # Auth headers and JWTs
    (r"Bearer\s+[a-zA-Z0-9._\-/+=]{20,}", "Bearer [REDACTED_TOKEN]", "bearer_token"),
    (r"Basic\s+[A-Za-z0-9+/=]{10,}", "Basic [REDACTED_TOKEN]", "basic_auth"),
    (
        r"eyJ[a-zA-Z0-9_-]{10,}\.eyJ[a-zA-Z0-9_-]{10,}\.[a-zA-Z0-9_-]{10,}",
        "[REDACTED_TOKEN]",
        "jwt",
    ),
    # Assignments
    (
        r"(?i)(?:api[_-]?key|apikey|api[_-]?secret)\s*[=:]\s*['\"]?[a-zA-Z0-9_\-/+=]{16,}['\"]?",
        "api_key=[REDACTED_KEY]",
        "api_key_assignment",
    ),
    (
        r"(?i)(?:password|passwd|pwd)\s*[=:]\s*['\"]?[^\s'\"]{4,}['\"]?",
        "password=[REDACTED_SECRET]",
        "password_assignment",
    ),
    (
        r"(?i)(?:secret|client_secret|app_secret)\s*[=:]\s*['\"]?[^\s'\"]{8,}['\"]?",
        "secret=[REDACTED_SECRET]",
        "secret_assignment",
    ),
    # Connection strings
    (
        r"(?i)(?:mongodb(?:\+srv)?|postgres(?:ql)?|mysql|redis|amqp|mssql)://[^\s'\"]+",
        "[CONNECTION_STRING]",
        "connection_string",
    ),
    (r"https?://[^\s:/@]+:[^\s@]+@[^\s'\"]+", "[CONNECTION_STRING]", "url_with_credentials"),
    # Home directories
    (r"/home/[a-zA-Z0-9._-]+", "{USER_HOME}", "linux_home"),
    (r"/Users/[a-zA-Z0-9._-]+", "{USER_HOME}", "macos_home"),
    (r"(?i)[A-Z]:\\Users\\[^\\:*?\"<>|\s]+", "{USER_HOME}", "windows_home"),
    # Network
    (r"\b(?:\d{1,3}\.){3}\d{1,3}:\d{1,5}\b", "[IP]:PORT", "ip_with_port"),
    (
        r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b",
        "[IP]",
        "ipv4_address",
    ),
    (r"\b(?:[0-9a-fA-F]{2}[:-]){5}[0-9a-fA-F]{2}\b", "[MAC_ADDR]", "mac_address"),
    # Personal information
    (r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b", "[EMAIL]", "email_address"),
    (r"\b\d{3}-\d{2}-\d{4}\b", "[SSN]", "ssn_us"),
    (
        r"\b(?:4\d{3}|5[1-5]\d{2})[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b",
        "[CREDIT_CARD]",
        "credit_card",
    ),
]

_COMPILED_PATTERNS: list[tuple[re.Pattern[str], str, str]] = [
    (re.compile(pattern), replacement, name) for pattern, replacement, name in PII_PATTERNS
]


def scrub_text(text: str) -> str:
    """Replace every PII match in ``text`` with its placeholder token."""
    if not text:
        return text
    for pattern, replacement, _name in _COMPILED_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def scrub_pii(value: Any) -> Any:
    """Scrub all string values in a nested structure.

    Returns a new structure; the input is not mutated. Mapping keys are kept
    as they are. Numbers, booleans and None pass through.
    """
    if isinstance(value, str):
        return scrub_text(value)
    if isinstance(value, dict):
        return {key: scrub_pii(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub_pii(item) for item in value]
    return value


def find_residual_pii(text: str) -> list[str]:
    """Names of the patterns that still match ``text``.

    An empty list means the text looks clean.
    """
    if not text:
        return []
    return [name for pattern, _replacement, name in _COMPILED_PATTERNS if pattern.search(text)]
