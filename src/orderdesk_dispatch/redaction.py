from __future__ import annotations

import re

_CREDENTIAL_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|refresh[_-]?token|token|password|secret)\b(\s*[:=]\s*)([^\s,;&]+)"
)
_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)([^\s,;]+)")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"(?<![\w.])\+?\d(?:[ -]?\d){8,14}(?![\w.])")


def redact_sensitive_text(value: str | None) -> str | None:
    """Mask credentials and customer contact details in remote error text."""
    if value is None:
        return None

    redacted = _CREDENTIAL_RE.sub(r"\1\2[REDACTED]", value)
    redacted = _BEARER_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _EMAIL_RE.sub("[EMAIL]", redacted)
    redacted = _PHONE_RE.sub("[PHONE]", redacted)
    return redacted
