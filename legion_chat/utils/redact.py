from __future__ import annotations

import re

# (pattern, replacement) applied in order; PEM blocks first so their bodies are not partially matched.
_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"-----BEGIN [^-]+-----.*?-----END [^-]+-----", re.DOTALL), "[REDACTED PEM]"),
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._\-+/=]{8,}"), "Bearer [REDACTED]"),
    (re.compile(r"(?i)(x-api-key[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]{8,}"), r"\1[REDACTED]"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{10,}"), "[REDACTED]"),
    (re.compile(r"\blgc_[A-Za-z0-9_\-]{16,}"), "[REDACTED]"),
    # NEAR access keys as they appear in RPC errors and credentials files.
    (re.compile(r"\bed25519:[1-9A-HJ-NP-Za-km-z]{32,}"), "ed25519:[REDACTED]"),
    (re.compile(r"\bsecp256k1:[1-9A-HJ-NP-Za-km-z]{32,}"), "secp256k1:[REDACTED]"),
]


def redact_secrets(text: str) -> str:
    """Mask API keys, bearer tokens and NEAR private keys in text bound for logs or clients."""
    if not text:
        return text
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text
