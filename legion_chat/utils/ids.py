from __future__ import annotations

import secrets


def new_id() -> str:
    """Short url-safe opaque id for conversations and messages."""
    return secrets.token_urlsafe(16)
