"""Security helpers for participant token handling."""

from __future__ import annotations

import secrets
import uuid


TOKEN_BYTES = 24


def generate_token() -> str:
    """Generate a URL-safe opaque token identifying one participant."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_connection_id() -> str:
    return uuid.uuid4().hex
