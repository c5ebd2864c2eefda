from __future__ import annotations

import hashlib
import hmac
import secrets

from rolu_rewards_api.settings import Settings

SESSION_TOKEN_BYTES = 32


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def hash_opaque_token(token: str, settings: Settings) -> str:
    """Keyed digest stored in ``sessions.token_hash``; the raw cookie value is never persisted."""
    return hmac.new(
        settings.token_hash_secret.encode("utf-8"),
        token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def secrets_match(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
