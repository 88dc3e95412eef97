"""
JWT-style token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256.
Secret key is loaded from ``config.jwt_secret`` (env var: ``JWT_SECRET``).
The payload carries the user's id and display name, which become the
``actor`` recorded on audit entries.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from fastapi import HTTPException, status

from config.settings import Settings, config
from connectors.schemas import Actor


def create_token(user_id: str, display_name: str, settings: Optional[Settings] = None) -> str:
    """Create a signed token containing ``user_id``, ``name`` and expiry."""
    settings = settings or config
    payload = {
        "user_id": user_id,
        "name": display_name,
        "exp": int(time.time()) + settings.jwt_expiry_seconds,
    }
    raw = json.dumps(payload).encode()
    sig = hmac.new(settings.jwt_secret.encode(), raw, hashlib.sha256).hexdigest()
    return urlsafe_b64encode(raw).decode() + "." + sig


def verify_token(token: str, settings: Optional[Settings] = None) -> Actor:
    """
    Verify token and return the ``Actor`` it names.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    settings = settings or config
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = urlsafe_b64decode(parts[0])
        expected_sig = hmac.new(
            settings.jwt_secret.encode(), raw, hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(parts[1].encode(), expected_sig.encode()):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return Actor(
            actor_id=str(payload["user_id"]),
            actor_name=str(payload.get("name") or "Unknown"),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc
