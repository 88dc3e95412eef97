"""
OAuth state tokens: carry the tenant id across the provider redirect.

Format::

    urlsafe_b64(json{"tid", "nonce", "iat"}) + "." + hex(hmac_sha256)

The HMAC key is derived from ``config.oauth_state_secret`` *and* the tenant
id, so a state issued for one tenant cannot be re-labelled for another.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Callable, Optional

from connectors.errors import InvalidState

_CLOCK_SKEW_SECONDS = 60


def _b64encode(raw: bytes) -> str:
    return urlsafe_b64encode(raw).decode().rstrip("=")


def _b64decode(text: str) -> bytes:
    return urlsafe_b64decode(text + "=" * (-len(text) % 4))


class StateCodec:
    """Issue and verify signed, expiring OAuth state strings."""

    def __init__(
        self,
        secret: str,
        max_age_seconds: int = 900,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("StateCodec requires a non-empty secret")
        self._secret = secret.encode()
        self._max_age = max_age_seconds
        self._clock = clock or time.time

    def _sign(self, tenant_id: str, raw: bytes) -> str:
        tenant_key = hmac.new(self._secret, tenant_id.encode("utf-8", "surrogatepass"), hashlib.sha256).digest()
        return hmac.new(tenant_key, raw, hashlib.sha256).hexdigest()

    def encode(self, tenant_id: str) -> str:
        if not tenant_id:
            raise ValueError("tenant_id must be non-empty")
        payload = {
            "tid": tenant_id,
            "nonce": secrets.token_urlsafe(12),
            "iat": int(self._clock()),
        }
        raw = json.dumps(payload, separators=(",", ":")).encode()
        return f"{_b64encode(raw)}.{self._sign(tenant_id, raw)}"

    def decode(self, state: Optional[str]) -> str:
        """Verify ``state`` and return the tenant id, or raise ``InvalidState``."""
        if not state or not isinstance(state, str):
            raise InvalidState("state missing")

        body, sep, signature = state.partition(".")
        if not sep or not body or not signature:
            raise InvalidState("bad format")

        try:
            raw = _b64decode(body)
            payload = json.loads(raw)
        except (binascii.Error, ValueError, RecursionError) as exc:
            raise InvalidState(f"unparseable payload: {exc}") from exc

        if not isinstance(payload, dict):
            raise InvalidState("payload is not an object")

        tenant_id = payload.get("tid")
        if not isinstance(tenant_id, str) or not tenant_id:
            raise InvalidState("tenant id missing")

        if not hmac.compare_digest(signature.encode("utf-8", "surrogatepass"), self._sign(tenant_id, raw).encode()):
            raise InvalidState("bad signature")

        issued_at = payload.get("iat")
        if not isinstance(issued_at, (int, float)) or isinstance(issued_at, bool):
            raise InvalidState("issued-at missing")

        age = self._clock() - issued_at
        if age > self._max_age:
            raise InvalidState("state expired")
        if age < -_CLOCK_SKEW_SECONDS:
            raise InvalidState("state issued in the future")

        return tenant_id
