"""
Token encryption: encrypt / decrypt OAuth tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The key comes from ``config.token_encryption_key``
(env var: ``TOKEN_ENCRYPTION_KEY``).

If no key is configured, encryption is **disabled** and tokens are stored
as plaintext (with a startup warning).  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """Fernet wrapper; a pass-through when constructed without a key."""

    def __init__(self, key: Optional[str]) -> None:
        if not key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set; OAuth tokens will be stored as plaintext."
            )
            self._fernet: Optional[Fernet] = None
            return
        # A malformed key is a deployment error and must fail loudly.
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        logger.info("Token encryption enabled (Fernet/AES-128-CBC)")

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Return the Fernet ciphertext (URL-safe base64); ``None`` stays ``None``."""
        if plaintext is None or self._fernet is None:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored token.

        Tokens stored before encryption was enabled are not valid Fernet
        tokens and are returned as-is.
        """
        if ciphertext is None or self._fernet is None:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.debug("Stored token is not Fernet ciphertext; treating as plaintext")
            return ciphertext
