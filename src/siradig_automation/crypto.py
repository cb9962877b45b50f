from __future__ import annotations

import base64
import hashlib
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


_NONCE_BYTES = 12
_TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    iv: str
    auth_tag: str


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class CredentialCipher:
    """
    AES-256-GCM for stored portal passwords. The key is SHA-256 of the configured secret;
    ciphertext, IV and auth tag are stored as separate base64 columns.
    """

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("A non-empty secret key is required (set CREDENTIALS_SECRET_KEY)")
        self._aead = AESGCM(hashlib.sha256(secret_key.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext.
        return EncryptedSecret(
            ciphertext=_b64(sealed[:-_TAG_BYTES]),
            iv=_b64(nonce),
            auth_tag=_b64(sealed[-_TAG_BYTES:]),
        )

    def decrypt(self, ciphertext: str, iv: str, auth_tag: str) -> str:
        sealed = base64.b64decode(ciphertext) + base64.b64decode(auth_tag)
        return self._aead.decrypt(base64.b64decode(iv), sealed, None).decode("utf-8")
