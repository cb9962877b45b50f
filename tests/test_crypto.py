from __future__ import annotations

import base64

import pytest
from cryptography.exceptions import InvalidTag

from siradig_automation.crypto import CredentialCipher


def test_encrypt_decrypt() -> None:
    cipher = CredentialCipher("test-secret")
    sealed = cipher.encrypt("clave-fiscal-123")
    assert sealed.ciphertext != "clave-fiscal-123"
    assert len(base64.b64decode(sealed.iv)) == 12
    assert len(base64.b64decode(sealed.auth_tag)) == 16
    assert cipher.decrypt(sealed.ciphertext, sealed.iv, sealed.auth_tag) == "clave-fiscal-123"


def test_fresh_nonce_per_encryption() -> None:
    cipher = CredentialCipher("test-secret")
    a = cipher.encrypt("same")
    b = cipher.encrypt("same")
    assert a.iv != b.iv
    assert a.ciphertext != b.ciphertext


def test_wrong_key_or_tampered_tag_fails() -> None:
    sealed = CredentialCipher("test-secret").encrypt("clave")
    with pytest.raises(InvalidTag):
        CredentialCipher("other-secret").decrypt(sealed.ciphertext, sealed.iv, sealed.auth_tag)

    bad_tag = base64.b64encode(b"\x00" * 16).decode("ascii")
    with pytest.raises(InvalidTag):
        CredentialCipher("test-secret").decrypt(sealed.ciphertext, sealed.iv, bad_tag)


def test_empty_secret_rejected() -> None:
    with pytest.raises(ValueError):
        CredentialCipher("")
