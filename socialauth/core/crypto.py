from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from socialauth.core.config import get_settings

_NONCE_BYTES = 12


class EncryptionKeyError(RuntimeError):
    pass


class DecryptionError(RuntimeError):
    pass


def _load_key() -> bytes:
    raw = get_settings().ENCRYPTION_KEY_BASE64
    try:
        key = base64.b64decode(raw, validate=True)
    except Exception as e:  # noqa: BLE001
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must be valid base64") from e

    if len(key) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")
    return key


def encrypt_text(value: str, *, aad: bytes) -> bytes:
    nonce = os.urandom(_NONCE_BYTES)
    return nonce + AESGCM(_load_key()).encrypt(nonce, value.encode("utf-8"), aad)


def decrypt_text(blob: bytes, *, aad: bytes) -> str:
    if len(blob) <= _NONCE_BYTES:
        raise DecryptionError("Encrypted blob is too short")
    try:
        plaintext = AESGCM(_load_key()).decrypt(blob[:_NONCE_BYTES], blob[_NONCE_BYTES:], aad)
    except InvalidTag as e:
        raise DecryptionError("Encrypted blob failed authentication") from e
    return plaintext.decode("utf-8")


def provider_secret_aad(provider: str) -> bytes:
    return f"oauth_provider:{provider}:client_secret".encode()


def account_token_aad(*, provider: str, provider_user_id: str, kind: str) -> bytes:
    # Binds ciphertext to one remote identity so rows can't be swapped.
    return f"oauth_account:{provider}:{provider_user_id}:{kind}".encode()
