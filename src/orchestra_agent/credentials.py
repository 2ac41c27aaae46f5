"""Decryption of stored repository credentials into authenticated clone URLs."""

from __future__ import annotations

import hashlib
import logging
import os
from urllib.parse import quote, urlsplit, urlunsplit

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

_BLOCK_SIZE_BITS = 128


class CredentialError(RuntimeError):
    """Raised when a credential blob cannot be decrypted."""


def _derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def decrypt_credential(blob: str, secret: str) -> str:
    """Decrypt an ``ivHex:cipherHex`` blob produced with AES-256-CBC."""

    iv_hex, separator, cipher_hex = blob.partition(":")
    if not separator or not iv_hex or not cipher_hex:
        raise CredentialError("Credential blob must have the form ivHex:cipherHex")
    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(cipher_hex)
    except ValueError as exc:
        raise CredentialError(f"Credential blob is not valid hex: {exc}") from exc

    try:
        decryptor = Cipher(algorithms.AES(_derive_key(secret)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_SIZE_BITS).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except ValueError as exc:
        raise CredentialError(f"Credential decryption failed: {exc}") from exc


def encrypt_credential(plaintext: str, secret: str, *, iv: bytes | None = None) -> str:
    """Encrypt ``plaintext`` into the ``ivHex:cipherHex`` format read by the agent."""

    iv = iv if iv is not None else os.urandom(16)
    padder = padding.PKCS7(_BLOCK_SIZE_BITS).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_derive_key(secret)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def _with_userinfo(url: str, username: str, password: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise CredentialError(f"Cannot attach credentials to non-URL remote {redact_url(url)}")
    host = parts.netloc.rpartition("@")[2]
    userinfo = quote(username, safe="")
    if password:
        userinfo = f"{userinfo}:{quote(password, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


def build_auth_url(url: str, encrypted_credential: str | None, secret: str) -> str:
    """Return ``url`` with decrypted credentials as userinfo.

    A plaintext of the form ``username:secret`` fills both userinfo fields; a bare
    token becomes the username with an empty password. Any failure falls back to
    the unauthenticated URL so public repositories keep working.
    """

    if not encrypted_credential:
        return url

    try:
        decrypted = decrypt_credential(encrypted_credential, secret)
        username, separator, password = decrypted.partition(":")
        if not separator:
            password = ""
        return _with_userinfo(url, username, password)
    except CredentialError as exc:
        logger.warning(
            "Credential decryption failed, using unauthenticated URL",
            extra={"url": redact_url(url), "error": str(exc)},
        )
        return url


def redact_url(url: str) -> str:
    """Strip any userinfo from ``url`` so it can be logged."""

    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rpartition("@")[2]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


__all__ = [
    "CredentialError",
    "build_auth_url",
    "decrypt_credential",
    "encrypt_credential",
    "redact_url",
]
