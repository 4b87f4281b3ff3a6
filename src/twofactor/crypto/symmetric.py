# -*- coding: utf-8 -*-
"""
RU: Шифрование секретов TOTP при хранении (AES-256-GCM, случайный 96-битный nonce).

EN: AES-256-GCM encryption of TOTP secrets at rest.

Stored format is base64 of ``nonce (12) || ciphertext || tag (16)``. A fresh
random 96-bit nonce is drawn per encryption. Secrets, keys and nonces are never
logged.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import re
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from twofactor.exceptions import ConfigurationError, SecretDecryptionError

__all__ = ["SecretBox", "parse_encryption_key", "KEY_LEN", "NONCE_LEN", "TAG_LEN"]

_LOGGER: Final = logging.getLogger(__name__)

KEY_LEN: Final[int] = 32
NONCE_LEN: Final[int] = 12
TAG_LEN: Final[int] = 16

_HEX_KEY_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9a-fA-F]{64}$")


def parse_encryption_key(key_string: str) -> bytes:
    """
    Turn a configured key string into 32 raw bytes.

    64 hex characters and 44-character base64 strings that decode to 32 bytes are
    used as-is; any other non-empty string is stretched with SHA-256.

    Examples:
        >>> len(parse_encryption_key("00" * 32))
        32
        >>> len(parse_encryption_key("a passphrase"))
        32
    """
    if not key_string:
        raise ConfigurationError("Encryption key is not set")
    if _HEX_KEY_RE.match(key_string):
        return bytes.fromhex(key_string)
    if len(key_string) == 44 and key_string.endswith("="):
        try:
            decoded = base64.b64decode(key_string, validate=True)
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) == KEY_LEN:
            return decoded
    return hashlib.sha256(key_string.encode("utf-8")).digest()


class SecretBox:
    """
    Encrypts and decrypts short text secrets with one AES-256 key.

    Examples:
        >>> box = SecretBox.from_key_string("00" * 32)
        >>> box.decrypt(box.encrypt("JBSWY3DPEHPK3PXP"))
        'JBSWY3DPEHPK3PXP'
    """

    __slots__ = ("_key",)

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LEN:
            raise ConfigurationError("AES-256-GCM key must be 32 bytes")
        self._key = bytes(key)

    @classmethod
    def from_key_string(cls, key_string: str) -> "SecretBox":
        return cls(parse_encryption_key(key_string))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LEN)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).encryptor()
        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        return base64.b64encode(nonce + ciphertext + encryptor.tag).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SecretDecryptionError("Encrypted secret is not valid base64", cause=exc)
        if len(raw) < NONCE_LEN + TAG_LEN:
            raise SecretDecryptionError("Encrypted secret is truncated")

        nonce = raw[:NONCE_LEN]
        ciphertext = raw[NONCE_LEN:-TAG_LEN]
        tag = raw[-TAG_LEN:]
        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce, tag)).decryptor()
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as exc:
            _LOGGER.warning("AES-GCM tag verification failed for stored secret")
            raise SecretDecryptionError("Invalid authentication tag", cause=exc)
        return plaintext.decode("utf-8")

    def self_check(self) -> bool:
        """Round-trip a random value; used by hosts at startup to validate the key."""
        sample = "self-check-" + os.urandom(8).hex()
        return self.decrypt(self.encrypt(sample)) == sample
