# -*- coding: utf-8 -*-
"""Cryptographic helpers: TOTP secret encryption and backup-code hashing."""

from twofactor.crypto.hashing import BackupCodeHasher
from twofactor.crypto.symmetric import SecretBox, parse_encryption_key

__all__ = ["BackupCodeHasher", "SecretBox", "parse_encryption_key"]
