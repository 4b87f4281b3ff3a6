# -*- coding: utf-8 -*-
"""
Argon2id hashing of backup codes.

Each code gets its own random salt (embedded in the encoded hash), so the same
plaintext never produces the same stored value twice.
"""

from __future__ import annotations

import logging
from typing import Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import exceptions as argon2_exc

from twofactor.config import BackupCodeHashConfig, BackupCodeHashProfile

__all__ = ["BackupCodeHasher"]

_LOG = logging.getLogger(__name__)


class BackupCodeHasher:
    """
    Thin wrapper over ``argon2.PasswordHasher`` configured from a hash profile.

    Examples:
        >>> from twofactor.config import BackupCodeHashProfile
        >>> hasher = BackupCodeHasher.from_profile(BackupCodeHashProfile.LIGHT)
        >>> hasher.verify(hasher.hash("A1B2C3D4"), "A1B2C3D4")
        True
    """

    def __init__(self, config: Optional[BackupCodeHashConfig] = None) -> None:
        cfg = config or BackupCodeHashConfig.from_profile(BackupCodeHashProfile.STANDARD)
        self._ph = _Argon2Hasher(
            time_cost=cfg.time_cost,
            memory_cost=cfg.memory_cost,
            parallelism=cfg.parallelism,
            salt_len=cfg.salt_length,
        )

    @classmethod
    def from_profile(cls, profile: BackupCodeHashProfile) -> "BackupCodeHasher":
        return cls(BackupCodeHashConfig.from_profile(profile))

    def hash(self, code: str) -> str:
        return self._ph.hash(code)

    def verify(self, hashed: str, code: str) -> bool:
        """Return True on match; mismatches and malformed stored hashes return False."""
        try:
            return self._ph.verify(hashed, code)
        except argon2_exc.VerifyMismatchError:
            return False
        except (argon2_exc.InvalidHashError, argon2_exc.VerificationError):
            _LOG.error("Stored backup code hash is malformed")
            return False
