# -*- coding: utf-8 -*-
"""
RU: Настройки подсистемы двухфакторной аутентификации: профили хеширования
резервных кодов и переопределение через переменные окружения.

EN: Settings for the two-factor subsystem with hashing profiles and environment
overrides.
"""
from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Final, Mapping, Optional

from twofactor.exceptions import ConfigurationError

__all__ = [
    "BackupCodeHashProfile",
    "BackupCodeHashConfig",
    "TwoFactorSettings",
    "DEFAULT_PENDING_TTL_SECONDS",
    "DEFAULT_PENDING_MAX_ATTEMPTS",
    "DEFAULT_CHALLENGE_TTL_SECONDS",
    "DEFAULT_BACKUP_CODE_COUNT",
]

DEFAULT_PENDING_TTL_SECONDS: Final[int] = 5 * 60
DEFAULT_PENDING_MAX_ATTEMPTS: Final[int] = 5
DEFAULT_CHALLENGE_TTL_SECONDS: Final[int] = 5 * 60
DEFAULT_BACKUP_CODE_COUNT: Final[int] = 10

DEFAULT_ENV_PREFIX: Final[str] = "TWOFACTOR_"


class BackupCodeHashProfile(str, Enum):
    """Predefined Argon2id parameter profiles for backup-code hashing."""

    # Interactive servers (default)
    STANDARD = "standard"

    # High-value deployments
    HARDENED = "hardened"

    # Development and test runs
    LIGHT = "light"


@dataclass(frozen=True)
class BackupCodeHashConfig:
    """
    Argon2id parameters used to hash backup codes.

    Attributes:
        time_cost: Number of iterations.
        memory_cost: Memory usage in KiB.
        parallelism: Number of lanes.
        salt_length: Salt length in bytes.

    Examples:
        >>> BackupCodeHashConfig.from_profile(BackupCodeHashProfile.STANDARD).memory_cost
        65536
    """

    time_cost: int
    memory_cost: int  # KiB
    parallelism: int
    salt_length: int = 16

    def __post_init__(self) -> None:
        if self.time_cost < 1:
            raise ConfigurationError("time_cost must be >= 1")
        if self.parallelism < 1:
            raise ConfigurationError("parallelism must be >= 1")
        if self.memory_cost < 8 * self.parallelism:
            raise ConfigurationError("memory_cost must be >= 8 * parallelism KiB")
        if self.salt_length < 8 or self.salt_length > 64:
            raise ConfigurationError("salt_length must be between 8 and 64 bytes")

    @staticmethod
    def from_profile(profile: BackupCodeHashProfile) -> "BackupCodeHashConfig":
        return _HASH_PROFILES[BackupCodeHashProfile(profile)]


_HASH_PROFILES: Final[Dict[BackupCodeHashProfile, BackupCodeHashConfig]] = {
    BackupCodeHashProfile.STANDARD: BackupCodeHashConfig(
        time_cost=3,
        memory_cost=65536,  # 64 MiB
        parallelism=4,
    ),
    BackupCodeHashProfile.HARDENED: BackupCodeHashConfig(
        time_cost=5,
        memory_cost=131072,  # 128 MiB
        parallelism=8,
    ),
    BackupCodeHashProfile.LIGHT: BackupCodeHashConfig(
        time_cost=1,
        memory_cost=1024,
        parallelism=1,
    ),
}


@dataclass(frozen=True)
class TwoFactorSettings:
    """
    Effective configuration of the orchestrator and its verifiers.

    ``pending_token_key`` and ``totp_encryption_key`` default to random values,
    which is only suitable for a single process; production hosts must set both.
    """

    pending_ttl_seconds: int = DEFAULT_PENDING_TTL_SECONDS
    pending_max_attempts: int = DEFAULT_PENDING_MAX_ATTEMPTS
    challenge_ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS

    rp_id: str = "localhost"
    rp_name: str = "Two-Factor Service"
    expected_origin: str = "https://localhost"

    totp_issuer: str = "Two-Factor Service"
    totp_digits: int = 6
    totp_interval: int = 30
    totp_valid_window: int = 1

    backup_code_count: int = DEFAULT_BACKUP_CODE_COUNT
    backup_hash: BackupCodeHashConfig = field(
        default_factory=lambda: BackupCodeHashConfig.from_profile(
            BackupCodeHashProfile.STANDARD
        )
    )

    pending_token_key: str = field(default_factory=lambda: secrets.token_hex(32))
    totp_encryption_key: str = field(default_factory=lambda: secrets.token_hex(32))

    def __post_init__(self) -> None:
        if self.pending_ttl_seconds <= 0:
            raise ConfigurationError("pending_ttl_seconds must be positive")
        if self.pending_max_attempts < 1:
            raise ConfigurationError("pending_max_attempts must be >= 1")
        if self.challenge_ttl_seconds <= 0:
            raise ConfigurationError("challenge_ttl_seconds must be positive")
        if not self.rp_id or not self.expected_origin:
            raise ConfigurationError("rp_id and expected_origin are required")
        if self.totp_digits not in (6, 8):
            raise ConfigurationError("totp_digits must be 6 or 8")
        if self.totp_interval <= 0:
            raise ConfigurationError("totp_interval must be positive")
        if self.totp_valid_window < 0:
            raise ConfigurationError("totp_valid_window must be >= 0")
        if not 1 <= self.backup_code_count <= 20:
            raise ConfigurationError("backup_code_count must be between 1 and 20")
        if len(self.pending_token_key) < 32:
            raise ConfigurationError("pending_token_key must be at least 32 characters")
        if not self.totp_encryption_key:
            raise ConfigurationError("totp_encryption_key is required")

    def with_overrides(self, **changes: Any) -> "TwoFactorSettings":
        return replace(self, **changes)

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "TwoFactorSettings":
        """
        Build settings from environment variables, e.g. ``TWOFACTOR_RP_ID``.

        ``TWOFACTOR_BACKUP_HASH_PROFILE`` selects an Argon2 profile by name.
        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}

        for name, caster in _ENV_FIELDS.items():
            raw = env.get(prefix + name.upper())
            if raw is None or raw == "":
                continue
            try:
                kwargs[name] = caster(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {prefix}{name.upper()}") from e

        profile = env.get(prefix + "BACKUP_HASH_PROFILE")
        if profile:
            try:
                kwargs["backup_hash"] = BackupCodeHashConfig.from_profile(
                    BackupCodeHashProfile(profile.lower())
                )
            except ValueError as e:
                raise ConfigurationError(f"Unknown backup hash profile: {profile}") from e

        return cls(**kwargs)


_ENV_FIELDS: Final[Dict[str, Any]] = {
    "pending_ttl_seconds": int,
    "pending_max_attempts": int,
    "challenge_ttl_seconds": int,
    "rp_id": str,
    "rp_name": str,
    "expected_origin": str,
    "totp_issuer": str,
    "totp_digits": int,
    "totp_interval": int,
    "totp_valid_window": int,
    "backup_code_count": int,
    "pending_token_key": str,
    "totp_encryption_key": str,
}
