# -*- coding: utf-8 -*-
"""
Domain records and result types of the two-factor subsystem.

Timestamps are integer epoch seconds supplied by an injectable clock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

__all__ = [
    "TwoFactorMethod",
    "PRIMARY_METHODS",
    "CeremonyKind",
    "UserRecord",
    "PendingAuthSession",
    "TwoFactorConfig",
    "Authenticator",
    "PasskeyCredential",
    "BackupCode",
    "CeremonyChallenge",
    "TotpEnrollment",
    "CeremonyOptions",
    "TwoFactorStatus",
    "ChallengeResult",
    "VerificationResult",
    "LoginOutcome",
]


class TwoFactorMethod(str, Enum):
    TOTP = "totp"
    PASSKEY = "passkey"
    BACKUP = "backup"


# Methods that can enable 2FA on their own; backup codes are recovery only.
PRIMARY_METHODS: Tuple[TwoFactorMethod, ...] = (
    TwoFactorMethod.TOTP,
    TwoFactorMethod.PASSKEY,
)


class CeremonyKind(str, Enum):
    PASSKEY_REGISTRATION = "passkey-registration"
    PASSKEY_AUTHENTICATION = "passkey-authentication"


@dataclass(frozen=True, slots=True)
class UserRecord:
    """Read-only view of a host user needed for enrollment labels."""

    id: str
    name: str
    display_name: str


@dataclass(slots=True)
class PendingAuthSession:
    """Short-lived record issued after primary login, before the second factor."""

    id: str
    user_id: str
    created_at: int
    expires_at: int
    attempts_remaining: int
    selected_method: Optional[TwoFactorMethod] = None

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at


@dataclass(slots=True)
class TwoFactorConfig:
    user_id: str
    enabled: bool = False
    preferred_method: TwoFactorMethod = TwoFactorMethod.TOTP
    backup_codes_remaining: int = 0


@dataclass(slots=True)
class Authenticator:
    """TOTP authenticator. ``secret`` holds the encrypted seed and is never rewritten."""

    id: str
    user_id: str
    secret: str
    name: str
    verified: bool
    created_at: int
    last_used_at: Optional[int] = None
    last_used_step: Optional[int] = None


@dataclass(slots=True)
class PasskeyCredential:
    """
    Registered WebAuthn credential.

    ``public_key`` stores the serialized attested credential data (AAGUID,
    credential id and COSE public key) as produced by the registration ceremony.
    """

    id: str
    user_id: str
    credential_id: bytes
    public_key: bytes
    sign_count: int
    name: str
    created_at: int
    last_used_at: Optional[int] = None
    transports: Tuple[str, ...] = ()


@dataclass(slots=True)
class BackupCode:
    id: str
    user_id: str
    hashed_code: str
    used: bool = False
    used_at: Optional[int] = None


@dataclass(slots=True)
class CeremonyChallenge:
    """Outstanding WebAuthn challenge together with the fido2 server state."""

    id: str
    user_id: str
    kind: CeremonyKind
    state: Dict[str, Any]
    created_at: int
    expires_at: int


# -------------------- Results --------------------


@dataclass(frozen=True, slots=True)
class TotpEnrollment:
    authenticator_id: str
    secret: str
    qr_uri: str
    qr_png: bytes


@dataclass(frozen=True, slots=True)
class CeremonyOptions:
    """Challenge id plus the fido2 options object to hand to the browser."""

    pending_id: str
    options: Any


@dataclass(frozen=True, slots=True)
class TwoFactorStatus:
    enabled: bool
    preferred_method: TwoFactorMethod
    methods: Mapping[TwoFactorMethod, bool]
    totp_count: int
    passkey_count: int
    backup_codes_count: int


@dataclass(frozen=True, slots=True)
class ChallengeResult:
    pending_id: str
    method: TwoFactorMethod
    available_methods: Tuple[TwoFactorMethod, ...]
    ceremony: Optional[CeremonyOptions] = None


@dataclass(frozen=True, slots=True)
class VerificationResult:
    user_id: str
    method: TwoFactorMethod
    credential_id: str
    tokens: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LoginOutcome:
    """Either full-session tokens or a pending session awaiting a second factor."""

    user_id: str
    requires_two_factor: bool
    tokens: Optional[Mapping[str, Any]] = None
    pending_token: Optional[str] = None
    pending_id: Optional[str] = None
    expires_at: Optional[int] = None
    available_methods: List[TwoFactorMethod] = field(default_factory=list)
