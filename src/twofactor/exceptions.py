# -*- coding: utf-8 -*-
"""
Centralized exception hierarchy for the two-factor subsystem.

Guidelines:
- Messages are operational (what failed) and never contain secrets, codes or tokens.
- Verification failures carry ``attempts_remaining`` when a pending session budget applies.
- The transport-facing service converts ``TwoFactorError`` into failure responses;
  anything else (e.g. ``StorageUnavailable``) is fatal for the request.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "TwoFactorError",
    "VerificationFailed",
    "ExpiredOrMissing",
    "NoAttemptsRemaining",
    "InvalidCode",
    "ChallengeMismatch",
    "PossibleCloneDetected",
    "NoMethodConfigured",
    "InvalidMethod",
    "NotFound",
    "AlreadyVerified",
    "BackupCodesAlreadyIssued",
    "InvalidAuthContext",
    "InvalidRequest",
    "ConfigurationError",
    "SecretDecryptionError",
    "StorageUnavailable",
]


class TwoFactorError(Exception):
    """Base exception for all two-factor failures."""

    code: str = "two_factor_error"

    def __init__(
        self, message: str = "", *, cause: Optional[BaseException] = None
    ) -> None:
        super().__init__(message)
        self.__cause__ = cause


# Pending session lifecycle
class ExpiredOrMissing(TwoFactorError):
    """Pending session is unknown, expired, cancelled or already consumed."""

    code = "expired_or_missing"

    def __init__(self, message: str = "Pending session expired or not found") -> None:
        super().__init__(message)


class VerificationFailed(TwoFactorError):
    """Base class for recoverable second-factor failures."""

    code = "verification_failed"

    def __init__(
        self,
        message: str = "",
        *,
        attempts_remaining: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.attempts_remaining = attempts_remaining


class NoAttemptsRemaining(VerificationFailed):
    """Attempt budget of the pending session is exhausted; the session is gone."""

    code = "no_attempts_remaining"

    def __init__(self, message: str = "No attempts remaining") -> None:
        super().__init__(message, attempts_remaining=0)


class InvalidCode(VerificationFailed):
    """Submitted TOTP or backup code is wrong (does not say which part)."""

    code = "invalid_code"


# WebAuthn anomalies
class ChallengeMismatch(VerificationFailed):
    """Ceremony challenge is unknown, stale, reused or bound to someone else."""

    code = "challenge_mismatch"


class PossibleCloneDetected(VerificationFailed):
    """Passkey signature counter did not increase; the authenticator may be cloned."""

    code = "possible_clone_detected"


# Lifecycle / management
class NoMethodConfigured(TwoFactorError):
    """Enable attempted without a verified authenticator or registered passkey."""

    code = "no_method_configured"


class InvalidMethod(TwoFactorError):
    """Method is not available for the user or not allowed for the operation."""

    code = "invalid_method"


class NotFound(TwoFactorError):
    """Authenticator or passkey does not exist (or belongs to another user)."""

    code = "not_found"


class AlreadyVerified(TwoFactorError):
    """Authenticator already completed its setup check."""

    code = "already_verified"


class BackupCodesAlreadyIssued(TwoFactorError):
    """Unused backup codes exist; regeneration must be used instead."""

    code = "backup_codes_already_issued"


class InvalidAuthContext(TwoFactorError):
    """Credential is malformed, expired, or of the wrong kind for the endpoint."""

    code = "invalid_auth_context"


class InvalidRequest(TwoFactorError):
    """Request body is missing a field or carries an unusable value."""

    code = "invalid_request"


# Infrastructure
class ConfigurationError(TwoFactorError):
    """Settings are missing or invalid."""

    code = "configuration_error"


class SecretDecryptionError(TwoFactorError):
    """Stored TOTP secret could not be decrypted (wrong key or tampered data)."""

    code = "secret_decryption_error"


class StorageUnavailable(Exception):
    """Backing store failed. Deliberately outside ``TwoFactorError``: always fatal."""
