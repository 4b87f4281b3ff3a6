# -*- coding: utf-8 -*-
"""
TOTP (RFC 6238) authenticators: enrollment, setup confirmation and login checks.

Secrets are stored AES-GCM encrypted and decrypted only for the duration of a
check. A code is accepted within +/- ``valid_window`` time steps of the clock,
and each time step is accepted at most once per authenticator (anti-replay).

Example:
    >>> verifier = TotpVerifier(InMemoryAuthenticatorRepository(), settings=settings)
    >>> enrollment = verifier.generate_secret("alice", name="Phone")
    >>> # user scans enrollment.qr_png, then types the current code
    >>> verifier.add_authenticator(enrollment.authenticator_id, "123456")
    True
"""

from __future__ import annotations

import hmac
import io
import logging
import time
import uuid
from typing import Any, Callable, Final, Mapping, Optional, Tuple

import pyotp
import qrcode
from qrcode.constants import ERROR_CORRECT_M

from twofactor.config import TwoFactorSettings
from twofactor.crypto.symmetric import SecretBox
from twofactor.exceptions import AlreadyVerified, InvalidCode, NotFound
from twofactor.models import Authenticator, CeremonyOptions, TotpEnrollment, TwoFactorMethod
from twofactor.storage import AuthenticatorRepository, UserRepository

__all__ = ["TotpVerifier", "normalize_otp"]

_logger = logging.getLogger(__name__)

DEFAULT_AUTHENTICATOR_NAME: Final[str] = "Authenticator"
MAX_NAME_LENGTH: Final[int] = 64
QR_BOX_SIZE: Final[int] = 10
QR_BORDER: Final[int] = 4


def _now() -> int:
    return int(time.time())


def normalize_otp(otp: str) -> str:
    """Normalize user-entered OTP: remove spaces and dashes."""
    return otp.replace(" ", "").replace("-", "")


def _validate_label(text: str, *, max_len: int = MAX_NAME_LENGTH) -> str:
    """Keep printable ASCII only and clip length; labels end up in otpauth URIs."""
    sanitized = "".join(ch for ch in text if 32 <= ord(ch) < 127).strip()
    return sanitized[:max_len]


def _make_qr_png(uri: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=QR_BOX_SIZE,
        border=QR_BORDER,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


class TotpVerifier:
    """Code-based verifier backed by pyotp."""

    kind = TwoFactorMethod.TOTP

    def __init__(
        self,
        authenticators: AuthenticatorRepository,
        users: Optional[UserRepository] = None,
        settings: Optional[TwoFactorSettings] = None,
        clock: Callable[[], int] = _now,
    ) -> None:
        self._authenticators = authenticators
        self._users = users
        self._settings = settings or TwoFactorSettings()
        self._box = SecretBox.from_key_string(self._settings.totp_encryption_key)
        self._clock = clock

    # ---------- Helpers ----------

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self._settings.totp_digits,
            interval=self._settings.totp_interval,
        )

    def _account_label(self, user_id: str) -> str:
        user = self._users.get(user_id) if self._users is not None else None
        label = _validate_label(user.name) if user is not None else ""
        return label or _validate_label(user_id)

    def _provisioning_uri(self, secret: str, user_id: str) -> str:
        return self._totp(secret).provisioning_uri(
            name=self._account_label(user_id),
            issuer_name=_validate_label(self._settings.totp_issuer),
        )

    def _match_step(self, secret: str, code: str) -> Optional[int]:
        """Return the time step ``code`` belongs to within the window, or None."""
        otp = normalize_otp(code or "")
        if not otp.isdigit() or len(otp) != self._settings.totp_digits:
            return None
        totp = self._totp(secret)
        current = self._clock() // self._settings.totp_interval
        window = self._settings.totp_valid_window
        for step in range(current - window, current + window + 1):
            if step >= 0 and hmac.compare_digest(totp.generate_otp(step), otp):
                return step
        return None

    def _require_owned(
        self, authenticator_id: str, user_id: Optional[str]
    ) -> Authenticator:
        auth = self._authenticators.get(authenticator_id)
        if auth is None or (user_id is not None and auth.user_id != user_id):
            raise NotFound("Authenticator not found")
        return auth

    # ---------- Enrollment ----------

    def generate_secret(
        self, user_id: str, name: str = DEFAULT_AUTHENTICATOR_NAME
    ) -> TotpEnrollment:
        """
        Create an unverified authenticator with a fresh secret.

        The plaintext secret and QR code are returned once for the user to scan;
        only the encrypted secret is stored.
        """
        secret = pyotp.random_base32()
        authenticator = Authenticator(
            id=str(uuid.uuid4()),
            user_id=user_id,
            secret=self._box.encrypt(secret),
            name=_validate_label(name) or DEFAULT_AUTHENTICATOR_NAME,
            verified=False,
            created_at=self._clock(),
        )
        self._authenticators.add(authenticator)
        uri = self._provisioning_uri(secret, user_id)
        _logger.info("TOTP authenticator created user=%s id=%s", user_id, authenticator.id)
        return TotpEnrollment(
            authenticator_id=authenticator.id,
            secret=secret,
            qr_uri=uri,
            qr_png=_make_qr_png(uri),
        )

    def provisioning_uri(self, user_id: str, authenticator_id: str) -> str:
        """Re-render the otpauth URI of an authenticator still awaiting setup."""
        auth = self._require_owned(authenticator_id, user_id)
        if auth.verified:
            raise AlreadyVerified("Authenticator already verified")
        return self._provisioning_uri(self._box.decrypt(auth.secret), user_id)

    def add_authenticator(
        self, authenticator_id: str, code: str, user_id: Optional[str] = None
    ) -> bool:
        """
        Confirm setup of an authenticator with its first code.

        Returns False when the code does not match; the authenticator stays
        unverified and can be retried.

        Raises:
            NotFound: unknown authenticator (or owned by another user).
            AlreadyVerified: setup was already confirmed.
        """
        auth = self._require_owned(authenticator_id, user_id)
        if auth.verified:
            raise AlreadyVerified("Authenticator already verified")

        step = self._match_step(self._box.decrypt(auth.secret), code)
        if step is None:
            _logger.info("TOTP setup code rejected user=%s id=%s", auth.user_id, auth.id)
            return False
        if not self._authenticators.mark_verified(auth.id):
            raise AlreadyVerified("Authenticator already verified")
        self._authenticators.record_use(auth.id, step, self._clock())
        _logger.info("TOTP authenticator verified user=%s id=%s", auth.user_id, auth.id)
        return True

    # ---------- Login ----------

    def verify(self, user_id: str, code: str) -> Optional[str]:
        """
        Check ``code`` against every verified authenticator of the user.

        Returns the matching authenticator id, or None. A code whose time step was
        already accepted for that authenticator is treated as no match.
        """
        for auth in self._authenticators.list_by_user(user_id):
            if not auth.verified:
                continue
            step = self._match_step(self._box.decrypt(auth.secret), code)
            if step is None:
                continue
            if self._authenticators.record_use(auth.id, step, self._clock()):
                _logger.info("TOTP code accepted user=%s id=%s", user_id, auth.id)
                return auth.id
            _logger.warning("TOTP code replay rejected user=%s id=%s", user_id, auth.id)
        return None

    def prepare_challenge(self, user_id: str) -> Optional[CeremonyOptions]:
        return None

    def verify_login(self, user_id: str, submission: Mapping[str, Any]) -> str:
        authenticator_id = self.verify(user_id, str(submission.get("code") or ""))
        if authenticator_id is None:
            raise InvalidCode("Invalid code")
        return authenticator_id

    # ---------- Management ----------

    def list_authenticators(self, user_id: str) -> Tuple[Authenticator, ...]:
        return self._authenticators.list_by_user(user_id)

    def has_verified_authenticator(self, user_id: str) -> bool:
        return any(a.verified for a in self._authenticators.list_by_user(user_id))

    def remove_authenticator(self, user_id: str, authenticator_id: str) -> bool:
        self._require_owned(authenticator_id, user_id)
        removed = self._authenticators.delete(authenticator_id)
        if removed:
            _logger.info("TOTP authenticator removed user=%s id=%s", user_id, authenticator_id)
        return removed

    def delete_unverified(self, user_id: str) -> int:
        """Drop abandoned setups; returns how many were removed."""
        n = 0
        for auth in self._authenticators.list_by_user(user_id):
            if not auth.verified and self._authenticators.delete(auth.id):
                n += 1
        return n
