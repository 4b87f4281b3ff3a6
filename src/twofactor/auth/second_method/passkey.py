# -*- coding: utf-8 -*-
"""
WebAuthn passkeys: registration and assertion ceremonies over ``fido2.server.Fido2Server``.

Each ceremony is two calls. The options call stores the fido2 server state in a
single-use ``CeremonyChallengeStore`` entry and returns its id with the options;
the verify call takes that entry back (it cannot be taken twice) and checks the
signed response against it.

Signature counter rule: the counter reported by an assertion must be strictly
greater than the stored one, including the first assertion after registration.
Anything else is reported as a possible cloned authenticator and the stored
counter is left untouched. The update itself is a compare-and-set so two
replayed assertions racing on the same stale value cannot both pass.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import Any, Callable, Final, List, Mapping, Optional, Protocol, Tuple

import fido2.features
from cryptography.exceptions import InvalidSignature
from fido2.server import Fido2Server
from fido2.webauthn import (
    AttestedCredentialData,
    AuthenticationResponse,
    PublicKeyCredentialRpEntity,
    PublicKeyCredentialUserEntity,
    UserVerificationRequirement,
)

from twofactor.auth.pending import CeremonyChallengeStore
from twofactor.config import TwoFactorSettings
from twofactor.exceptions import (
    ConfigurationError,
    InvalidRequest,
    NotFound,
    PossibleCloneDetected,
    VerificationFailed,
)
from twofactor.models import (
    CeremonyKind,
    CeremonyOptions,
    PasskeyCredential,
    TwoFactorMethod,
)
from twofactor.storage import PasskeyRepository, UserRepository

__all__ = ["PasskeyVerifier", "SecurityNotifier", "LoggingSecurityNotifier"]

_LOG = logging.getLogger(__name__)
SECURITY_LOG = logging.getLogger("twofactor.security")

DEFAULT_PASSKEY_NAME: Final[str] = "Passkey"
MAX_NAME_LENGTH: Final[int] = 64
CHALLENGE_BYTES: Final[int] = 32


def _enable_json_mapping() -> None:
    """Ceremony responses arrive as WebAuthn JSON dicts (base64url fields)."""
    try:
        fido2.features.webauthn_json_mapping.enabled = True
    except ValueError:
        if not fido2.features.webauthn_json_mapping.enabled:
            raise ConfigurationError("fido2 webauthn_json_mapping is disabled by the host")


_enable_json_mapping()


def _now() -> int:
    return int(time.time())


class SecurityNotifier(Protocol):
    """Out-of-band channel for security anomalies (mail, SIEM, pager...)."""

    def possible_clone(
        self, user_id: str, passkey_id: str, stored_count: int, reported_count: int
    ) -> None: ...


class LoggingSecurityNotifier:
    """Default notifier: a CRITICAL record on the ``twofactor.security`` logger."""

    def possible_clone(
        self, user_id: str, passkey_id: str, stored_count: int, reported_count: int
    ) -> None:
        SECURITY_LOG.critical(
            "Possible cloned passkey user=%s passkey=%s stored=%d reported=%d",
            user_id,
            passkey_id,
            stored_count,
            reported_count,
        )


def _clean_name(name: Optional[str]) -> str:
    return (name or "").strip()[:MAX_NAME_LENGTH]


class PasskeyVerifier:
    """Credential-based verifier backed by a fido2 relying party server."""

    kind = TwoFactorMethod.PASSKEY

    def __init__(
        self,
        passkeys: PasskeyRepository,
        challenges: CeremonyChallengeStore,
        users: Optional[UserRepository] = None,
        settings: Optional[TwoFactorSettings] = None,
        notifier: Optional[SecurityNotifier] = None,
        clock: Callable[[], int] = _now,
    ) -> None:
        self._passkeys = passkeys
        self._challenges = challenges
        self._users = users
        self._settings = settings or TwoFactorSettings()
        self._notifier: SecurityNotifier = notifier or LoggingSecurityNotifier()
        self._clock = clock
        expected_origin = self._settings.expected_origin
        self._server = Fido2Server(
            PublicKeyCredentialRpEntity(name=self._settings.rp_name, id=self._settings.rp_id),
            verify_origin=lambda origin: origin == expected_origin,
        )

    # ---------- Helpers ----------

    def _credentials(self, user_id: str) -> List[AttestedCredentialData]:
        return [AttestedCredentialData(p.public_key) for p in self._passkeys.list_by_user(user_id)]

    def _user_entity(
        self, user_id: str, user_name: Optional[str], display_name: Optional[str]
    ) -> PublicKeyCredentialUserEntity:
        user = self._users.get(user_id) if self._users is not None else None
        name = user_name or (user.name if user is not None else user_id)
        display = display_name or (user.display_name if user is not None else name)
        return PublicKeyCredentialUserEntity(
            name=name, id=user_id.encode("utf-8"), display_name=display
        )

    # ---------- Registration ----------

    def generate_registration_options(
        self,
        user_id: str,
        user_name: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> CeremonyOptions:
        """Start a registration ceremony; already registered credentials are excluded."""
        options, state = self._server.register_begin(
            self._user_entity(user_id, user_name, display_name),
            credentials=self._credentials(user_id),
            user_verification=UserVerificationRequirement.PREFERRED,
            challenge=secrets.token_bytes(CHALLENGE_BYTES),
        )
        challenge = self._challenges.issue(user_id, CeremonyKind.PASSKEY_REGISTRATION, state)
        return CeremonyOptions(pending_id=challenge.id, options=options)

    def verify_registration(
        self,
        pending_id: str,
        name: Optional[str],
        response: Mapping[str, Any],
        user_id: Optional[str] = None,
    ) -> PasskeyCredential:
        """
        Finish a registration ceremony and store the new passkey.

        Raises:
            ChallengeMismatch: the ceremony id is unknown, used, stale or foreign.
            VerificationFailed: the attestation does not verify or the credential
                is already registered.
        """
        challenge = self._challenges.take(
            pending_id, CeremonyKind.PASSKEY_REGISTRATION, user_id
        )
        try:
            auth_data = self._server.register_complete(challenge.state, response)
        except (ValueError, KeyError, TypeError, InvalidSignature) as exc:
            _LOG.info("Passkey registration rejected user=%s: %s", challenge.user_id, exc)
            raise VerificationFailed("Registration verification failed", cause=exc)

        cred = auth_data.credential_data
        if cred is None:
            raise VerificationFailed("Registration response carries no credential")
        if self._passkeys.get_by_credential_id(cred.credential_id) is not None:
            raise VerificationFailed("Credential already registered")

        transports: Tuple[str, ...] = ()
        inner = response.get("response") if isinstance(response, Mapping) else None
        if isinstance(inner, Mapping):
            transports = tuple(str(t) for t in inner.get("transports") or ())

        passkey = PasskeyCredential(
            id=str(uuid.uuid4()),
            user_id=challenge.user_id,
            credential_id=bytes(cred.credential_id),
            public_key=bytes(cred),
            sign_count=auth_data.counter,
            name=_clean_name(name) or DEFAULT_PASSKEY_NAME,
            created_at=self._clock(),
            transports=transports,
        )
        self._passkeys.add(passkey)
        _LOG.info("Passkey registered user=%s id=%s", passkey.user_id, passkey.id)
        return passkey

    # ---------- Authentication ----------

    def generate_authentication_options(self, user_id: str) -> CeremonyOptions:
        """
        Start an assertion ceremony restricted to the user's passkeys.

        Raises:
            NotFound: the user has no passkeys.
        """
        credentials = self._credentials(user_id)
        if not credentials:
            raise NotFound("User has no registered passkeys")
        options, state = self._server.authenticate_begin(
            credentials,
            user_verification=UserVerificationRequirement.PREFERRED,
            challenge=secrets.token_bytes(CHALLENGE_BYTES),
        )
        challenge = self._challenges.issue(
            user_id, CeremonyKind.PASSKEY_AUTHENTICATION, state
        )
        return CeremonyOptions(pending_id=challenge.id, options=options)

    def verify_authentication(
        self,
        pending_id: str,
        response: Mapping[str, Any],
        user_id: Optional[str] = None,
    ) -> str:
        """
        Check a signed assertion and advance the stored counter; returns the passkey id.

        Raises:
            ChallengeMismatch: the ceremony id is unknown, used, stale or foreign.
            VerificationFailed: bad signature, origin or RP id, or unknown credential.
            PossibleCloneDetected: counter not strictly greater than stored.
        """
        challenge = self._challenges.take(
            pending_id, CeremonyKind.PASSKEY_AUTHENTICATION, user_id
        )
        owner = challenge.user_id
        try:
            matched = self._server.authenticate_complete(
                challenge.state, self._credentials(owner), response
            )
            reported = AuthenticationResponse.from_dict(
                response
            ).response.authenticator_data.counter
        except (ValueError, KeyError, TypeError, InvalidSignature) as exc:
            _LOG.info("Passkey assertion rejected user=%s: %s", owner, exc)
            raise VerificationFailed("Passkey verification failed", cause=exc)

        passkey = self._passkeys.get_by_credential_id(matched.credential_id)
        if passkey is None or passkey.user_id != owner:
            raise VerificationFailed("Passkey verification failed")

        stored = passkey.sign_count
        if reported <= stored or not self._passkeys.update_sign_count(
            passkey.id, stored, reported, self._clock()
        ):
            SECURITY_LOG.warning(
                "Passkey counter did not increase user=%s passkey=%s", owner, passkey.id
            )
            self._notifier.possible_clone(owner, passkey.id, stored, reported)
            raise PossibleCloneDetected("Passkey verification failed")

        _LOG.info("Passkey assertion accepted user=%s id=%s", owner, passkey.id)
        return passkey.id

    def prepare_challenge(self, user_id: str) -> Optional[CeremonyOptions]:
        return self.generate_authentication_options(user_id)

    def verify_login(self, user_id: str, submission: Mapping[str, Any]) -> str:
        return self.verify_authentication(
            str(submission.get("challenge_id") or ""),
            submission.get("response") or {},
            user_id=user_id,
        )

    # ---------- Management ----------

    def list_passkeys(self, user_id: str) -> Tuple[PasskeyCredential, ...]:
        return self._passkeys.list_by_user(user_id)

    def _require_owned(self, user_id: str, passkey_id: str) -> PasskeyCredential:
        passkey = self._passkeys.get(passkey_id)
        if passkey is None or passkey.user_id != user_id:
            raise NotFound("Passkey not found")
        return passkey

    def rename_passkey(self, user_id: str, passkey_id: str, name: str) -> PasskeyCredential:
        self._require_owned(user_id, passkey_id)
        cleaned = _clean_name(name)
        if not cleaned:
            raise InvalidRequest("Passkey name must not be empty")
        self._passkeys.rename(passkey_id, cleaned)
        return self._require_owned(user_id, passkey_id)

    def remove_passkey(self, user_id: str, passkey_id: str) -> bool:
        self._require_owned(user_id, passkey_id)
        removed = self._passkeys.delete(passkey_id)
        if removed:
            _LOG.info("Passkey removed user=%s id=%s", user_id, passkey_id)
        return removed
