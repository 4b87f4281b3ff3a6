# -*- coding: utf-8 -*-
"""
RU: Оркестрация входа со вторым фактором: ожидающая сессия, выбор метода,
проверка и однократный выпуск полной сессии.

EN: Two-factor login orchestration.

Flow:
    1. Host validates the password, then calls ``begin_login(user_id)``.
       Without 2FA the user gets full-session tokens right away; with 2FA a
       pending session and a signed pending token are returned instead.
    2. Client optionally calls ``challenge(ctx, method)``. Passkeys need
       server-issued ceremony options; code-based methods only get the list of
       available methods back.
    3. Client submits a TOTP code, a passkey assertion or a backup code. Every
       failed verification spends one attempt of the pending session; success
       deletes the pending session and mints the full session exactly once: only
       the request that actually removes the pending session gets the tokens.

Method kinds are dispatched through ``_methods`` (one ``SecondFactorMethod`` per
kind); all configured methods are usable regardless of the preferred one.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from twofactor.auth.context import (
    AuthContext,
    PendingTokenCodec,
    require_full,
    require_pending,
)
from twofactor.auth.pending import CeremonyChallengeStore, PendingSessionStore, fingerprint
from twofactor.auth.registry import MethodRegistry
from twofactor.auth.second_method.backup_code import BackupCodeVerifier
from twofactor.auth.second_method.base import SecondFactorMethod
from twofactor.auth.second_method.passkey import (
    LoggingSecurityNotifier,
    PasskeyVerifier,
    SecurityNotifier,
)
from twofactor.auth.second_method.totp import TotpVerifier
from twofactor.config import TwoFactorSettings
from twofactor.exceptions import (
    ChallengeMismatch,
    ExpiredOrMissing,
    InvalidMethod,
    NoAttemptsRemaining,
    PossibleCloneDetected,
    VerificationFailed,
)
from twofactor.models import (
    Authenticator,
    ChallengeResult,
    CeremonyOptions,
    LoginOutcome,
    PasskeyCredential,
    PendingAuthSession,
    TotpEnrollment,
    TwoFactorConfig,
    TwoFactorMethod,
    TwoFactorStatus,
    VerificationResult,
)
from twofactor.storage import InMemoryStore

__all__ = [
    "TwoFactorOrchestrator",
    "SessionIssuer",
    "SecurityNotifier",
    "LoggingSecurityNotifier",
]

LOG = logging.getLogger("twofactor.auth.orchestrator")
SECURITY_LOG = logging.getLogger("twofactor.security")


def _now() -> int:
    return int(time.time())


class SessionIssuer(Protocol):
    """Host hook that mints the real session once the second factor is confirmed."""

    def issue_full_session(self, user_id: str) -> Mapping[str, Any]: ...


class TwoFactorOrchestrator:
    """Facade over pending sessions, method registry and the three verifiers."""

    def __init__(
        self,
        store: InMemoryStore,
        session_issuer: SessionIssuer,
        settings: Optional[TwoFactorSettings] = None,
        notifier: Optional[SecurityNotifier] = None,
        clock: Callable[[], int] = _now,
    ) -> None:
        self.settings = settings or TwoFactorSettings()
        self._issuer = session_issuer
        self._clock = clock

        self.pending = PendingSessionStore(
            store.pending,
            ttl_seconds=self.settings.pending_ttl_seconds,
            max_attempts=self.settings.pending_max_attempts,
            clock=clock,
        )
        self.challenges = CeremonyChallengeStore(
            store.challenges,
            ttl_seconds=self.settings.challenge_ttl_seconds,
            clock=clock,
        )
        self.registry = MethodRegistry(
            store.configs, store.authenticators, store.passkeys, store.backup_codes
        )
        self.tokens = PendingTokenCodec(self.settings.pending_token_key, clock=clock)

        self.totp = TotpVerifier(
            store.authenticators, users=store.users, settings=self.settings, clock=clock
        )
        self.passkeys = PasskeyVerifier(
            store.passkeys,
            self.challenges,
            users=store.users,
            settings=self.settings,
            notifier=notifier,
            clock=clock,
        )
        self.backup_codes = BackupCodeVerifier(
            store.backup_codes, settings=self.settings, clock=clock
        )

        self._methods: Dict[TwoFactorMethod, SecondFactorMethod] = {
            TwoFactorMethod.TOTP: self.totp,
            TwoFactorMethod.PASSKEY: self.passkeys,
            TwoFactorMethod.BACKUP: self.backup_codes,
        }

    # ---------- Login ----------

    def begin_login(self, user_id: str) -> LoginOutcome:
        """Entry point after a successful primary login."""
        if not self.registry.is_enabled(user_id):
            tokens = self._issuer.issue_full_session(user_id)
            return LoginOutcome(user_id=user_id, requires_two_factor=False, tokens=tokens)

        session = self.pending.create(user_id)
        return LoginOutcome(
            user_id=user_id,
            requires_two_factor=True,
            pending_token=self.tokens.issue(session),
            pending_id=session.id,
            expires_at=session.expires_at,
            available_methods=self.registry.get_available_methods(user_id),
        )

    def _resolve_method(self, user_id: str, method: Any) -> TwoFactorMethod:
        try:
            kind = TwoFactorMethod(method)
        except ValueError as exc:
            raise InvalidMethod(f"Unknown method: {method}", cause=exc)
        if kind not in self.registry.get_available_methods(user_id):
            raise InvalidMethod(f"Method {kind.value} is not available")
        return kind

    def _session_for(self, ctx: AuthContext) -> PendingAuthSession:
        """Live pending session behind ``ctx``; a foreign user id reads as missing."""
        pending_ctx = require_pending(ctx)
        session = self.pending.get(pending_ctx.pending_id)
        if session.user_id != pending_ctx.user_id:
            raise ExpiredOrMissing()
        return session

    def challenge(self, ctx: AuthContext, method: Any) -> ChallengeResult:
        session = self._session_for(ctx)
        kind = self._resolve_method(session.user_id, method)
        ceremony = self._methods[kind].prepare_challenge(session.user_id)
        self.pending.select_method(session.id, kind)
        return ChallengeResult(
            pending_id=session.id,
            method=kind,
            available_methods=tuple(self.registry.get_available_methods(session.user_id)),
            ceremony=ceremony,
        )

    def passkey_options(self, ctx: AuthContext) -> CeremonyOptions:
        result = self.challenge(ctx, TwoFactorMethod.PASSKEY)
        assert result.ceremony is not None
        return result.ceremony

    def _verify(
        self, ctx: AuthContext, kind: TwoFactorMethod, submission: Mapping[str, Any]
    ) -> VerificationResult:
        session = self._session_for(ctx)
        user_id = session.user_id

        try:
            credential_id = self._methods[kind].verify_login(user_id, submission)
        except VerificationFailed as exc:
            remaining = self.pending.consume_attempt(session.id)
            if isinstance(exc, (ChallengeMismatch, PossibleCloneDetected)):
                SECURITY_LOG.warning(
                    "Second factor anomaly %s user=%s pid=%s",
                    exc.code,
                    user_id,
                    fingerprint(session.id),
                )
            else:
                LOG.info(
                    "Second factor rejected method=%s user=%s remaining=%d",
                    kind.value,
                    user_id,
                    remaining,
                )
            if remaining == 0:
                raise NoAttemptsRemaining() from exc
            exc.attempts_remaining = remaining
            raise

        if kind is TwoFactorMethod.BACKUP:
            self.registry.refresh_backup_count(user_id)
        if not self.pending.delete(session.id):
            # a concurrent verification already completed this login
            LOG.warning(
                "Second factor accepted on a closed pending session method=%s user=%s pid=%s",
                kind.value,
                user_id,
                fingerprint(session.id),
            )
            raise ExpiredOrMissing()
        tokens = self._issuer.issue_full_session(user_id)
        LOG.info("Second factor accepted method=%s user=%s", kind.value, user_id)
        return VerificationResult(
            user_id=user_id, method=kind, credential_id=credential_id, tokens=tokens
        )

    def verify_totp(self, ctx: AuthContext, code: str) -> VerificationResult:
        return self._verify(ctx, TwoFactorMethod.TOTP, {"code": code})

    def verify_passkey(
        self, ctx: AuthContext, challenge_id: str, response: Mapping[str, Any]
    ) -> VerificationResult:
        return self._verify(
            ctx,
            TwoFactorMethod.PASSKEY,
            {"challenge_id": challenge_id, "response": response},
        )

    def verify_backup(self, ctx: AuthContext, code: str) -> VerificationResult:
        return self._verify(ctx, TwoFactorMethod.BACKUP, {"code": code})

    def cancel(self, ctx: AuthContext) -> None:
        self.pending.delete(require_pending(ctx).pending_id)

    def purge_expired(self) -> int:
        """Sweep expired pending sessions and abandoned ceremonies; returns the total."""
        return self.pending.purge_expired() + self.challenges.purge_expired()

    # ---------- Management (full session) ----------

    def status(self, ctx: AuthContext) -> TwoFactorStatus:
        return self.registry.get_status(require_full(ctx).user_id)

    def enable(
        self, ctx: AuthContext, preferred_method: Any = TwoFactorMethod.TOTP
    ) -> TwoFactorConfig:
        return self.registry.enable(require_full(ctx).user_id, preferred_method)

    def disable(self, ctx: AuthContext) -> TwoFactorConfig:
        return self.registry.disable(require_full(ctx).user_id)

    def set_preferred_method(self, ctx: AuthContext, method: Any) -> TwoFactorConfig:
        return self.registry.set_preferred_method(require_full(ctx).user_id, method)

    def setup_totp(self, ctx: AuthContext, name: str = "Authenticator") -> TotpEnrollment:
        return self.totp.generate_secret(require_full(ctx).user_id, name)

    def confirm_totp(self, ctx: AuthContext, authenticator_id: str, code: str) -> bool:
        return self.totp.add_authenticator(
            authenticator_id, code, user_id=require_full(ctx).user_id
        )

    def list_authenticators(self, ctx: AuthContext) -> Tuple[Authenticator, ...]:
        return self.totp.list_authenticators(require_full(ctx).user_id)

    def remove_authenticator(self, ctx: AuthContext, authenticator_id: str) -> bool:
        user_id = require_full(ctx).user_id
        return self.registry.remove_credential(
            user_id, lambda: self.totp.remove_authenticator(user_id, authenticator_id)
        )

    def passkey_registration_options(self, ctx: AuthContext) -> CeremonyOptions:
        return self.passkeys.generate_registration_options(require_full(ctx).user_id)

    def register_passkey(
        self,
        ctx: AuthContext,
        challenge_id: str,
        response: Mapping[str, Any],
        name: Optional[str] = None,
    ) -> PasskeyCredential:
        return self.passkeys.verify_registration(
            challenge_id, name, response, user_id=require_full(ctx).user_id
        )

    def list_passkeys(self, ctx: AuthContext) -> Tuple[PasskeyCredential, ...]:
        return self.passkeys.list_passkeys(require_full(ctx).user_id)

    def rename_passkey(self, ctx: AuthContext, passkey_id: str, name: str) -> PasskeyCredential:
        return self.passkeys.rename_passkey(require_full(ctx).user_id, passkey_id, name)

    def remove_passkey(self, ctx: AuthContext, passkey_id: str) -> bool:
        user_id = require_full(ctx).user_id
        return self.registry.remove_credential(
            user_id, lambda: self.passkeys.remove_passkey(user_id, passkey_id)
        )

    def generate_backup_codes(self, ctx: AuthContext) -> List[str]:
        user_id = require_full(ctx).user_id
        codes = self.backup_codes.generate_codes(user_id)
        self.registry.refresh_backup_count(user_id)
        return codes

    def regenerate_backup_codes(self, ctx: AuthContext) -> List[str]:
        user_id = require_full(ctx).user_id
        codes = self.backup_codes.regenerate_codes(user_id)
        self.registry.refresh_backup_count(user_id)
        return codes

    def backup_code_count(self, ctx: AuthContext) -> int:
        return self.backup_codes.get_unused_count(require_full(ctx).user_id)
