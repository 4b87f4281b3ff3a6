# -*- coding: utf-8 -*-
"""
RU: Ожидающие сессии второго фактора и одноразовые челленджи WebAuthn: TTL,
лимит попыток, ленивое истечение и фоновая очистка.

EN: Pending second-factor sessions and WebAuthn ceremony challenges.

A pending session is issued after a successful primary login for a user with
two-factor enabled. It lives for a fixed TTL and allows a fixed number of failed
verification attempts; once it is deleted, expired or exhausted it can never come
back. Expiry is checked lazily on every lookup, and ``purge_expired`` is an
optional sweep for storage hygiene only.

Ceremony challenges hold the fido2 server state between the options call and the
signed response. Each challenge is single-use: ``take`` removes it atomically, so a
replayed response always finds nothing. Abandoned ceremonies are dropped by
``purge_expired``.

Examples:
    >>> store = PendingSessionStore(clock=lambda: 1000)
    >>> s = store.create("alice")
    >>> store.get(s.id).attempts_remaining
    5
    >>> store.consume_attempt(s.id)
    4
    >>> store.delete(s.id)
    True
    >>> store.delete(s.id)  # idempotent
    False
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from hashlib import blake2b
from typing import Any, Callable, Final, Mapping, Optional

from twofactor.config import (
    DEFAULT_CHALLENGE_TTL_SECONDS,
    DEFAULT_PENDING_MAX_ATTEMPTS,
    DEFAULT_PENDING_TTL_SECONDS,
)
from twofactor.exceptions import ChallengeMismatch, ExpiredOrMissing
from twofactor.models import (
    CeremonyChallenge,
    CeremonyKind,
    PendingAuthSession,
    TwoFactorMethod,
)
from twofactor.storage import (
    CeremonyChallengeStorage,
    InMemoryCeremonyChallengeStorage,
    InMemoryPendingSessionStorage,
    PendingSessionStorage,
)

__all__ = ["PendingSessionStore", "CeremonyChallengeStore", "fingerprint"]

LOG = logging.getLogger("twofactor.auth.pending")
SECURITY_LOG = logging.getLogger("twofactor.security")

SESSION_ID_BYTES: Final[int] = 32
FINGERPRINT_DIGEST: Final[int] = 6


def _now() -> int:
    """Return current Unix time in seconds as int."""
    return int(time.time())


def fingerprint(identifier: str) -> str:
    """Short BLAKE2b digest of an identifier, safe to put in log records."""
    h = blake2b(digest_size=FINGERPRINT_DIGEST)
    h.update(identifier.encode("utf-8"))
    return h.hexdigest()


class PendingSessionStore:
    """Issue, look up and spend pending sessions with a TTL and an attempt budget.

    The lock serializes read-modify-write sequences of this process; the storage's
    own atomic ``decrement_attempts`` carries the guarantee across processes.
    """

    def __init__(
        self,
        storage: Optional[PendingSessionStorage] = None,
        ttl_seconds: int = DEFAULT_PENDING_TTL_SECONDS,
        max_attempts: int = DEFAULT_PENDING_MAX_ATTEMPTS,
        clock: Callable[[], int] = _now,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._storage: PendingSessionStorage = storage or InMemoryPendingSessionStorage()
        self._ttl: Final[int] = int(ttl_seconds)
        self._max_attempts: Final[int] = int(max_attempts)
        self._clock: Callable[[], int] = clock
        self._lock = threading.RLock()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def create(self, user_id: str) -> PendingAuthSession:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("user_id must be a non-empty string.")
        now = self._clock()
        session = PendingAuthSession(
            id=secrets.token_urlsafe(SESSION_ID_BYTES),
            user_id=user_id,
            created_at=now,
            expires_at=now + self._ttl,
            attempts_remaining=self._max_attempts,
        )
        with self._lock:
            self._storage.put(session)
        LOG.info(
            "Pending session created user=%s pid=%s", user_id, fingerprint(session.id)
        )
        return session

    def get(self, session_id: str) -> PendingAuthSession:
        """Return the live session; unknown and expired raise the same error."""
        now = self._clock()
        with self._lock:
            session = self._storage.get(session_id)
            if session is None:
                raise ExpiredOrMissing()
            if session.is_expired(now):
                self._storage.delete(session_id)
                LOG.info("Pending session expired pid=%s", fingerprint(session_id))
                raise ExpiredOrMissing()
            return session

    def consume_attempt(self, session_id: str) -> int:
        """
        Spend one attempt and return how many are left.

        Reaching zero deletes the session. Callers racing on the same session each
        observe a distinct remaining count; no more than ``max_attempts`` failures
        are ever accepted.
        """
        with self._lock:
            self.get(session_id)
            remaining = self._storage.decrement_attempts(session_id)
        if remaining is None:
            raise ExpiredOrMissing()
        if remaining == 0:
            LOG.warning(
                "Pending session exhausted its attempts pid=%s", fingerprint(session_id)
            )
        return remaining

    def select_method(self, session_id: str, method: TwoFactorMethod) -> PendingAuthSession:
        kind = TwoFactorMethod(method)
        with self._lock:
            self.get(session_id)
            if not self._storage.set_selected_method(session_id, kind):
                raise ExpiredOrMissing()
            return self.get(session_id)

    def delete(self, session_id: str) -> bool:
        """
        Remove the session; idempotent.

        Returns True only for the caller that actually removed it, which makes a
        successful verification the single owner of the login it completes.
        """
        with self._lock:
            removed = self._storage.delete(session_id)
        if removed:
            LOG.info("Pending session deleted pid=%s", fingerprint(session_id))
        return removed

    def purge_expired(self) -> int:
        """Remove expired sessions; returns the number removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for sid in self._storage.iter_ids():
                session = self._storage.get(sid)
                if session is not None and session.is_expired(now) and self._storage.delete(sid):
                    removed += 1
        if removed:
            LOG.debug("Purged %d expired pending sessions", removed)
        return removed


class CeremonyChallengeStore:
    """Single-use storage of WebAuthn ceremony state keyed by an opaque id."""

    def __init__(
        self,
        storage: Optional[CeremonyChallengeStorage] = None,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL_SECONDS,
        clock: Callable[[], int] = _now,
    ) -> None:
        self._storage: CeremonyChallengeStorage = (
            storage or InMemoryCeremonyChallengeStorage()
        )
        self._ttl: Final[int] = int(ttl_seconds)
        self._clock: Callable[[], int] = clock

    def issue(
        self, user_id: str, kind: CeremonyKind, state: Mapping[str, Any]
    ) -> CeremonyChallenge:
        now = self._clock()
        challenge = CeremonyChallenge(
            id=secrets.token_urlsafe(SESSION_ID_BYTES),
            user_id=user_id,
            kind=CeremonyKind(kind),
            state=dict(state),
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._storage.put(challenge)
        LOG.debug(
            "Ceremony challenge issued user=%s kind=%s cid=%s",
            user_id,
            challenge.kind.value,
            fingerprint(challenge.id),
        )
        return challenge

    def take(
        self, challenge_id: str, kind: CeremonyKind, user_id: Optional[str] = None
    ) -> CeremonyChallenge:
        """
        Remove and return a live challenge of the expected kind.

        Raises:
            ChallengeMismatch: unknown, already used, expired, wrong kind or bound
                to another user. The challenge is gone afterwards in every case.
        """
        challenge = self._storage.pop(challenge_id) if challenge_id else None
        reason: Optional[str] = None
        if challenge is None:
            reason = "unknown or already used"
        elif challenge.expires_at < self._clock():
            reason = "expired"
        elif challenge.kind is not CeremonyKind(kind):
            reason = "wrong ceremony kind"
        elif user_id is not None and challenge.user_id != user_id:
            reason = "bound to another user"

        if reason is not None:
            SECURITY_LOG.warning(
                "Ceremony challenge rejected (%s) user=%s cid=%s",
                reason,
                user_id,
                fingerprint(challenge_id or ""),
            )
            raise ChallengeMismatch("Challenge is invalid or expired")
        assert challenge is not None
        return challenge

    def purge_expired(self) -> int:
        """Drop ceremonies nobody came back for; returns the number removed."""
        now = self._clock()
        removed = 0
        for cid in self._storage.iter_ids():
            challenge = self._storage.get(cid)
            if challenge is None or challenge.expires_at >= now:
                continue
            if self._storage.pop(cid) is not None:
                removed += 1
        if removed:
            LOG.debug("Purged %d expired ceremony challenges", removed)
        return removed
