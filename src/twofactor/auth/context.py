# -*- coding: utf-8 -*-
"""
RU: Типизированный контекст аутентификации (полная сессия или ожидающий токен 2FA)
и кодек ожидающего токена на базе JWT.

EN: Typed authentication context passed from the transport into the orchestrator.

Two credentials exist:

- ``FullSessionContext``: an ordinary signed-in user; authorizes management
  endpoints (status, enable/disable, enrollment).
- ``PendingTokenContext``: the narrow credential issued after primary login; it
  carries only the pending session id and the user id, and authorizes the
  challenge/verify endpoints only.

The host decodes its own session credential into ``FullSessionContext``. Pending
tokens are minted and decoded here by ``PendingTokenCodec`` as HS256 JWTs (PyJWT)
whose claims are limited to the token type, pending session id, user id, issue
and expiry times. Expiry is judged by the injected clock, like every other TTL
in the package.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Final, Optional, Union

import jwt

from twofactor.exceptions import InvalidAuthContext
from twofactor.models import PendingAuthSession

__all__ = [
    "FullSessionContext",
    "PendingTokenContext",
    "AuthContext",
    "PendingTokenCodec",
    "require_full",
    "require_pending",
    "PENDING_TOKEN_TYPE",
]

LOG = logging.getLogger("twofactor.auth.context")

PENDING_TOKEN_TYPE: Final[str] = "pending_2fa"
PENDING_TOKEN_ALGORITHM: Final[str] = "HS256"
_REQUIRED_CLAIMS: Final = ("typ", "sid", "uid", "exp")


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True, slots=True)
class FullSessionContext:
    user_id: str


@dataclass(frozen=True, slots=True)
class PendingTokenContext:
    pending_id: str
    user_id: str
    expires_at: int


AuthContext = Union[FullSessionContext, PendingTokenContext]


def require_full(ctx: Optional[AuthContext]) -> FullSessionContext:
    if not isinstance(ctx, FullSessionContext):
        raise InvalidAuthContext("Full session required")
    return ctx


def require_pending(ctx: Optional[AuthContext]) -> PendingTokenContext:
    if not isinstance(ctx, PendingTokenContext):
        raise InvalidAuthContext("Pending two-factor token required")
    return ctx


class PendingTokenCodec:
    """
    Sign and verify pending two-factor tokens.

    Examples:
        >>> codec = PendingTokenCodec("k" * 32, clock=lambda: 100)
        >>> from twofactor.models import PendingAuthSession
        >>> tok = codec.issue(PendingAuthSession("p1", "alice", 100, 400, 5))
        >>> codec.decode(tok).user_id
        'alice'
    """

    def __init__(self, key: str, clock: Callable[[], int] = _now) -> None:
        if not key or len(key) < 32:
            raise ValueError("Signing key must be at least 32 characters")
        self._key = key
        self._clock = clock

    def issue(self, session: PendingAuthSession) -> str:
        claims = {
            "typ": PENDING_TOKEN_TYPE,
            "sid": session.id,
            "uid": session.user_id,
            "iat": session.created_at,
            "exp": session.expires_at,
        }
        return jwt.encode(claims, self._key, algorithm=PENDING_TOKEN_ALGORITHM)

    def decode(self, token: str) -> PendingTokenContext:
        """
        Verify a token and return its context.

        Raises:
            InvalidAuthContext: malformed, bad signature, wrong type or expired.
        """
        if not isinstance(token, str) or not token:
            raise InvalidAuthContext("Malformed pending token")
        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                self._key,
                algorithms=[PENDING_TOKEN_ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": list(_REQUIRED_CLAIMS),
                },
            )
        except jwt.InvalidSignatureError as exc:
            LOG.warning("Pending token signature mismatch")
            raise InvalidAuthContext("Invalid pending token signature", cause=exc)
        except jwt.InvalidTokenError as exc:
            raise InvalidAuthContext("Malformed pending token", cause=exc)

        if claims.get("typ") != PENDING_TOKEN_TYPE:
            raise InvalidAuthContext("Not a pending two-factor token")
        sid, uid, exp = claims.get("sid"), claims.get("uid"), claims.get("exp")
        if not isinstance(sid, str) or not isinstance(uid, str) or not isinstance(exp, int):
            raise InvalidAuthContext("Malformed pending token")
        if exp < self._clock():
            raise InvalidAuthContext("Pending token expired")
        return PendingTokenContext(pending_id=sid, user_id=uid, expires_at=exp)
