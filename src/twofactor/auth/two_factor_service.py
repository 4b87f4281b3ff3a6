# -*- coding: utf-8 -*-
"""
Transport boundary over TwoFactorOrchestrator.

The host maps its HTTP (or any request/response) layer onto ``dispatch``:

    >>> service = TwoFactorService(orchestrator)
    >>> ctx = service.authenticate_pending(token_from_header)
    >>> service.dispatch("POST", "/auth/two-factor/verify/totp", ctx, {"code": "123456"})
    {'success': True, 'data': {...}}

Every route declares the credential it needs (full session or pending token);
that is checked once here against the typed context. ``TwoFactorError``s never
escape: they become failure responses carrying the error code and, for
verification failures, the remaining attempt count. Anything else (a store
outage, a bug) propagates to the host unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypedDict

from twofactor.auth.context import (
    AuthContext,
    FullSessionContext,
    PendingTokenContext,
)
from twofactor.auth.orchestrator import TwoFactorOrchestrator
from twofactor.exceptions import (
    InvalidAuthContext,
    InvalidRequest,
    NotFound,
    TwoFactorError,
    VerificationFailed,
)
from twofactor.models import (
    Authenticator,
    PasskeyCredential,
    TwoFactorMethod,
    VerificationResult,
)

__all__ = [
    "TwoFactorService",
    "AuthMode",
    "Route",
    "ROUTES",
    "ServiceResponse",
]

_logger = logging.getLogger("twofactor.auth.service")


# --- Typed Response Contracts ---


class ServiceResponse(TypedDict, total=False):
    success: bool
    data: Dict[str, Any]
    error: str
    message: str
    attempts_remaining: Optional[int]


class StatusPayload(TypedDict):
    enabled: bool
    preferred_method: str
    methods: Dict[str, bool]
    totp_count: int
    passkey_count: int
    backup_codes_count: int


class VerificationPayload(TypedDict):
    user_id: str
    method: str
    tokens: Dict[str, Any]


class AuthenticatorPayload(TypedDict):
    id: str
    name: str
    verified: bool
    created_at: int
    last_used_at: Optional[int]


class PasskeyPayload(TypedDict):
    id: str
    name: str
    created_at: int
    last_used_at: Optional[int]
    transports: List[str]


# --- Routing ---


class AuthMode(str, Enum):
    FULL = "full"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class Route:
    method: str
    path: str
    auth: AuthMode
    handler: str

    def match(self, method: str, path: str) -> Optional[Dict[str, str]]:
        """Return path parameters when ``method``/``path`` fit this route."""
        if method.upper() != self.method:
            return None
        want = self.path.strip("/").split("/")
        got = path.split("?", 1)[0].strip("/").split("/")
        if len(want) != len(got):
            return None
        params: Dict[str, str] = {}
        for w, g in zip(want, got):
            if w.startswith(":"):
                if not g:
                    return None
                params[w[1:]] = g
            elif w != g:
                return None
        return params


ROUTES: Tuple[Route, ...] = (
    Route("GET", "/auth/two-factor/status", AuthMode.FULL, "status"),
    Route("POST", "/auth/two-factor/enable", AuthMode.FULL, "enable"),
    Route("POST", "/auth/two-factor/disable", AuthMode.FULL, "disable"),
    Route("POST", "/auth/two-factor/preferred-method", AuthMode.FULL, "set_preferred_method"),
    Route("POST", "/auth/two-factor/challenge", AuthMode.PENDING, "challenge"),
    Route("POST", "/auth/two-factor/verify/totp", AuthMode.PENDING, "verify_totp"),
    Route("POST", "/auth/two-factor/verify/passkey/options", AuthMode.PENDING, "passkey_options"),
    Route("POST", "/auth/two-factor/verify/passkey", AuthMode.PENDING, "verify_passkey"),
    Route("POST", "/auth/two-factor/verify/backup", AuthMode.PENDING, "verify_backup"),
    Route("POST", "/auth/two-factor/cancel", AuthMode.PENDING, "cancel"),
    Route("POST", "/auth/totp/setup", AuthMode.FULL, "totp_setup"),
    Route("POST", "/auth/totp/verify-setup", AuthMode.FULL, "totp_verify_setup"),
    Route("GET", "/auth/totp/authenticators", AuthMode.FULL, "list_authenticators"),
    Route("DELETE", "/auth/totp/authenticators/:id", AuthMode.FULL, "remove_authenticator"),
    Route("POST", "/auth/passkey/register/options", AuthMode.FULL, "passkey_register_options"),
    Route("POST", "/auth/passkey/register/verify", AuthMode.FULL, "passkey_register_verify"),
    Route("GET", "/auth/passkeys", AuthMode.FULL, "list_passkeys"),
    Route("PATCH", "/auth/passkeys/:id", AuthMode.FULL, "rename_passkey"),
    Route("DELETE", "/auth/passkeys/:id", AuthMode.FULL, "remove_passkey"),
    Route("POST", "/auth/backup-codes/generate", AuthMode.FULL, "generate_backup_codes"),
    Route("POST", "/auth/backup-codes/regenerate", AuthMode.FULL, "regenerate_backup_codes"),
    Route("GET", "/auth/backup-codes/count", AuthMode.FULL, "backup_code_count"),
)


# --- Helpers ---


def _ok(data: Optional[Dict[str, Any]] = None) -> ServiceResponse:
    return ServiceResponse(success=True, data=data or {})


def _error_response(fn: str, exc: TwoFactorError) -> ServiceResponse:
    _logger.info("TwoFactorService [%s] %s: %s", fn, exc.code, exc)
    resp = ServiceResponse(success=False, error=exc.code, message=str(exc))
    if isinstance(exc, VerificationFailed) and exc.attempts_remaining is not None:
        resp["attempts_remaining"] = exc.attempts_remaining
    return resp


def _require_str(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"Field '{key}' is required")
    return value


def _require_mapping(body: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = body.get(key)
    if not isinstance(value, Mapping):
        raise InvalidRequest(f"Field '{key}' must be an object")
    return value


def _authenticator_payload(a: Authenticator) -> AuthenticatorPayload:
    return AuthenticatorPayload(
        id=a.id,
        name=a.name,
        verified=a.verified,
        created_at=a.created_at,
        last_used_at=a.last_used_at,
    )


def _passkey_payload(p: PasskeyCredential) -> PasskeyPayload:
    return PasskeyPayload(
        id=p.id,
        name=p.name,
        created_at=p.created_at,
        last_used_at=p.last_used_at,
        transports=list(p.transports),
    )


def _verification_payload(result: VerificationResult) -> VerificationPayload:
    return VerificationPayload(
        user_id=result.user_id, method=result.method.value, tokens=dict(result.tokens)
    )


# --- Service Implementation ---


class TwoFactorService:
    """Request-shaped API; one handler per entry of ``ROUTES``."""

    def __init__(self, orchestrator: TwoFactorOrchestrator) -> None:
        self._orc = orchestrator

    # ---------- Entry points ----------

    def authenticate_pending(self, token: str) -> PendingTokenContext:
        """Decode a pending token from the transport; raises InvalidAuthContext."""
        return self._orc.tokens.decode(token)

    def start_login(self, user_id: str) -> ServiceResponse:
        """Call after a successful password check."""
        try:
            outcome = self._orc.begin_login(user_id)
        except TwoFactorError as e:
            return _error_response("start_login", e)
        if not outcome.requires_two_factor:
            return _ok({"requires_two_factor": False, "tokens": dict(outcome.tokens or {})})
        return _ok(
            {
                "requires_two_factor": True,
                "pending_token": outcome.pending_token,
                "expires_at": outcome.expires_at,
                "available_methods": [m.value for m in outcome.available_methods],
            }
        )

    def dispatch(
        self,
        method: str,
        path: str,
        ctx: Optional[AuthContext],
        body: Optional[Mapping[str, Any]] = None,
    ) -> ServiceResponse:
        """Route a request to its handler and convert failures into responses."""
        for route in ROUTES:
            params = route.match(method, path)
            if params is None:
                continue
            try:
                self._check_auth(route, ctx)
                handler: Callable[..., ServiceResponse] = getattr(self, "_h_" + route.handler)
                return handler(ctx, params, body or {})
            except TwoFactorError as e:
                return _error_response(route.handler, e)
        return _error_response("dispatch", NotFound(f"No route for {method.upper()} {path}"))

    @staticmethod
    def _check_auth(route: Route, ctx: Optional[AuthContext]) -> None:
        if route.auth is AuthMode.FULL and not isinstance(ctx, FullSessionContext):
            raise InvalidAuthContext("Full session required")
        if route.auth is AuthMode.PENDING and not isinstance(ctx, PendingTokenContext):
            raise InvalidAuthContext("Pending two-factor token required")

    # ---------- Two-factor settings ----------

    def _h_status(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        st = self._orc.status(ctx)
        payload = StatusPayload(
            enabled=st.enabled,
            preferred_method=st.preferred_method.value,
            methods={m.value: ok for m, ok in st.methods.items()},
            totp_count=st.totp_count,
            passkey_count=st.passkey_count,
            backup_codes_count=st.backup_codes_count,
        )
        return _ok(dict(payload))

    def _h_enable(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        preferred = body.get("preferred_method") or TwoFactorMethod.TOTP.value
        cfg = self._orc.enable(ctx, preferred)
        return _ok({"enabled": cfg.enabled, "preferred_method": cfg.preferred_method.value})

    def _h_disable(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        cfg = self._orc.disable(ctx)
        return _ok({"enabled": cfg.enabled})

    def _h_set_preferred_method(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        cfg = self._orc.set_preferred_method(ctx, _require_str(body, "method"))
        return _ok({"preferred_method": cfg.preferred_method.value})

    # ---------- Login second step ----------

    def _h_challenge(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        result = self._orc.challenge(ctx, _require_str(body, "method"))
        data: Dict[str, Any] = {
            "method": result.method.value,
            "available_methods": [m.value for m in result.available_methods],
        }
        if result.ceremony is not None:
            data["challenge_id"] = result.ceremony.pending_id
            data["options"] = dict(result.ceremony.options)
        return _ok(data)

    def _h_verify_totp(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        result = self._orc.verify_totp(ctx, _require_str(body, "code"))
        return _ok(dict(_verification_payload(result)))

    def _h_passkey_options(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        ceremony = self._orc.passkey_options(ctx)
        return _ok({"challenge_id": ceremony.pending_id, "options": dict(ceremony.options)})

    def _h_verify_passkey(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        result = self._orc.verify_passkey(
            ctx, _require_str(body, "challenge_id"), _require_mapping(body, "response")
        )
        return _ok(dict(_verification_payload(result)))

    def _h_verify_backup(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        result = self._orc.verify_backup(ctx, _require_str(body, "code"))
        return _ok(dict(_verification_payload(result)))

    def _h_cancel(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        self._orc.cancel(ctx)
        return _ok()

    # ---------- TOTP management ----------

    def _h_totp_setup(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        name = body.get("name")
        enrollment = self._orc.setup_totp(ctx, name if isinstance(name, str) else "Authenticator")
        return _ok(
            {
                "authenticator_id": enrollment.authenticator_id,
                "secret": enrollment.secret,
                "uri": enrollment.qr_uri,
                "qr": enrollment.qr_png,
                "qr_mime": "image/png",
            }
        )

    def _h_totp_verify_setup(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        ok = self._orc.confirm_totp(
            ctx, _require_str(body, "authenticator_id"), _require_str(body, "code")
        )
        return _ok({"verified": ok})

    def _h_list_authenticators(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        items = [dict(_authenticator_payload(a)) for a in self._orc.list_authenticators(ctx)]
        return _ok({"authenticators": items})

    def _h_remove_authenticator(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        removed = self._orc.remove_authenticator(ctx, params["id"])
        return _ok({"removed": removed, "enabled": self._orc.status(ctx).enabled})

    # ---------- Passkey management ----------

    def _h_passkey_register_options(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        ceremony = self._orc.passkey_registration_options(ctx)
        return _ok({"challenge_id": ceremony.pending_id, "options": dict(ceremony.options)})

    def _h_passkey_register_verify(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        name = body.get("name")
        passkey = self._orc.register_passkey(
            ctx,
            _require_str(body, "challenge_id"),
            _require_mapping(body, "response"),
            name=name if isinstance(name, str) else None,
        )
        return _ok(dict(_passkey_payload(passkey)))

    def _h_list_passkeys(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        return _ok({"passkeys": [dict(_passkey_payload(p)) for p in self._orc.list_passkeys(ctx)]})

    def _h_rename_passkey(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        passkey = self._orc.rename_passkey(ctx, params["id"], _require_str(body, "name"))
        return _ok(dict(_passkey_payload(passkey)))

    def _h_remove_passkey(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        removed = self._orc.remove_passkey(ctx, params["id"])
        return _ok({"removed": removed, "enabled": self._orc.status(ctx).enabled})

    # ---------- Backup codes ----------

    def _h_generate_backup_codes(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        return _ok({"codes": self._orc.generate_backup_codes(ctx)})

    def _h_regenerate_backup_codes(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        return _ok({"codes": self._orc.regenerate_backup_codes(ctx)})

    def _h_backup_code_count(self, ctx: AuthContext, params: Dict[str, str], body: Mapping[str, Any]) -> ServiceResponse:
        return _ok({"count": self._orc.backup_code_count(ctx)})
