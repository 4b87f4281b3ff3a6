# -*- coding: utf-8 -*-
"""
Two-factor authentication core: pending login sessions, TOTP authenticators,
WebAuthn passkeys and single-use backup codes behind one orchestrator.
"""

from twofactor.auth.context import FullSessionContext, PendingTokenContext
from twofactor.auth.orchestrator import SessionIssuer, TwoFactorOrchestrator
from twofactor.auth.two_factor_service import TwoFactorService
from twofactor.config import TwoFactorSettings
from twofactor.exceptions import TwoFactorError
from twofactor.models import TwoFactorMethod
from twofactor.storage import InMemoryStore

__all__ = [
    "TwoFactorOrchestrator",
    "TwoFactorService",
    "TwoFactorSettings",
    "TwoFactorMethod",
    "TwoFactorError",
    "SessionIssuer",
    "FullSessionContext",
    "PendingTokenContext",
    "InMemoryStore",
]

__version__ = "0.1.0"
