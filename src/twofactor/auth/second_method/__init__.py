# -*- coding: utf-8 -*-
"""Second-factor method implementations, one per ``TwoFactorMethod``."""

from twofactor.auth.second_method.backup_code import BackupCodeVerifier
from twofactor.auth.second_method.base import SecondFactorMethod
from twofactor.auth.second_method.passkey import PasskeyVerifier
from twofactor.auth.second_method.totp import TotpVerifier

__all__ = [
    "SecondFactorMethod",
    "TotpVerifier",
    "PasskeyVerifier",
    "BackupCodeVerifier",
]
