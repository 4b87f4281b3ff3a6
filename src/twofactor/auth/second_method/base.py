# -*- coding: utf-8 -*-
"""Interface every login verifier exposes to the orchestrator."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from twofactor.models import CeremonyOptions, TwoFactorMethod

__all__ = ["SecondFactorMethod"]


class SecondFactorMethod(Protocol):
    """
    One implementation per method kind.

    ``prepare_challenge`` returns ceremony options for methods that need a
    server-issued challenge (passkey) and ``None`` for code-based methods.
    ``verify_login`` returns the id of the credential that matched, or raises a
    ``VerificationFailed`` subclass.
    """

    kind: TwoFactorMethod

    def prepare_challenge(self, user_id: str) -> Optional[CeremonyOptions]: ...

    def verify_login(self, user_id: str, submission: Mapping[str, Any]) -> str: ...
