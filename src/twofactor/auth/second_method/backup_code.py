# -*- coding: utf-8 -*-
"""
Single-use backup codes.

A batch of codes is issued at once and shown to the user exactly once. Codes
are 8 uppercase hex characters displayed as ``XXXX-XXXX``; input is normalized
(case, dashes, spaces) before checking. Only Argon2id hashes are stored.
Regeneration replaces the whole batch, used and unused alike.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from typing import Any, Callable, Final, List, Mapping, Optional

from twofactor.config import TwoFactorSettings
from twofactor.crypto.hashing import BackupCodeHasher
from twofactor.exceptions import BackupCodesAlreadyIssued, InvalidCode
from twofactor.models import BackupCode, CeremonyOptions, TwoFactorMethod
from twofactor.storage import BackupCodeRepository

__all__ = ["BackupCodeVerifier", "format_code", "normalize_code"]

_LOG = logging.getLogger(__name__)

CODE_BYTES: Final[int] = 4
CODE_LENGTH: Final[int] = CODE_BYTES * 2


def _now() -> int:
    return int(time.time())


def format_code(code: str, block: int = 4) -> str:
    """Split a code into dash-separated blocks for display: ``A1B2C3D4`` -> ``A1B2-C3D4``."""
    return "-".join(code[i : i + block] for i in range(0, len(code), block))


def normalize_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


class BackupCodeVerifier:
    """Issue, count and consume backup codes."""

    kind = TwoFactorMethod.BACKUP

    def __init__(
        self,
        codes: BackupCodeRepository,
        settings: Optional[TwoFactorSettings] = None,
        hasher: Optional[BackupCodeHasher] = None,
        clock: Callable[[], int] = _now,
    ) -> None:
        self._codes = codes
        self._settings = settings or TwoFactorSettings()
        self._hasher = hasher or BackupCodeHasher(self._settings.backup_hash)
        self._clock = clock

    def _issue(self, user_id: str) -> List[str]:
        plain = [
            secrets.token_hex(CODE_BYTES).upper()
            for _ in range(self._settings.backup_code_count)
        ]
        batch = [
            BackupCode(id=str(uuid.uuid4()), user_id=user_id, hashed_code=self._hasher.hash(c))
            for c in plain
        ]
        self._codes.replace_batch(user_id, batch)
        return [format_code(c) for c in plain]

    def generate_codes(self, user_id: str) -> List[str]:
        """
        Issue the first batch of codes.

        Raises:
            BackupCodesAlreadyIssued: unused codes exist; use ``regenerate_codes``.
        """
        if self._codes.count_unused(user_id) > 0:
            raise BackupCodesAlreadyIssued(
                "Backup codes already exist; regenerate to replace them"
            )
        codes = self._issue(user_id)
        _LOG.info("Backup codes generated user=%s count=%d", user_id, len(codes))
        return codes

    def regenerate_codes(self, user_id: str) -> List[str]:
        """Replace every existing code, used or not, with a fresh batch."""
        codes = self._issue(user_id)
        _LOG.info("Backup codes regenerated user=%s count=%d", user_id, len(codes))
        return codes

    def get_unused_count(self, user_id: str) -> int:
        return self._codes.count_unused(user_id)

    def verify(self, user_id: str, code: str) -> Optional[str]:
        """
        Consume a matching unused code and return its id, or None.

        Consumption is a compare-and-set in the store: of two concurrent requests
        with the same code, only one gets the id back.
        """
        candidate = normalize_code(code or "")
        if len(candidate) != CODE_LENGTH:
            return None
        for stored in self._codes.list_unused(user_id):
            if not self._hasher.verify(stored.hashed_code, candidate):
                continue
            if self._codes.mark_used(stored.id, self._clock()):
                _LOG.info("Backup code consumed user=%s", user_id)
                return stored.id
            _LOG.warning("Backup code already consumed concurrently user=%s", user_id)
            return None
        return None

    def prepare_challenge(self, user_id: str) -> Optional[CeremonyOptions]:
        return None

    def verify_login(self, user_id: str, submission: Mapping[str, Any]) -> str:
        code_id = self.verify(user_id, str(submission.get("code") or ""))
        if code_id is None:
            raise InvalidCode("Invalid code")
        return code_id
