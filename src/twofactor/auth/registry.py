# -*- coding: utf-8 -*-
"""
RU: Конфигурация 2FA пользователя: включение, отключение, доступные методы, статус.

EN: Per-user two-factor configuration: enable/disable, available methods, status.

Rule kept here: a user with ``enabled=True`` always has at least one primary
method (a verified TOTP authenticator or a registered passkey). Credential
removals go through ``remove_credential`` so the deletion and the recheck happen
under one lock and no reader ever sees "enabled with zero methods".
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List

from twofactor.exceptions import InvalidMethod, NoMethodConfigured
from twofactor.models import (
    PRIMARY_METHODS,
    TwoFactorConfig,
    TwoFactorMethod,
    TwoFactorStatus,
)
from twofactor.storage import (
    AuthenticatorRepository,
    BackupCodeRepository,
    PasskeyRepository,
    TwoFactorConfigRepository,
)

__all__ = ["MethodRegistry"]

LOG = logging.getLogger("twofactor.auth.registry")


class MethodRegistry:
    """Source of truth for whether 2FA is on and which methods a user can use."""

    def __init__(
        self,
        configs: TwoFactorConfigRepository,
        authenticators: AuthenticatorRepository,
        passkeys: PasskeyRepository,
        backup_codes: BackupCodeRepository,
    ) -> None:
        self._configs = configs
        self._authenticators = authenticators
        self._passkeys = passkeys
        self._backup_codes = backup_codes
        self._lock = threading.RLock()

    # ---------- Availability ----------

    def _availability(self, user_id: str) -> Dict[TwoFactorMethod, bool]:
        has_totp = any(a.verified for a in self._authenticators.list_by_user(user_id))
        has_passkey = bool(self._passkeys.list_by_user(user_id))
        has_backup = self._backup_codes.count_unused(user_id) > 0
        return {
            TwoFactorMethod.TOTP: has_totp,
            TwoFactorMethod.PASSKEY: has_passkey,
            TwoFactorMethod.BACKUP: has_backup,
        }

    def get_available_methods(self, user_id: str) -> List[TwoFactorMethod]:
        """Methods usable right now, in the fixed order totp, passkey, backup."""
        with self._lock:
            return [m for m, ok in self._availability(user_id).items() if ok]

    def has_primary_method(self, user_id: str) -> bool:
        avail = self._availability(user_id)
        return any(avail[m] for m in PRIMARY_METHODS)

    # ---------- Config ----------

    def get_config(self, user_id: str) -> TwoFactorConfig:
        """Stored config, or a disabled default for users that never enabled 2FA."""
        return self._configs.get(user_id) or TwoFactorConfig(user_id=user_id)

    def is_enabled(self, user_id: str) -> bool:
        return self.get_config(user_id).enabled

    def enable(
        self,
        user_id: str,
        preferred_method: TwoFactorMethod = TwoFactorMethod.TOTP,
    ) -> TwoFactorConfig:
        """
        Turn 2FA on.

        If the requested preferred method is not configured, the first available
        primary method is stored instead.

        Raises:
            NoMethodConfigured: no verified authenticator and no passkey.
            InvalidMethod: ``preferred_method`` is not a known method.
        """
        try:
            preferred = TwoFactorMethod(preferred_method)
        except ValueError as exc:
            raise InvalidMethod(f"Unknown method: {preferred_method}", cause=exc)

        with self._lock:
            avail = self._availability(user_id)
            primaries = [m for m in PRIMARY_METHODS if avail[m]]
            if not primaries:
                LOG.info("Enable refused, no method configured user=%s", user_id)
                raise NoMethodConfigured(
                    "Cannot enable two-factor without a TOTP authenticator or passkey"
                )
            if preferred not in primaries:
                preferred = primaries[0]

            config = self.get_config(user_id)
            config.enabled = True
            config.preferred_method = preferred
            config.backup_codes_remaining = self._backup_codes.count_unused(user_id)
            self._configs.put(config)
            LOG.info("Two-factor enabled user=%s preferred=%s", user_id, preferred.value)
            return config

    def disable(self, user_id: str) -> TwoFactorConfig:
        """Turn 2FA off; idempotent. Credentials are kept."""
        with self._lock:
            config = self.get_config(user_id)
            if config.enabled:
                config.enabled = False
                self._configs.put(config)
                LOG.info("Two-factor disabled user=%s", user_id)
            return config

    def set_preferred_method(
        self, user_id: str, method: TwoFactorMethod
    ) -> TwoFactorConfig:
        try:
            method = TwoFactorMethod(method)
        except ValueError as exc:
            raise InvalidMethod(f"Unknown method: {method}", cause=exc)
        if method not in PRIMARY_METHODS:
            raise InvalidMethod("Backup codes cannot be the preferred method")
        with self._lock:
            if not self._availability(user_id)[method]:
                raise InvalidMethod(f"Method {method.value} is not configured")
            config = self.get_config(user_id)
            config.preferred_method = method
            self._configs.put(config)
            return config

    def refresh_backup_count(self, user_id: str) -> int:
        with self._lock:
            count = self._backup_codes.count_unused(user_id)
            config = self._configs.get(user_id)
            if config is not None and config.backup_codes_remaining != count:
                config.backup_codes_remaining = count
                self._configs.put(config)
            return count

    def get_status(self, user_id: str) -> TwoFactorStatus:
        with self._lock:
            config = self.get_config(user_id)
            avail = self._availability(user_id)
            return TwoFactorStatus(
                enabled=config.enabled,
                preferred_method=config.preferred_method,
                methods=avail,
                totp_count=sum(
                    1 for a in self._authenticators.list_by_user(user_id) if a.verified
                ),
                passkey_count=len(self._passkeys.list_by_user(user_id)),
                backup_codes_count=self._backup_codes.count_unused(user_id),
            )

    # ---------- Auto-disable ----------

    def check_and_disable_if_no_methods(self, user_id: str) -> bool:
        """Disable 2FA when no primary method is left; True if it was disabled."""
        with self._lock:
            if self.has_primary_method(user_id):
                return False
            config = self._configs.get(user_id)
            if config is None or not config.enabled:
                return False
            config.enabled = False
            self._configs.put(config)
            LOG.warning("Two-factor auto-disabled, last method removed user=%s", user_id)
            return True

    def remove_credential(self, user_id: str, remover: Callable[[], bool]) -> bool:
        """
        Run ``remover`` and the auto-disable recheck as one step.

        Returns whatever ``remover`` returned; the recheck only runs when something
        was actually removed.
        """
        with self._lock:
            removed = remover()
            if removed:
                self.check_and_disable_if_no_methods(user_id)
            return removed
