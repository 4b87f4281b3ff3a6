# -*- coding: utf-8 -*-
"""
RU: Граница хранения: протоколы репозиториев и потокобезопасные реализации в памяти.
Атомарные операции над одним ключом обязательны для любой реализации.

EN: Persistence boundary: repository protocols and thread-safe in-memory implementations.

The orchestrator never assumes a storage engine. What it does assume is that the
store offers atomic per-key operations for the three race-prone transitions:

- backup code consumption (``mark_used`` is a compare-and-set on ``used``);
- pending attempt decrement (``decrement_attempts`` deletes on exhaustion);
- WebAuthn counter update (``update_sign_count`` is a compare-and-set on the counter);

plus TOTP anti-replay (``record_use`` only moves ``last_used_step`` forward).
Pending sessions are never written back whole: ``set_selected_method`` touches a
single field, and ``delete`` reports whether this caller removed the record so a
successful verification can claim the session exactly once.
Database-backed implementations should map each of these to a single conditional
UPDATE/DELETE.

Records handed out by the in-memory store are copies; mutate through the API.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from twofactor.models import (
    Authenticator,
    BackupCode,
    CeremonyChallenge,
    PasskeyCredential,
    PendingAuthSession,
    TwoFactorConfig,
    TwoFactorMethod,
    UserRecord,
)

__all__ = [
    "UserRepository",
    "TwoFactorConfigRepository",
    "AuthenticatorRepository",
    "PasskeyRepository",
    "BackupCodeRepository",
    "PendingSessionStorage",
    "CeremonyChallengeStorage",
    "InMemoryUserRepository",
    "InMemoryTwoFactorConfigRepository",
    "InMemoryAuthenticatorRepository",
    "InMemoryPasskeyRepository",
    "InMemoryBackupCodeRepository",
    "InMemoryPendingSessionStorage",
    "InMemoryCeremonyChallengeStorage",
    "InMemoryStore",
]


# -------------------- Protocols --------------------


class UserRepository(Protocol):
    def get(self, user_id: str) -> Optional[UserRecord]: ...


class TwoFactorConfigRepository(Protocol):
    def get(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def put(self, config: TwoFactorConfig) -> None: ...


class AuthenticatorRepository(Protocol):
    def add(self, authenticator: Authenticator) -> None: ...

    def get(self, authenticator_id: str) -> Optional[Authenticator]: ...

    def list_by_user(self, user_id: str) -> Tuple[Authenticator, ...]: ...

    def mark_verified(self, authenticator_id: str) -> bool: ...

    def record_use(self, authenticator_id: str, step: int, used_at: int) -> bool: ...

    def delete(self, authenticator_id: str) -> bool: ...


class PasskeyRepository(Protocol):
    def add(self, passkey: PasskeyCredential) -> None: ...

    def get(self, passkey_id: str) -> Optional[PasskeyCredential]: ...

    def get_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]: ...

    def list_by_user(self, user_id: str) -> Tuple[PasskeyCredential, ...]: ...

    def rename(self, passkey_id: str, name: str) -> bool: ...

    def update_sign_count(
        self, passkey_id: str, expected: int, new: int, used_at: int
    ) -> bool: ...

    def delete(self, passkey_id: str) -> bool: ...


class BackupCodeRepository(Protocol):
    def replace_batch(self, user_id: str, codes: Sequence[BackupCode]) -> None: ...

    def list_unused(self, user_id: str) -> Tuple[BackupCode, ...]: ...

    def count_unused(self, user_id: str) -> int: ...

    def count_all(self, user_id: str) -> int: ...

    def mark_used(self, code_id: str, used_at: int) -> bool: ...


class PendingSessionStorage(Protocol):
    def put(self, session: PendingAuthSession) -> None: ...

    def get(self, session_id: str) -> Optional[PendingAuthSession]: ...

    def set_selected_method(self, session_id: str, method: TwoFactorMethod) -> bool: ...

    def decrement_attempts(self, session_id: str) -> Optional[int]: ...

    def delete(self, session_id: str) -> bool: ...

    def iter_ids(self) -> Tuple[str, ...]: ...


class CeremonyChallengeStorage(Protocol):
    def put(self, challenge: CeremonyChallenge) -> None: ...

    def pop(self, challenge_id: str) -> Optional[CeremonyChallenge]: ...

    def get(self, challenge_id: str) -> Optional[CeremonyChallenge]: ...

    def iter_ids(self) -> Tuple[str, ...]: ...


# -------------------- In-memory implementations --------------------


class InMemoryUserRepository(UserRepository):
    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._users: Dict[str, UserRecord] = {u.id: u for u in users}
        self._lock = threading.RLock()

    def add(self, user: UserRecord) -> None:
        with self._lock:
            self._users[user.id] = user

    def get(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)


class InMemoryTwoFactorConfigRepository(TwoFactorConfigRepository):
    def __init__(self) -> None:
        self._configs: Dict[str, TwoFactorConfig] = {}
        self._lock = threading.RLock()

    def get(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._lock:
            cfg = self._configs.get(user_id)
            return replace(cfg) if cfg is not None else None

    def put(self, config: TwoFactorConfig) -> None:
        with self._lock:
            self._configs[config.user_id] = replace(config)


class InMemoryAuthenticatorRepository(AuthenticatorRepository):
    def __init__(self) -> None:
        self._records: Dict[str, Authenticator] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def add(self, authenticator: Authenticator) -> None:
        with self._lock:
            self._records[authenticator.id] = replace(authenticator)
            self._by_user.setdefault(authenticator.user_id, set()).add(authenticator.id)

    def get(self, authenticator_id: str) -> Optional[Authenticator]:
        with self._lock:
            rec = self._records.get(authenticator_id)
            return replace(rec) if rec is not None else None

    def list_by_user(self, user_id: str) -> Tuple[Authenticator, ...]:
        with self._lock:
            ids = self._by_user.get(user_id, set())
            recs = [replace(self._records[i]) for i in ids]
            recs.sort(key=lambda a: (a.created_at, a.id))
            return tuple(recs)

    def mark_verified(self, authenticator_id: str) -> bool:
        with self._lock:
            rec = self._records.get(authenticator_id)
            if rec is None or rec.verified:
                return False
            rec.verified = True
            return True

    def record_use(self, authenticator_id: str, step: int, used_at: int) -> bool:
        with self._lock:
            rec = self._records.get(authenticator_id)
            if rec is None:
                return False
            if rec.last_used_step is not None and step <= rec.last_used_step:
                return False
            rec.last_used_step = step
            rec.last_used_at = used_at
            return True

    def delete(self, authenticator_id: str) -> bool:
        with self._lock:
            rec = self._records.pop(authenticator_id, None)
            if rec is None:
                return False
            ids = self._by_user.get(rec.user_id)
            if ids is not None:
                ids.discard(authenticator_id)
                if not ids:
                    self._by_user.pop(rec.user_id, None)
            return True


class InMemoryPasskeyRepository(PasskeyRepository):
    def __init__(self) -> None:
        self._records: Dict[str, PasskeyCredential] = {}
        self._by_credential: Dict[bytes, str] = {}
        self._lock = threading.RLock()

    def add(self, passkey: PasskeyCredential) -> None:
        with self._lock:
            if passkey.credential_id in self._by_credential:
                raise ValueError("credential id already registered")
            self._records[passkey.id] = replace(passkey)
            self._by_credential[passkey.credential_id] = passkey.id

    def get(self, passkey_id: str) -> Optional[PasskeyCredential]:
        with self._lock:
            rec = self._records.get(passkey_id)
            return replace(rec) if rec is not None else None

    def get_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        with self._lock:
            pid = self._by_credential.get(bytes(credential_id))
            return self.get(pid) if pid is not None else None

    def list_by_user(self, user_id: str) -> Tuple[PasskeyCredential, ...]:
        with self._lock:
            recs = [replace(r) for r in self._records.values() if r.user_id == user_id]
            recs.sort(key=lambda p: (p.created_at, p.id))
            return tuple(recs)

    def rename(self, passkey_id: str, name: str) -> bool:
        with self._lock:
            rec = self._records.get(passkey_id)
            if rec is None:
                return False
            rec.name = name
            return True

    def update_sign_count(
        self, passkey_id: str, expected: int, new: int, used_at: int
    ) -> bool:
        with self._lock:
            rec = self._records.get(passkey_id)
            if rec is None or rec.sign_count != expected or new <= expected:
                return False
            rec.sign_count = new
            rec.last_used_at = used_at
            return True

    def delete(self, passkey_id: str) -> bool:
        with self._lock:
            rec = self._records.pop(passkey_id, None)
            if rec is None:
                return False
            self._by_credential.pop(rec.credential_id, None)
            return True


class InMemoryBackupCodeRepository(BackupCodeRepository):
    def __init__(self) -> None:
        self._by_user: Dict[str, List[BackupCode]] = {}
        self._index: Dict[str, BackupCode] = {}
        self._lock = threading.RLock()

    def replace_batch(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        with self._lock:
            for old in self._by_user.pop(user_id, []):
                self._index.pop(old.id, None)
            batch = [replace(c) for c in codes]
            if batch:
                self._by_user[user_id] = batch
                for c in batch:
                    self._index[c.id] = c

    def list_unused(self, user_id: str) -> Tuple[BackupCode, ...]:
        with self._lock:
            return tuple(replace(c) for c in self._by_user.get(user_id, []) if not c.used)

    def count_unused(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for c in self._by_user.get(user_id, []) if not c.used)

    def count_all(self, user_id: str) -> int:
        with self._lock:
            return len(self._by_user.get(user_id, []))

    def mark_used(self, code_id: str, used_at: int) -> bool:
        with self._lock:
            rec = self._index.get(code_id)
            if rec is None or rec.used:
                return False
            rec.used = True
            rec.used_at = used_at
            return True


class InMemoryPendingSessionStorage(PendingSessionStorage):
    def __init__(self) -> None:
        self._records: Dict[str, PendingAuthSession] = {}
        self._lock = threading.RLock()

    def put(self, session: PendingAuthSession) -> None:
        with self._lock:
            self._records[session.id] = replace(session)

    def get(self, session_id: str) -> Optional[PendingAuthSession]:
        with self._lock:
            rec = self._records.get(session_id)
            return replace(rec) if rec is not None else None

    def set_selected_method(self, session_id: str, method: TwoFactorMethod) -> bool:
        with self._lock:
            rec = self._records.get(session_id)
            if rec is None:
                return False
            rec.selected_method = method
            return True

    def decrement_attempts(self, session_id: str) -> Optional[int]:
        with self._lock:
            rec = self._records.get(session_id)
            if rec is None:
                return None
            rec.attempts_remaining = max(rec.attempts_remaining - 1, 0)
            remaining = rec.attempts_remaining
            if remaining == 0:
                del self._records[session_id]
            return remaining

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._records.pop(session_id, None) is not None

    def iter_ids(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._records.keys())


class InMemoryCeremonyChallengeStorage(CeremonyChallengeStorage):
    def __init__(self) -> None:
        self._records: Dict[str, CeremonyChallenge] = {}
        self._lock = threading.RLock()

    def put(self, challenge: CeremonyChallenge) -> None:
        with self._lock:
            self._records[challenge.id] = copy.deepcopy(challenge)

    def pop(self, challenge_id: str) -> Optional[CeremonyChallenge]:
        with self._lock:
            return self._records.pop(challenge_id, None)

    def get(self, challenge_id: str) -> Optional[CeremonyChallenge]:
        with self._lock:
            rec = self._records.get(challenge_id)
            return copy.deepcopy(rec) if rec is not None else None

    def iter_ids(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._records.keys())


class InMemoryStore:
    """Bundle of in-memory repositories for single-process hosts and tests."""

    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self.users = InMemoryUserRepository(users)
        self.configs = InMemoryTwoFactorConfigRepository()
        self.authenticators = InMemoryAuthenticatorRepository()
        self.passkeys = InMemoryPasskeyRepository()
        self.backup_codes = InMemoryBackupCodeRepository()
        self.pending = InMemoryPendingSessionStorage()
        self.challenges = InMemoryCeremonyChallengeStorage()
