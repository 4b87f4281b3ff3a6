import re
import threading

import pytest

from support import Clock
from twofactor.auth.second_method.backup_code import (
    BackupCodeVerifier,
    format_code,
    normalize_code,
)
from twofactor.config import TwoFactorSettings
from twofactor.exceptions import BackupCodesAlreadyIssued, InvalidCode
from twofactor.storage import InMemoryStore

CODE_RE = re.compile(r"^[0-9A-F]{4}-[0-9A-F]{4}$")


@pytest.fixture
def verifier(store: InMemoryStore, settings: TwoFactorSettings, clock: Clock) -> BackupCodeVerifier:
    return BackupCodeVerifier(store.backup_codes, settings=settings, clock=clock.now)


def test_format_and_normalize() -> None:
    assert format_code("A1B2C3D4") == "A1B2-C3D4"
    assert normalize_code(" a1b2-c3d4 ") == "A1B2C3D4"
    assert normalize_code("a1b2 c3d4") == "A1B2C3D4"


def test_generate_codes(verifier: BackupCodeVerifier, store: InMemoryStore) -> None:
    codes = verifier.generate_codes("alice")
    assert len(codes) == 10
    assert len(set(codes)) == 10
    assert all(CODE_RE.match(c) for c in codes)
    stored = store.backup_codes.list_unused("alice")
    assert all(c.hashed_code.startswith("$argon2id$") for c in stored)
    assert all(c.hashed_code != codes[0] for c in stored)
    with pytest.raises(BackupCodesAlreadyIssued):
        verifier.generate_codes("alice")


def test_verify_consumes_once(verifier: BackupCodeVerifier) -> None:
    codes = verifier.generate_codes("alice")
    assert verifier.verify("alice", codes[3].lower().replace("-", " ")) is not None
    assert verifier.get_unused_count("alice") == 9
    assert verifier.verify("alice", codes[3]) is None
    assert verifier.verify("bob", codes[4]) is None
    assert verifier.verify("alice", "short") is None
    assert verifier.get_unused_count("alice") == 9


def test_regenerate_invalidates_old_batch(verifier: BackupCodeVerifier) -> None:
    old = verifier.generate_codes("alice")
    verifier.verify("alice", old[0])
    new = verifier.regenerate_codes("alice")
    assert verifier.get_unused_count("alice") == 10
    assert verifier.verify("alice", old[1]) is None
    assert verifier.verify("alice", new[1]) is not None


def test_generate_allowed_after_exhaustion(
    verifier: BackupCodeVerifier, settings: TwoFactorSettings, store: InMemoryStore
) -> None:
    small = BackupCodeVerifier(
        store.backup_codes, settings=settings.with_overrides(backup_code_count=2)
    )
    codes = small.generate_codes("alice")
    for code in codes:
        assert small.verify("alice", code) is not None
    assert small.get_unused_count("alice") == 0
    assert len(small.generate_codes("alice")) == 2


def test_verify_login(verifier: BackupCodeVerifier) -> None:
    codes = verifier.generate_codes("alice")
    assert verifier.prepare_challenge("alice") is None
    with pytest.raises(InvalidCode):
        verifier.verify_login("alice", {"code": "0000-0000"})
    assert verifier.verify_login("alice", {"code": codes[0]})


def test_concurrent_use_of_same_code(verifier: BackupCodeVerifier) -> None:
    code = verifier.generate_codes("alice")[5]
    results = []
    lock = threading.Lock()

    def worker() -> None:
        r = verifier.verify("alice", code)
        with lock:
            results.append(r)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1
    assert verifier.get_unused_count("alice") == 9
