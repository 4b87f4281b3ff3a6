import pytest

from twofactor.auth.registry import MethodRegistry
from twofactor.exceptions import InvalidMethod, NoMethodConfigured
from twofactor.models import (
    Authenticator,
    BackupCode,
    PasskeyCredential,
    TwoFactorMethod,
)
from twofactor.storage import InMemoryStore


@pytest.fixture
def registry(store: InMemoryStore) -> MethodRegistry:
    return MethodRegistry(store.configs, store.authenticators, store.passkeys, store.backup_codes)


def _add_totp(store: InMemoryStore, verified: bool = True, aid: str = "a1") -> None:
    store.authenticators.add(Authenticator(aid, "alice", "enc", "Phone", verified, 0))


def _add_passkey(store: InMemoryStore, pid: str = "p1") -> None:
    store.passkeys.add(
        PasskeyCredential(pid, "alice", pid.encode(), b"", 0, "Key", 0)
    )


def test_enable_without_methods_fails(registry: MethodRegistry, store: InMemoryStore) -> None:
    with pytest.raises(NoMethodConfigured):
        registry.enable("alice", TwoFactorMethod.PASSKEY)
    # unverified authenticators and backup codes do not count
    _add_totp(store, verified=False)
    store.backup_codes.replace_batch("alice", [BackupCode("b1", "alice", "h")])
    with pytest.raises(NoMethodConfigured):
        registry.enable("alice")
    assert registry.get_config("alice").enabled is False


def test_enable_falls_back_to_available_primary(
    registry: MethodRegistry, store: InMemoryStore
) -> None:
    _add_passkey(store)
    cfg = registry.enable("alice", TwoFactorMethod.TOTP)
    assert cfg.enabled is True
    assert cfg.preferred_method is TwoFactorMethod.PASSKEY
    cfg = registry.enable("alice", TwoFactorMethod.BACKUP)
    assert cfg.preferred_method is TwoFactorMethod.PASSKEY


def test_enable_unknown_method(registry: MethodRegistry, store: InMemoryStore) -> None:
    _add_totp(store)
    with pytest.raises(InvalidMethod):
        registry.enable("alice", "sms")


def test_available_methods_order(registry: MethodRegistry, store: InMemoryStore) -> None:
    assert registry.get_available_methods("alice") == []
    store.backup_codes.replace_batch("alice", [BackupCode("b1", "alice", "h")])
    _add_passkey(store)
    _add_totp(store)
    assert registry.get_available_methods("alice") == [
        TwoFactorMethod.TOTP,
        TwoFactorMethod.PASSKEY,
        TwoFactorMethod.BACKUP,
    ]


def test_disable_is_idempotent_and_keeps_credentials(
    registry: MethodRegistry, store: InMemoryStore
) -> None:
    _add_totp(store)
    registry.enable("alice")
    registry.disable("alice")
    registry.disable("alice")
    assert registry.get_config("alice").enabled is False
    assert registry.get_available_methods("alice") == [TwoFactorMethod.TOTP]
    assert registry.disable("nobody").enabled is False


def test_remove_last_method_auto_disables(registry: MethodRegistry, store: InMemoryStore) -> None:
    _add_totp(store)
    _add_passkey(store)
    registry.enable("alice")
    assert registry.remove_credential("alice", lambda: store.authenticators.delete("a1"))
    assert registry.get_config("alice").enabled is True
    assert registry.remove_credential("alice", lambda: store.passkeys.delete("p1"))
    assert registry.get_config("alice").enabled is False


def test_check_and_disable(registry: MethodRegistry, store: InMemoryStore) -> None:
    assert registry.check_and_disable_if_no_methods("alice") is False
    _add_totp(store)
    registry.enable("alice")
    assert registry.check_and_disable_if_no_methods("alice") is False
    store.authenticators.delete("a1")
    assert registry.check_and_disable_if_no_methods("alice") is True
    assert registry.check_and_disable_if_no_methods("alice") is False


def test_set_preferred_method(registry: MethodRegistry, store: InMemoryStore) -> None:
    _add_totp(store)
    registry.enable("alice")
    with pytest.raises(InvalidMethod):
        registry.set_preferred_method("alice", TwoFactorMethod.BACKUP)
    with pytest.raises(InvalidMethod):
        registry.set_preferred_method("alice", TwoFactorMethod.PASSKEY)
    _add_passkey(store)
    cfg = registry.set_preferred_method("alice", "passkey")
    assert cfg.preferred_method is TwoFactorMethod.PASSKEY


def test_status_and_backup_count(registry: MethodRegistry, store: InMemoryStore) -> None:
    _add_totp(store)
    _add_totp(store, verified=False, aid="a2")
    registry.enable("alice")
    store.backup_codes.replace_batch(
        "alice", [BackupCode(f"b{i}", "alice", "h") for i in range(3)]
    )
    assert registry.refresh_backup_count("alice") == 3
    assert registry.get_config("alice").backup_codes_remaining == 3
    st = registry.get_status("alice")
    assert st.enabled is True
    assert st.totp_count == 1 and st.passkey_count == 0 and st.backup_codes_count == 3
    assert st.methods[TwoFactorMethod.BACKUP] is True
    assert st.methods[TwoFactorMethod.PASSKEY] is False
