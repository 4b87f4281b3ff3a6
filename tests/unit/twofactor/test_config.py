import pytest

from twofactor.config import (
    DEFAULT_BACKUP_CODE_COUNT,
    DEFAULT_PENDING_MAX_ATTEMPTS,
    DEFAULT_PENDING_TTL_SECONDS,
    BackupCodeHashConfig,
    BackupCodeHashProfile,
    TwoFactorSettings,
)
from twofactor.exceptions import ConfigurationError


def test_defaults() -> None:
    s = TwoFactorSettings()
    assert s.pending_ttl_seconds == DEFAULT_PENDING_TTL_SECONDS == 300
    assert s.pending_max_attempts == DEFAULT_PENDING_MAX_ATTEMPTS == 5
    assert s.backup_code_count == DEFAULT_BACKUP_CODE_COUNT == 10
    assert s.totp_digits == 6 and s.totp_interval == 30 and s.totp_valid_window == 1
    assert s.backup_hash == BackupCodeHashConfig.from_profile(BackupCodeHashProfile.STANDARD)


def test_random_keys_differ_between_instances() -> None:
    assert TwoFactorSettings().pending_token_key != TwoFactorSettings().pending_token_key


@pytest.mark.parametrize(
    "overrides",
    [
        {"pending_ttl_seconds": 0},
        {"pending_max_attempts": 0},
        {"totp_digits": 7},
        {"backup_code_count": 0},
        {"backup_code_count": 21},
        {"pending_token_key": "short"},
        {"rp_id": ""},
    ],
)
def test_invalid_settings_rejected(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        TwoFactorSettings(**overrides)


def test_hash_profile_validation() -> None:
    assert BackupCodeHashConfig.from_profile(BackupCodeHashProfile.HARDENED).parallelism == 8
    with pytest.raises(ConfigurationError):
        BackupCodeHashConfig(time_cost=0, memory_cost=1024, parallelism=1)
    with pytest.raises(ConfigurationError):
        BackupCodeHashConfig(time_cost=1, memory_cost=4, parallelism=1)


def test_from_env_reads_prefixed_values() -> None:
    env = {
        "TWOFACTOR_RP_ID": "example.org",
        "TWOFACTOR_EXPECTED_ORIGIN": "https://example.org",
        "TWOFACTOR_PENDING_TTL_SECONDS": "120",
        "TWOFACTOR_BACKUP_HASH_PROFILE": "light",
        "TWOFACTOR_TOTP_ISSUER": "",
        "UNRELATED": "x",
    }
    s = TwoFactorSettings.from_env(environ=env)
    assert s.rp_id == "example.org"
    assert s.pending_ttl_seconds == 120
    assert s.backup_hash.memory_cost == 1024
    assert s.totp_issuer == TwoFactorSettings().totp_issuer


def test_from_env_bad_values() -> None:
    with pytest.raises(ConfigurationError):
        TwoFactorSettings.from_env(environ={"TWOFACTOR_PENDING_TTL_SECONDS": "soon"})
    with pytest.raises(ConfigurationError):
        TwoFactorSettings.from_env(environ={"TWOFACTOR_BACKUP_HASH_PROFILE": "ultra"})


def test_with_overrides_revalidates() -> None:
    s = TwoFactorSettings()
    assert s.with_overrides(pending_max_attempts=3).pending_max_attempts == 3
    with pytest.raises(ConfigurationError):
        s.with_overrides(pending_max_attempts=0)
