import logging

import pytest

from support import ORIGIN, RP_ID, Clock, RecordingIssuer, RecordingNotifier
from twofactor.auth.context import FullSessionContext
from twofactor.auth.orchestrator import TwoFactorOrchestrator
from twofactor.config import BackupCodeHashConfig, BackupCodeHashProfile, TwoFactorSettings
from twofactor.models import UserRecord
from twofactor.storage import InMemoryStore


@pytest.fixture
def clock() -> Clock:
    return Clock(start=1_700_000_000)


@pytest.fixture
def settings() -> TwoFactorSettings:
    return TwoFactorSettings(
        rp_id=RP_ID,
        rp_name="Example",
        expected_origin=ORIGIN,
        totp_issuer="Example",
        backup_hash=BackupCodeHashConfig.from_profile(BackupCodeHashProfile.LIGHT),
        pending_token_key="p" * 64,
        totp_encryption_key="00112233445566778899aabbccddeeff" * 2,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(
        users=[
            UserRecord(id="alice", name="alice@example.com", display_name="Alice"),
            UserRecord(id="bob", name="bob@example.com", display_name="Bob"),
        ]
    )


@pytest.fixture
def issuer() -> RecordingIssuer:
    return RecordingIssuer()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def orchestrator(
    store: InMemoryStore,
    issuer: RecordingIssuer,
    settings: TwoFactorSettings,
    notifier: RecordingNotifier,
    clock: Clock,
) -> TwoFactorOrchestrator:
    logging.getLogger("twofactor").setLevel(logging.DEBUG)
    return TwoFactorOrchestrator(
        store, issuer, settings=settings, notifier=notifier, clock=clock.now
    )


@pytest.fixture
def alice() -> FullSessionContext:
    return FullSessionContext(user_id="alice")

