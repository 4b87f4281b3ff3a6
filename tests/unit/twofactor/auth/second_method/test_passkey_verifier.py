import pytest

from support import Clock, RecordingNotifier, SoftAuthenticator
from twofactor.auth.pending import CeremonyChallengeStore
from twofactor.auth.second_method.passkey import PasskeyVerifier
from twofactor.config import TwoFactorSettings
from twofactor.exceptions import (
    ChallengeMismatch,
    InvalidRequest,
    NotFound,
    PossibleCloneDetected,
    VerificationFailed,
)
from twofactor.models import PasskeyCredential
from twofactor.storage import InMemoryStore


@pytest.fixture
def verifier(
    store: InMemoryStore,
    settings: TwoFactorSettings,
    notifier: RecordingNotifier,
    clock: Clock,
) -> PasskeyVerifier:
    challenges = CeremonyChallengeStore(store.challenges, ttl_seconds=300, clock=clock.now)
    return PasskeyVerifier(
        store.passkeys,
        challenges,
        users=store.users,
        settings=settings,
        notifier=notifier,
        clock=clock.now,
    )


def _register(
    verifier: PasskeyVerifier, device: SoftAuthenticator, user: str = "alice"
) -> PasskeyCredential:
    ceremony = verifier.generate_registration_options(user)
    response = device.register(ceremony.options.public_key.challenge)
    return verifier.verify_registration(ceremony.pending_id, "Laptop", response, user_id=user)


def _login(verifier: PasskeyVerifier, device: SoftAuthenticator, **kw) -> str:
    ceremony = verifier.generate_authentication_options("alice")
    response = device.assert_(ceremony.options.public_key.challenge, **kw)
    return verifier.verify_authentication(ceremony.pending_id, response, user_id="alice")


def test_registration_options_describe_user(verifier: PasskeyVerifier) -> None:
    ceremony = verifier.generate_registration_options("alice")
    pk = ceremony.options.public_key
    assert pk.rp.id == "example.com"
    assert pk.user.id == b"alice"
    assert pk.user.name == "alice@example.com"
    assert pk.user.display_name == "Alice"
    assert len(pk.challenge) == 32
    assert not pk.exclude_credentials


def test_register_and_authenticate(verifier: PasskeyVerifier, store: InMemoryStore) -> None:
    device = SoftAuthenticator()
    passkey = _register(verifier, device)
    assert passkey.user_id == "alice"
    assert passkey.name == "Laptop"
    assert passkey.credential_id == device.credential_id
    assert passkey.sign_count == 0
    assert passkey.transports == ("internal",)

    assert _login(verifier, device) == passkey.id
    assert store.passkeys.get(passkey.id).sign_count == 1
    assert _login(verifier, device) == passkey.id
    assert store.passkeys.get(passkey.id).sign_count == 2


def test_registration_excludes_existing_credentials(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    _register(verifier, device)
    ceremony = verifier.generate_registration_options("alice")
    excluded = [c.id for c in ceremony.options.public_key.exclude_credentials]
    assert excluded == [device.credential_id]


def test_duplicate_credential_rejected(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    _register(verifier, device)
    with pytest.raises(VerificationFailed):
        _register(verifier, device, user="bob")


def test_registration_challenge_is_single_use(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    ceremony = verifier.generate_registration_options("alice")
    response = device.register(ceremony.options.public_key.challenge)
    verifier.verify_registration(ceremony.pending_id, None, response, user_id="alice")
    with pytest.raises(ChallengeMismatch):
        verifier.verify_registration(ceremony.pending_id, None, response, user_id="alice")


def test_registration_rejects_foreign_user_and_origin(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    ceremony = verifier.generate_registration_options("alice")
    response = device.register(ceremony.options.public_key.challenge)
    with pytest.raises(ChallengeMismatch):
        verifier.verify_registration(ceremony.pending_id, None, response, user_id="bob")

    ceremony = verifier.generate_registration_options("alice")
    bad = device.register(ceremony.options.public_key.challenge, origin="https://evil.test")
    with pytest.raises(VerificationFailed):
        verifier.verify_registration(ceremony.pending_id, None, bad, user_id="alice")
    assert verifier.list_passkeys("alice") == ()


def test_registration_challenge_expires(verifier: PasskeyVerifier, clock: Clock) -> None:
    device = SoftAuthenticator()
    ceremony = verifier.generate_registration_options("alice")
    response = device.register(ceremony.options.public_key.challenge)
    clock.add(301)
    with pytest.raises(ChallengeMismatch):
        verifier.verify_registration(ceremony.pending_id, None, response, user_id="alice")


def test_authentication_without_passkeys(verifier: PasskeyVerifier) -> None:
    with pytest.raises(NotFound):
        verifier.generate_authentication_options("alice")


def test_tampered_signature_and_wrong_origin(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    _register(verifier, device)
    with pytest.raises(VerificationFailed) as exc:
        _login(verifier, device, tamper=True)
    assert not isinstance(exc.value, PossibleCloneDetected)
    with pytest.raises(VerificationFailed):
        _login(verifier, device, origin="https://evil.test")


def test_counter_not_increasing_reports_clone(
    verifier: PasskeyVerifier, notifier: RecordingNotifier, store: InMemoryStore
) -> None:
    device = SoftAuthenticator()
    passkey = _register(verifier, device)
    # first assertion must already be above the registration counter
    with pytest.raises(PossibleCloneDetected):
        _login(verifier, device, counter=0)
    assert notifier.events == [("alice", passkey.id, 0, 0)]

    assert _login(verifier, device, counter=7) == passkey.id
    with pytest.raises(PossibleCloneDetected):
        _login(verifier, device, counter=7)
    with pytest.raises(PossibleCloneDetected):
        _login(verifier, device, counter=3)
    assert store.passkeys.get(passkey.id).sign_count == 7
    assert len(notifier.events) == 3


def test_authentication_challenge_replay(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    _register(verifier, device)
    ceremony = verifier.generate_authentication_options("alice")
    response = device.assert_(ceremony.options.public_key.challenge)
    verifier.verify_authentication(ceremony.pending_id, response, user_id="alice")
    with pytest.raises(ChallengeMismatch):
        verifier.verify_authentication(ceremony.pending_id, response, user_id="alice")


def test_other_users_device_rejected(verifier: PasskeyVerifier) -> None:
    _register(verifier, SoftAuthenticator())
    bobs = SoftAuthenticator()
    _register(verifier, bobs, user="bob")
    with pytest.raises(VerificationFailed):
        _login(verifier, bobs)


def test_rename_and_remove(verifier: PasskeyVerifier) -> None:
    passkey = _register(verifier, SoftAuthenticator())
    renamed = verifier.rename_passkey("alice", passkey.id, "  YubiKey  ")
    assert renamed.name == "YubiKey"
    with pytest.raises(InvalidRequest):
        verifier.rename_passkey("alice", passkey.id, "   ")
    with pytest.raises(NotFound):
        verifier.rename_passkey("bob", passkey.id, "Mine")
    with pytest.raises(NotFound):
        verifier.remove_passkey("bob", passkey.id)
    assert verifier.remove_passkey("alice", passkey.id) is True
    assert verifier.list_passkeys("alice") == ()


def test_default_name(verifier: PasskeyVerifier) -> None:
    device = SoftAuthenticator()
    ceremony = verifier.generate_registration_options("alice")
    response = device.register(ceremony.options.public_key.challenge)
    passkey = verifier.verify_registration(ceremony.pending_id, "", response, user_id="alice")
    assert passkey.name == "Passkey"
