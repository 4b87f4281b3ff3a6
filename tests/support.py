"""Shared test doubles: manual clock, session issuer and a software WebAuthn authenticator."""

import os
from typing import Any, Dict, List, Mapping, Optional

import pyotp
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.cose import ES256
from fido2.utils import sha256, websafe_encode
from fido2.webauthn import (
    AttestationObject,
    AttestedCredentialData,
    AuthenticatorData,
    CollectedClientData,
)

RP_ID = "example.com"
ORIGIN = "https://example.com"

FLAG_UP = 0x01
FLAG_AT = 0x40


class Clock:
    def __init__(self, start: int) -> None:
        self.t = start

    def now(self) -> int:
        return self.t

    def add(self, seconds: int) -> None:
        self.t += seconds


def current_code(secret: str, clock: Clock, interval: int = 30) -> str:
    """TOTP code for the time step the clock is in."""
    return pyotp.TOTP(secret, interval=interval).generate_otp(clock.now() // interval)


def wrong_code(secret: str, clock: Clock, interval: int = 30) -> str:
    """A six-digit code that matches none of the steps around the clock."""
    step = clock.now() // interval
    totp = pyotp.TOTP(secret, interval=interval)
    near = {totp.generate_otp(s) for s in range(step - 2, step + 3)}
    return next(c for c in ("000000", "111111", "222222", "333333", "444444") if c not in near)


class RecordingIssuer:
    """SessionIssuer that records every user it minted a session for."""

    def __init__(self) -> None:
        self.issued: List[str] = []

    def issue_full_session(self, user_id: str) -> Mapping[str, Any]:
        self.issued.append(user_id)
        return {"access_token": f"access-{user_id}-{len(self.issued)}"}


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def possible_clone(
        self, user_id: str, passkey_id: str, stored_count: int, reported_count: int
    ) -> None:
        self.events.append((user_id, passkey_id, stored_count, reported_count))


class SoftAuthenticator:
    """
    Minimal P-256 authenticator producing WebAuthn JSON responses.

    ``counter`` is the value reported by the next ceremony; tests set it directly
    to simulate cloned or replaying devices.
    """

    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN, counter: int = 0) -> None:
        self.rp_id = rp_id
        self.origin = origin
        self.counter = counter
        self.credential_id = os.urandom(16)
        self._key = ec.generate_private_key(ec.SECP256R1())

    def _rp_hash(self) -> bytes:
        return sha256(self.rp_id.encode("utf-8"))

    def register(self, challenge: bytes, origin: Optional[str] = None) -> Dict[str, Any]:
        cose_key = ES256.from_cryptography_key(self._key.public_key())
        cred_data = AttestedCredentialData.create(b"\0" * 16, self.credential_id, cose_key)
        auth_data = AuthenticatorData.create(
            self._rp_hash(), FLAG_UP | FLAG_AT, self.counter, cred_data
        )
        client_data = CollectedClientData.create(
            type="webauthn.create", challenge=challenge, origin=origin or self.origin
        )
        att_obj = AttestationObject.create("none", auth_data, {})
        cid = websafe_encode(self.credential_id)
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(client_data),
                "attestationObject": websafe_encode(att_obj),
                "transports": ["internal"],
            },
            "clientExtensionResults": {},
        }

    def assert_(
        self,
        challenge: bytes,
        counter: Optional[int] = None,
        origin: Optional[str] = None,
        tamper: bool = False,
    ) -> Dict[str, Any]:
        """Sign an assertion; by default the counter advances by one first."""
        if counter is None:
            self.counter += 1
            counter = self.counter
        auth_data = AuthenticatorData.create(self._rp_hash(), FLAG_UP, counter)
        client_data = CollectedClientData.create(
            type="webauthn.get", challenge=challenge, origin=origin or self.origin
        )
        signature = self._key.sign(
            bytes(auth_data) + client_data.hash, ec.ECDSA(hashes.SHA256())
        )
        if tamper:
            signature = signature[:-1] + bytes([signature[-1] ^ 0x01])
        cid = websafe_encode(self.credential_id)
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(client_data),
                "authenticatorData": websafe_encode(auth_data),
                "signature": websafe_encode(signature),
            },
            "clientExtensionResults": {},
        }
