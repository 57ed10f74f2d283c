"""Shared fixtures for the cachet test suite."""

from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)
from fastapi.testclient import TestClient

from cachet.audit import AuditLog
from cachet.config import Settings
from cachet.identity import SECP256K1_N
from cachet.main import create_app
from cachet.protocol import LoginProtocol
from cachet.storage import InMemoryStore, SqlStore
from cachet.tokens import SessionIssuer

SECRET = "test-secret-" + "0123456789abcdef" * 4
SERVICE_URL = "https://cachet.example.com"
CALLBACK_URL = SERVICE_URL + "/api/auth"
TTL = 300


# ---------------------------------------------------------------------------
# Clock and wallets
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Wallet:
    """A signer holding a secp256k1 key, signing the way LNURL wallets do."""

    def __init__(self):
        self.sk = ec.generate_private_key(ec.SECP256K1())
        self.pubkey = self.sk.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )

    def sign(self, challenge: bytes) -> bytes:
        der = self.sk.sign(challenge, ec.ECDSA(Prehashed(hashes.SHA256())))
        r, s = decode_dss_signature(der)
        if s > SECP256K1_N // 2:
            s = SECP256K1_N - s
        return encode_dss_signature(r, s)

    def callback(self, k1_hex: str) -> dict:
        sig = self.sign(bytes.fromhex(k1_hex))
        return {"tag": "login", "k1": k1_hex, "sig": sig.hex(), "key": self.pubkey.hex()}


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def wallet() -> Wallet:
    return Wallet()


@pytest.fixture()
def other_wallet() -> Wallet:
    return Wallet()


@pytest.fixture()
def make_wallet():
    return Wallet


# ---------------------------------------------------------------------------
# Core collaborators
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path, clock):
    if request.param == "memory":
        s = InMemoryStore(ttl_seconds=TTL, clock=clock)
    else:
        s = SqlStore(f"sqlite:///{tmp_path / 'cachet.db'}", ttl_seconds=TTL, clock=clock)
        s.init_schema()
    yield s
    s.close()


@pytest.fixture()
def issuer(clock) -> SessionIssuer:
    return SessionIssuer(SECRET, clock=clock)


@pytest.fixture()
def audit(tmp_path) -> AuditLog:
    return AuditLog(tmp_path / "audit")


@pytest.fixture()
def protocol(store, issuer, audit) -> LoginProtocol:
    return LoginProtocol(store, issuer, CALLBACK_URL, audit)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        JWT_SECRET=SECRET,
        SERVICE_URL=SERVICE_URL,
        DATABASE_URL=f"sqlite:///{tmp_path / 'app.db'}",
        AUDIT_DIR=str(tmp_path / "audit"),
        CHALLENGE_TTL_SECONDS=TTL,
    )


@pytest.fixture()
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c
