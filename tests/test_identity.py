"""Tests for cachet.identity: secp256k1 login signature verification."""

from __future__ import annotations

import os

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from cachet.identity import (
    SECP256K1_N,
    InvalidSignature,
    MalformedPublicKey,
    MalformedSignature,
    SignatureMismatch,
    verify_login_signature,
)


class TestValid:
    def test_wallet_signature_verifies(self, wallet):
        k1 = os.urandom(32)
        assert verify_login_signature(k1, wallet.sign(k1), wallet.pubkey) is None


class TestMismatch:
    def test_other_key(self, wallet, other_wallet):
        k1 = os.urandom(32)
        with pytest.raises(SignatureMismatch):
            verify_login_signature(k1, other_wallet.sign(k1), wallet.pubkey)

    def test_other_challenge(self, wallet):
        with pytest.raises(SignatureMismatch):
            verify_login_signature(os.urandom(32), wallet.sign(os.urandom(32)), wallet.pubkey)

    def test_hashed_challenge_is_not_accepted(self, wallet):
        # signing sha256(k1) instead of the raw k1 digest must fail
        k1 = os.urandom(32)
        sig = wallet.sk.sign(k1, ec.ECDSA(hashes.SHA256()))
        with pytest.raises(SignatureMismatch):
            verify_login_signature(k1, sig, wallet.pubkey)

    def test_high_s_rejected(self, wallet):
        k1 = os.urandom(32)
        r, s = decode_dss_signature(wallet.sign(k1))
        high = encode_dss_signature(r, SECP256K1_N - s)
        with pytest.raises(SignatureMismatch):
            verify_login_signature(k1, high, wallet.pubkey)


class TestMalformed:
    @pytest.mark.parametrize("sig", [b"", b"\x00", b"\x30\x02\x01", os.urandom(70)])
    def test_bad_der(self, wallet, sig):
        with pytest.raises(MalformedSignature):
            verify_login_signature(os.urandom(32), sig, wallet.pubkey)

    def test_truncated_key(self, wallet):
        k1 = os.urandom(32)
        with pytest.raises(MalformedPublicKey):
            verify_login_signature(k1, wallet.sign(k1), wallet.pubkey[:20])

    def test_uncompressed_key_rejected(self, wallet):
        k1 = os.urandom(32)
        uncompressed = wallet.sk.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )
        with pytest.raises(MalformedPublicKey):
            verify_login_signature(k1, wallet.sign(k1), uncompressed)

    def test_point_not_on_curve(self, wallet):
        k1 = os.urandom(32)
        with pytest.raises(MalformedPublicKey):
            verify_login_signature(k1, wallet.sign(k1), b"\x02" + b"\xff" * 32)

    def test_all_failures_share_base_class(self):
        for cls in (MalformedSignature, MalformedPublicKey, SignatureMismatch):
            assert issubclass(cls, InvalidSignature)

    def test_challenge_length_enforced(self, wallet):
        with pytest.raises(ValueError):
            verify_login_signature(b"short", wallet.sign(os.urandom(32)), wallet.pubkey)
