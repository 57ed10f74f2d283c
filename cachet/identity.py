"""
cachet/identity.py

Wallet signature verification (secp256k1 ECDSA).

Key points:
- The wallet sends (all hex in the callback query):
  - k1:  the 32-byte challenge it was shown
  - sig: DER-encoded ECDSA signature
  - key: compressed secp256k1 public key (33 bytes)
- The signed message is exactly the 32 challenge bytes. They are handed to
  ECDSA as an already-hashed digest; nothing is hashed again. Wallets rely on
  this byte-for-byte contract, so do not wrap or re-hash the challenge.
- Only low-S (normalized) signatures verify, matching libsecp256k1.

Failures are split into three subclasses so the caller can log *what* was
wrong, while still answering every one of them with the same public error.
This module never touches private key material.
"""

from typing import Tuple

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature

CHALLENGE_LEN = 32
COMPRESSED_KEY_LEN = 33

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class InvalidSignature(Exception):
    """Signature could not be verified for the claimed key."""

    reason = "invalid_signature"


class MalformedSignature(InvalidSignature):
    reason = "malformed_signature"


class MalformedPublicKey(InvalidSignature):
    reason = "malformed_pubkey"


class SignatureMismatch(InvalidSignature):
    reason = "signature_mismatch"


# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------
def load_public_key(pubkey: bytes) -> ec.EllipticCurvePublicKey:
    """Parse a compressed secp256k1 point, raising MalformedPublicKey."""
    if not isinstance(pubkey, (bytes, bytearray)):
        raise MalformedPublicKey("pubkey must be bytes")
    if len(pubkey) != COMPRESSED_KEY_LEN or pubkey[0] not in (0x02, 0x03):
        raise MalformedPublicKey("pubkey must be a 33-byte compressed point")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(pubkey))
    except ValueError as e:
        raise MalformedPublicKey(str(e)) from e


def parse_der_signature(signature: bytes) -> Tuple[int, int]:
    """Return (r, s) from a strict DER signature, raising MalformedSignature."""
    if not isinstance(signature, (bytes, bytearray)) or not signature:
        raise MalformedSignature("signature must be non-empty bytes")
    try:
        r, s = decode_dss_signature(bytes(signature))
    except ValueError as e:
        raise MalformedSignature(str(e)) from e

    if not (0 < r < SECP256K1_N and 0 < s < SECP256K1_N):
        raise MalformedSignature("r/s out of range")
    return r, s


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def verify_login_signature(challenge: bytes, signature: bytes, pubkey: bytes) -> None:
    """
    Verify a wallet's signature over a login challenge.

    Returns None on success, raises an InvalidSignature subclass otherwise.
    """
    if not isinstance(challenge, (bytes, bytearray)) or len(challenge) != CHALLENGE_LEN:
        raise ValueError("challenge must be 32 bytes")

    key = load_public_key(pubkey)
    _, s = parse_der_signature(signature)

    if s > SECP256K1_N // 2:
        raise SignatureMismatch("non-normalized (high-S) signature")

    try:
        key.verify(bytes(signature), bytes(challenge), ec.ECDSA(Prehashed(hashes.SHA256())))
    except _CryptoInvalidSignature as e:
        raise SignatureMismatch("signature does not verify") from e
