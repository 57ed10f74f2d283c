# cachet/protocol.py
#
# -----------------------------------------------------------------------------
# Login protocol
# -----------------------------------------------------------------------------
# Three actors, three operations:
#
#   browser  --start_login()-->  challenge k1 + lnurl (QR)
#   wallet   --verify(k1, sig, key)-->  binds k1 to key (once)
#   browser  --poll(k1)-->  "waiting" until bound, then a session token
#
# Per-challenge state machine:
#
#   PENDING --(valid signature, first binder wins)--> BOUND   (terminal)
#   PENDING --(ttl elapsed)--> EXPIRED
#
# Ordering rule in verify(): the signature is checked against the still
# unbound challenge and the bind is only written after it verifies. A bad
# signature therefore leaves no trace in the store, and the legitimate wallet
# can still complete the login.
#
# Polling a BOUND challenge is idempotent: every poll mints a fresh token for
# the same key.
# -----------------------------------------------------------------------------

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .audit import AuditLog
from .identity import InvalidSignature, verify_login_signature
from .lnurl import LOGIN_TAG, encode_lnurl
from .storage import BindResult, ChallengeState
from .tokens import SessionIssuer

logger = logging.getLogger(__name__)

CHALLENGE_NOT_FOUND = "Challenge is not found."
INVALID_SIGNATURE = "Invalid signature."
INVALID_REQUEST = "Invalid request."


class LoginError(Exception):
    """Expected, client-facing protocol failure."""

    reason = "login_error"
    message = "Login failed."


class InvalidInput(LoginError):
    reason = "invalid_input"
    message = INVALID_REQUEST


class ChallengeUnavailable(LoginError):
    """Challenge cannot be bound: unknown, expired or already claimed."""

    message = CHALLENGE_NOT_FOUND

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SignatureRejected(LoginError):
    message = INVALID_SIGNATURE

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class WaitingForLogin(LoginError):
    reason = "waiting"
    message = "Waiting for login"


class ChallengeNotFound(LoginError):
    reason = "challenge_not_found"
    message = CHALLENGE_NOT_FOUND


class ChallengeExpired(LoginError):
    reason = "challenge_expired"
    message = "Challenge expired"


_STATE_REASONS = {
    ChallengeState.NOT_FOUND: "challenge_not_found",
    ChallengeState.EXPIRED: "challenge_expired",
    ChallengeState.BOUND: "already_bound",
}

_BIND_REASONS = {
    BindResult.NOT_FOUND: "challenge_not_found",
    BindResult.EXPIRED: "challenge_expired",
    BindResult.ALREADY_BOUND: "already_bound",
}


_HEX = re.compile(r"[0-9a-fA-F]*")


@dataclass(frozen=True)
class LoginChallenge:
    lnurl: str
    k1: str


def decode_hex(value: Optional[str], field: str, length: Optional[int] = None) -> bytes:
    s = value or ""
    # bytes.fromhex() skips whitespace; only bare hex digits are accepted
    if not _HEX.fullmatch(s):
        raise InvalidInput(f"{field} is not hex")
    try:
        raw = bytes.fromhex(s)
    except ValueError:
        raise InvalidInput(f"{field} has odd length")
    if not raw:
        raise InvalidInput(f"missing {field}")
    if length is not None and len(raw) != length:
        raise InvalidInput(f"{field} must be {length} bytes")
    return raw


def _short(b: bytes) -> str:
    return b.hex()[:12]


class LoginProtocol:
    def __init__(self, store, issuer: SessionIssuer, callback_url: str, audit: Optional[AuditLog] = None):
        self.store = store
        self.issuer = issuer
        self.callback_url = callback_url
        self.audit = audit or AuditLog(".", enabled=False)

    # -------------------------------------------------------------------------
    # StartLogin
    # -------------------------------------------------------------------------
    def start_login(self) -> LoginChallenge:
        purged = self.store.purge_expired()
        if purged:
            logger.debug("purged %d expired challenges", purged)

        challenge = self.store.create()
        lnurl = encode_lnurl(challenge, self.callback_url)

        self.audit.record("issued", "challenge_created", challenge=challenge)
        logger.info("login challenge issued k1=%s", _short(challenge))
        return LoginChallenge(lnurl=lnurl, k1=challenge.hex())

    # -------------------------------------------------------------------------
    # Verify (wallet callback)
    # -------------------------------------------------------------------------
    def verify(
        self,
        k1_hex: Optional[str],
        sig_hex: Optional[str],
        key_hex: Optional[str],
        tag: Optional[str] = LOGIN_TAG,
        *,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bytes:
        """
        Bind a challenge to the signing key. Returns the key on success.

        Raises InvalidInput, ChallengeUnavailable or SignatureRejected; none
        of them leave the challenge bound.
        """
        ctx = {"request_ip": request_ip, "user_agent": user_agent}

        try:
            if tag is not None and tag != LOGIN_TAG:
                raise InvalidInput(f"unsupported tag: {tag!r}")
            challenge = decode_hex(k1_hex, "k1", 32)
            signature = decode_hex(sig_hex, "sig")
            pubkey = decode_hex(key_hex, "key")
        except InvalidInput as e:
            self.audit.record("denied", e.reason, detail=str(e)[:200], **ctx)
            logger.info("callback rejected: %s", e)
            raise

        current = self.store.lookup(challenge)
        if current.state != ChallengeState.PENDING:
            self._unavailable(_STATE_REASONS[current.state], challenge, pubkey, signature, ctx)

        try:
            verify_login_signature(challenge, signature, pubkey)
        except InvalidSignature as e:
            self.audit.record(
                "denied", e.reason, challenge=challenge, pubkey=pubkey, signature=signature, **ctx
            )
            logger.warning("signature rejected k1=%s reason=%s", _short(challenge), e.reason)
            raise SignatureRejected(e.reason) from e

        result = self.store.try_bind(challenge, pubkey)
        if result != BindResult.BOUND:
            # lost a race against another binder (or the ttl) after the peek
            self._unavailable(_BIND_REASONS[result], challenge, pubkey, signature, ctx)

        if self.store.upsert_user(pubkey):
            logger.info("new user pubkey=%s", _short(pubkey))

        self.audit.record(
            "approved", "signature_valid", challenge=challenge, pubkey=pubkey, signature=signature, **ctx
        )
        logger.info("challenge bound k1=%s pubkey=%s", _short(challenge), _short(pubkey))
        return pubkey

    def _unavailable(self, reason: str, challenge: bytes, pubkey: bytes, signature: bytes, ctx: dict):
        self.audit.record(
            "denied", reason, challenge=challenge, pubkey=pubkey, signature=signature, **ctx
        )
        logger.info("callback rejected k1=%s reason=%s", _short(challenge), reason)
        raise ChallengeUnavailable(reason)

    # -------------------------------------------------------------------------
    # Poll
    # -------------------------------------------------------------------------
    def poll(self, k1_hex: Optional[str]) -> str:
        """Return a fresh session token once the challenge is bound."""
        challenge = decode_hex(k1_hex, "k1", 32)
        current = self.store.lookup(challenge)

        if current.state == ChallengeState.PENDING:
            raise WaitingForLogin()
        if current.state == ChallengeState.NOT_FOUND:
            raise ChallengeNotFound()
        if current.state == ChallengeState.EXPIRED:
            raise ChallengeExpired()

        token = self.issuer.issue(current.pubkey)
        self.audit.record("issued", "session_token", challenge=challenge, pubkey=current.pubkey)
        return token

    def pending_lnurl(self, k1_hex: Optional[str]) -> str:
        """LNURL for a live challenge (QR rendering)."""
        challenge = decode_hex(k1_hex, "k1", 32)
        current = self.store.lookup(challenge)

        if current.state == ChallengeState.NOT_FOUND:
            raise ChallengeNotFound()
        if current.state == ChallengeState.EXPIRED:
            raise ChallengeExpired()
        return encode_lnurl(challenge, self.callback_url)

    # -------------------------------------------------------------------------
    # Authenticated requests
    # -------------------------------------------------------------------------
    def authenticate(self, token: str) -> bytes:
        return self.issuer.authenticate(token)
