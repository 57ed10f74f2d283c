# cachet/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *session token layer*.
#
# Responsibilities:
#   - Mint bearer tokens for a public key that completed a login
#   - Verify bearer tokens presented to authenticated endpoints
#
# What this module is NOT:
#   - Not a challenge store (tokens are self-contained, verifiable without DB)
#   - Not a revocation system: a token stays valid until "exp"
#
# Security model:
#   - ONE symmetric secret (HS256), handed to SessionIssuer by the app factory
#   - Claims:
#       * sub = hex(pubkey)
#       * iat = issuance time (epoch seconds)
#       * exp = iat + ttl (24h by default)
#   - Only the configured algorithm is accepted on decode (no alg confusion)
# -----------------------------------------------------------------------------

import time
from typing import Callable

import jwt

DEFAULT_TOKEN_TTL_SECONDS = 24 * 60 * 60


class AuthError(Exception):
    """Bearer token rejected."""


class TokenMalformed(AuthError):
    pass


class TokenExpired(AuthError):
    pass


class SessionIssuer:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret
        self.ttl_seconds = int(ttl_seconds)
        self.algorithm = algorithm
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def issue(self, pubkey: bytes) -> str:
        now = self._now()
        claims = {
            "sub": bytes(pubkey).hex(),
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def decode(self, token: str) -> dict:
        """
        Verify signature and claim shape, then expiry against our own clock.

        PyJWT's built-in exp check always uses wall time; it is disabled here
        so the injected clock decides.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as e:
            raise TokenMalformed(str(e)) from e

        try:
            exp = int(claims["exp"])
        except (TypeError, ValueError) as e:
            raise TokenMalformed("exp must be int") from e

        if self._now() > exp:
            raise TokenExpired("token expired")
        return claims

    def authenticate(self, token: str) -> bytes:
        """Return the public key a valid token was issued for."""
        claims = self.decode(token)
        try:
            return bytes.fromhex(str(claims["sub"]))
        except ValueError as e:
            raise TokenMalformed("sub is not hex") from e
