from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # HMAC secret for session tokens. No default: startup must fail without it.
    JWT_SECRET: str

    # public origin the wallet calls back to
    SERVICE_URL: str = "http://127.0.0.1:8000"
    API_PREFIX: str = "/api"

    # SQLAlchemy URL, or "memory://" for the in-process store
    DATABASE_URL: str = "sqlite:///./cachet.db"

    CHALLENGE_TTL_SECONDS: int = 300
    TOKEN_TTL_SECONDS: int = 86400

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    LOG_LEVEL: str = "INFO"

    HOST: str = "0.0.0.0"
    PORT: int = 8000

    class Config:
        env_file = ".env"

    @field_validator("JWT_SECRET")
    @classmethod
    def require_secret(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("JWT_SECRET must be set")
        return v

    @field_validator("SERVICE_URL")
    @classmethod
    def normalize_service_url(cls, v: str) -> str:
        """
        SERVICE_URL must be an absolute http(s) origin reachable by the wallet.

        Normalization:
          - strip whitespace and trailing slash
          - require http/https and a hostname
          - lowercase hostname, keep an explicit port
          - keep a path prefix (reverse proxies), drop query/fragment
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("SERVICE_URL must start with http:// or https://")

        if not p.hostname:
            raise ValueError("SERVICE_URL must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, p.path.rstrip("/"), "", "", ""))

    @field_validator("API_PREFIX")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = (v or "").strip().strip("/")
        return f"/{v}" if v else ""

    @field_validator("CHALLENGE_TTL_SECONDS", "TOKEN_TTL_SECONDS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("TTL must be positive")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "").strip().upper() or "INFO"

    @property
    def callback_url(self) -> str:
        """Where the wallet sends its signature (the LNURL target)."""
        return f"{self.SERVICE_URL}{self.API_PREFIX}/auth"


def get_settings() -> Settings:
    # Reads environment / .env; raises pydantic.ValidationError on bad config.
    return Settings()
