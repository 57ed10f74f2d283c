# cachet/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the protocol implemented in protocol.py.
#   - It MUST NOT implement crypto itself (crypto lives in identity.py + tokens.py).
#   - It owns no module-level state: create_app() builds every collaborator
#     from Settings and hangs them on app.state.
#
# Key modules / responsibilities:
#   - config.py    : environment-driven settings (SERVICE_URL/JWT_SECRET/DATABASE_URL)
#   - storage.py   : challenge state + one-time binding + users
#   - lnurl.py     : bech32 LNURL encoding of challenges
#   - qr.py        : pure QR rendering (no security)
#   - identity.py  : secp256k1 signature verification
#   - tokens.py    : HS256 session tokens
#   - audit.py     : append-only audit log (security telemetry, forensics)
#
# Endpoints (under API_PREFIX, default /api):
#   GET /login             browser starts a login, gets k1 + lnurl
#   GET /login/{k1}        browser polls; 401 until the wallet signed
#   GET /login/{k1}/qr.svg QR rendering of the lnurl
#   GET /auth              wallet callback (LNURL-auth): tag, k1, sig, key
#   GET /user              bearer-authenticated identity of the caller
#
# Run:
#   cachet-server                                   (uses HOST/PORT)
#   uvicorn cachet.main:create_app --factory
# -----------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
import uvicorn

from .audit import AuditLog
from .config import Settings, get_settings
from .models import CallbackResponse, ErrorResponse, LoginResponse, TokenResponse, UserResponse
from .protocol import (
    ChallengeExpired,
    ChallengeNotFound,
    InvalidInput,
    LoginError,
    LoginProtocol,
    WaitingForLogin,
)
from .qr import make_login_qr_svg_bytes
from .storage import StoreUnavailable, build_store
from .tokens import AuthError, SessionIssuer, TokenExpired

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status_code: int, error: str):
        super().__init__(error)
        self.status_code = status_code
        self.error = error


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


_CHALLENGE_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    410: {"model": ErrorResponse},
}

_TOKEN_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


def _challenge_error(e: LoginError) -> ApiError:
    if isinstance(e, WaitingForLogin):
        return ApiError(401, e.message)
    if isinstance(e, ChallengeNotFound):
        return ApiError(404, e.message)
    if isinstance(e, ChallengeExpired):
        return ApiError(410, e.message)
    if isinstance(e, InvalidInput):
        return ApiError(400, "Invalid challenge")
    return ApiError(400, e.message)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_protocol(request: Request) -> LoginProtocol:
    return request.app.state.protocol


def current_pubkey(request: Request, protocol: LoginProtocol = Depends(get_protocol)) -> bytes:
    """Resolve "Authorization: Bearer <token>" to the caller's public key."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise ApiError(400, "Invalid token")

    try:
        return protocol.authenticate(token)
    except TokenExpired:
        raise ApiError(401, "Token expired")
    except AuthError:
        raise ApiError(400, "Invalid token")


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
def build_router(prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix)

    @router.get("/login", response_model=LoginResponse)
    def start_login(protocol: LoginProtocol = Depends(get_protocol)):
        login = protocol.start_login()
        return LoginResponse(lnurl=login.lnurl, k1=login.k1)

    @router.get("/login/{k1}", response_model=TokenResponse, responses=_CHALLENGE_ERRORS)
    def login_status(k1: str, protocol: LoginProtocol = Depends(get_protocol)):
        try:
            token = protocol.poll(k1)
        except LoginError as e:
            raise _challenge_error(e)
        return TokenResponse(access_token=token)

    @router.get("/login/{k1}/qr.svg", responses=_CHALLENGE_ERRORS)
    def login_qr_svg(k1: str, protocol: LoginProtocol = Depends(get_protocol)):
        try:
            lnurl = protocol.pending_lnurl(k1)
        except LoginError as e:
            raise _challenge_error(e)
        return Response(content=make_login_qr_svg_bytes(lnurl), media_type="image/svg+xml")

    @router.get("/auth", response_model=CallbackResponse, response_model_exclude_none=True)
    def auth_callback(
        request: Request,
        tag: Optional[str] = Query(None),
        k1: Optional[str] = Query(None),
        sig: Optional[str] = Query(None),
        key: Optional[str] = Query(None),
        protocol: LoginProtocol = Depends(get_protocol),
    ):
        # LNURL-auth: failures are 200 + {"status": "ERROR"}; wallets show "reason".
        try:
            protocol.verify(
                k1,
                sig,
                key,
                tag,
                request_ip=_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        except LoginError as e:
            return CallbackResponse(status="ERROR", reason=e.message)
        return CallbackResponse(status="OK")

    @router.get("/user", response_model=UserResponse, responses=_TOKEN_ERRORS)
    def whoami(
        pubkey: bytes = Depends(current_pubkey),
        protocol: LoginProtocol = Depends(get_protocol),
    ):
        user = protocol.store.get_user(pubkey)
        if user is None:
            raise ApiError(404, "User not found")
        return UserResponse(pubkey=user.pubkey.hex(), created_at=user.created_at)

    return router


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(settings: Optional[Settings] = None, store=None) -> FastAPI:
    """
    Build the application.

    Fails fast (raises) when configuration is invalid or the database cannot
    be reached; a half-configured server never starts.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    if store is None:
        store = build_store(settings.DATABASE_URL, settings.CHALLENGE_TTL_SECONDS)

    issuer = SessionIssuer(settings.JWT_SECRET, ttl_seconds=settings.TOKEN_TTL_SECONDS)
    audit = AuditLog(settings.AUDIT_DIR, enabled=settings.AUDIT_ENABLED)
    protocol = LoginProtocol(store, issuer, settings.callback_url, audit)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("cachet ready, callback=%s", settings.callback_url)
        yield
        store.close()

    app = FastAPI(title="Cachet", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.protocol = protocol

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.error})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"error": "Service unavailable"})

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    app.include_router(build_router(settings.API_PREFIX))
    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT)
