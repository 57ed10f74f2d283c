from typing import Optional

from pydantic import BaseModel


class LoginResponse(BaseModel):
    lnurl: str
    k1: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"


class CallbackResponse(BaseModel):
    # LNURL wallets read the body, not the status code
    status: str
    reason: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str


class UserResponse(BaseModel):
    pubkey: str
    created_at: int
