"""Core configuration and security primitives."""

from .config import settings
from .security import (
    ACCESS_TOKEN_TYPE,
    INVITE_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    TokenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenTypeError,
    create_access_token,
    create_invite_token,
    create_refresh_token,
    decode_token,
    hash_password,
    needs_rehash,
    verify_access_token,
    verify_invite_token,
    verify_password,
    verify_refresh_token,
)

__all__ = [
    "settings",
    "ACCESS_TOKEN_TYPE",
    "REFRESH_TOKEN_TYPE",
    "INVITE_TOKEN_TYPE",
    "TokenError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenTypeError",
    "create_access_token",
    "create_refresh_token",
    "create_invite_token",
    "decode_token",
    "verify_access_token",
    "verify_refresh_token",
    "verify_invite_token",
    "hash_password",
    "verify_password",
    "needs_rehash",
]
