"""Signed credential issuance/verification and password hashing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from jose import ExpiredSignatureError, JWTError, jwt

from .config import settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
INVITE_TOKEN_TYPE = "invite"

_password_hasher = PasswordHasher(type=Type.ID)


class TokenError(ValueError):
    """Base class for every credential verification failure."""


class TokenExpiredError(TokenError):
    """Signature is valid but the token is past its expiry."""


class TokenInvalidError(TokenError):
    """Token is malformed, tampered with, or signed with a foreign secret."""


class TokenTypeError(TokenError):
    """Token verified but carries a different ``type`` claim than required."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode(claims: dict[str, Any], *, lifetime: timedelta, now: datetime | None) -> str:
    issued_at = now or _utcnow()
    payload = {
        **claims,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + lifetime).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    """Verify signature and expiry of any token we issued and return its claims.

    The signature is checked before the expiry, so ``TokenExpiredError`` is
    only ever raised for tokens that were genuinely signed with our secret.
    """
    if not token or not isinstance(token, str):
        raise TokenInvalidError("Token is empty")
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require_exp": True},
        )
    except ExpiredSignatureError as exc:
        raise TokenExpiredError("Token has expired") from exc
    except JWTError as exc:
        raise TokenInvalidError(str(exc) or "Invalid token") from exc


def _verify_typed(token: str, expected_type: str) -> dict[str, Any]:
    claims = decode_token(token)
    if claims.get("type") != expected_type:
        raise TokenTypeError(f"Expected a {expected_type} token")
    return claims


def _verify_subject_token(token: str, expected_type: str) -> dict[str, Any]:
    claims = _verify_typed(token, expected_type)
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise TokenInvalidError("Token subject is missing")
    return claims


def create_access_token(subject: str, *, now: datetime | None = None) -> str:
    return _encode(
        {"sub": subject, "type": ACCESS_TOKEN_TYPE},
        lifetime=timedelta(minutes=settings.access_token_expire_minutes),
        now=now,
    )


def create_refresh_token(subject: str, *, now: datetime | None = None) -> str:
    return _encode(
        {"sub": subject, "type": REFRESH_TOKEN_TYPE},
        lifetime=timedelta(minutes=settings.refresh_token_expire_minutes),
        now=now,
    )


def verify_access_token(token: str) -> dict[str, Any]:
    return _verify_subject_token(token, ACCESS_TOKEN_TYPE)


def verify_refresh_token(token: str) -> dict[str, Any]:
    return _verify_subject_token(token, REFRESH_TOKEN_TYPE)


def create_invite_token(
    invited_email: str,
    invited_by: str,
    *,
    now: datetime | None = None,
) -> str:
    # jti keeps tokens distinct when the same pair is invited twice in one second
    return _encode(
        {
            "invited_email": invited_email,
            "invited_by": invited_by,
            "type": INVITE_TOKEN_TYPE,
            "jti": uuid4().hex,
        },
        lifetime=timedelta(minutes=settings.invite_token_expire_minutes),
        now=now,
    )


def verify_invite_token(token: str) -> dict[str, Any]:
    """Return invite claims; required-claim checks are left to the caller."""
    return _verify_typed(token, INVITE_TOKEN_TYPE)


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return _password_hasher.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


def needs_rehash(password_hash: str) -> bool:
    try:
        return _password_hasher.check_needs_rehash(password_hash)
    except InvalidHashError:
        return True
