"""Per-request credential resolution with refresh-on-expiry."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request, Response

from core import (
    TokenError,
    TokenExpiredError,
    create_access_token,
    verify_access_token,
    verify_refresh_token,
)

from ..errors import AuthenticationInvalid, AuthenticationMissing, SessionExpired
from .cookies import ACCESS_COOKIE, REFRESH_COOKIE, set_access_cookie

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GateResult:
    user_id: str
    renewed: bool = False


def extract_bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = value.strip()
    return token or None


def extract_access_token(request: Request) -> str | None:
    """Cookie first, then the ``Authorization: Bearer`` header."""
    return request.cookies.get(ACCESS_COOKIE) or extract_bearer_token(request)


def _renew_from_refresh(refresh_token: str | None, response: Response) -> str | None:
    """Mint and set a new access cookie; None when refresh is unusable."""
    if not refresh_token:
        return None
    try:
        claims = verify_refresh_token(refresh_token)
    except TokenError as exc:
        logger.info("Refresh token rejected", extra={"reason": type(exc).__name__})
        return None

    user_id = claims["sub"]
    set_access_cookie(response, create_access_token(user_id))
    logger.debug("Access token renewed from refresh token", extra={"user_id": user_id})
    return user_id


def resolve_session(request: Request, response: Response) -> GateResult:
    """Decide the caller identity from the access/refresh credential pair.

    Raises ``AuthenticationMissing``, ``SessionExpired`` or
    ``AuthenticationInvalid``. A malformed access token never falls back to
    the refresh token.
    """
    access_token = extract_access_token(request)
    refresh_token = request.cookies.get(REFRESH_COOKIE)

    if not access_token:
        user_id = _renew_from_refresh(refresh_token, response)
        if user_id is None:
            raise AuthenticationMissing()
        return GateResult(user_id=user_id, renewed=True)

    try:
        claims = verify_access_token(access_token)
    except TokenExpiredError:
        user_id = _renew_from_refresh(refresh_token, response)
        if user_id is None:
            raise SessionExpired() from None
        return GateResult(user_id=user_id, renewed=True)
    except TokenError as exc:
        logger.info("Access token rejected", extra={"reason": type(exc).__name__})
        raise AuthenticationInvalid() from exc

    return GateResult(user_id=claims["sub"])
