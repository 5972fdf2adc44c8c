"""HTTP cookie helpers for auth token transport."""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from fastapi import Response

from core import settings

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
COOKIE_PATH = "/"
COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "lax"
COOKIE_SECURE = (
    settings.app_env.strip().lower() not in {"local", "test"}
    and not settings.allow_insecure_http_cookies
)


def _access_token_ttl() -> timedelta:
    return timedelta(minutes=settings.access_token_expire_minutes)


def _refresh_token_ttl() -> timedelta:
    return timedelta(minutes=settings.refresh_token_expire_minutes)


def _set_cookie(response: Response, key: str, value: str, ttl: timedelta) -> None:
    response.set_cookie(
        key=key,
        value=value,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
        max_age=int(ttl.total_seconds()),
        path=COOKIE_PATH,
    )


def set_access_cookie(response: Response, access_token: str) -> None:
    _set_cookie(response, ACCESS_COOKIE, access_token, _access_token_ttl())


def set_refresh_cookie(response: Response, refresh_token: str) -> None:
    _set_cookie(response, REFRESH_COOKIE, refresh_token, _refresh_token_ttl())


def set_token_cookies(
    response: Response,
    *,
    access_token: str | None = None,
    refresh_token: str | None = None,
) -> None:
    """Write whichever of the two credentials is provided."""
    if access_token:
        set_access_cookie(response, access_token)
    if refresh_token:
        set_refresh_cookie(response, refresh_token)


def clear_token_cookies(response: Response) -> None:
    for key in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            key=key,
            path=COOKIE_PATH,
            secure=COOKIE_SECURE,
            samesite=COOKIE_SAMESITE,
        )
