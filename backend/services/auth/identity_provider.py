"""Federated login code exchange for Google and GitHub."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

import httpx

from core import settings

from ..errors import IdentityProviderError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GITHUB_AUTH_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"


@dataclass(frozen=True, slots=True)
class FederatedProfile:
    email: str
    name: str | None = None
    picture_url: str | None = None


@runtime_checkable
class IdentityProvider(Protocol):
    name: str

    def authorization_url(self) -> str: ...

    async def exchange(self, code: str) -> FederatedProfile: ...


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise IdentityProviderError(f"Identity provider response missing {key}")
    return value.strip()


class GoogleIdentityProvider:
    name = "google"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    def authorization_url(self) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": "openid profile email",
            }
        )
        return f"{GOOGLE_AUTH_URL}?{query}"

    async def exchange(self, code: str) -> FederatedProfile:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "code": code,
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                )
                token_response.raise_for_status()
                access_token = _require_str(token_response.json(), "access_token")

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Google code exchange failed", exc_info=exc)
            raise IdentityProviderError("Google login failed") from exc

        if userinfo.get("email_verified") is not True:
            raise IdentityProviderError("Google account email is not verified")
        return FederatedProfile(
            email=_require_str(userinfo, "email"),
            name=userinfo.get("name"),
            picture_url=userinfo.get("picture"),
        )


class GitHubIdentityProvider:
    name = "github"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    def authorization_url(self) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": "user:email",
            }
        )
        return f"{GITHUB_AUTH_URL}?{query}"

    async def exchange(self, code: str) -> FederatedProfile:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token_response = await client.post(
                    GITHUB_TOKEN_URL,
                    json={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = _require_str(token_response.json(), "access_token")
                auth_headers = {"Authorization": f"token {access_token}"}

                user_response = await client.get(GITHUB_USER_URL, headers=auth_headers)
                user_response.raise_for_status()
                emails_response = await client.get(GITHUB_EMAILS_URL, headers=auth_headers)
                emails_response.raise_for_status()
                github_user = user_response.json()
                emails = emails_response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("GitHub code exchange failed", exc_info=exc)
            raise IdentityProviderError("GitHub login failed") from exc

        if not isinstance(emails, list):
            raise IdentityProviderError("GitHub returned an unexpected email payload")
        primary = next(
            (
                entry
                for entry in emails
                if isinstance(entry, dict)
                and entry.get("primary") is True
                and entry.get("verified") is True
            ),
            None,
        )
        if primary is None:
            raise IdentityProviderError("GitHub account has no verified primary email")
        return FederatedProfile(
            email=_require_str(primary, "email"),
            name=github_user.get("name") or github_user.get("login"),
            picture_url=github_user.get("avatar_url"),
        )


def get_google_identity_provider() -> IdentityProvider:
    return GoogleIdentityProvider(
        settings.google_client_id,
        settings.google_client_secret,
        settings.google_redirect_uri,
        timeout=settings.identity_provider_timeout_seconds,
    )


def get_github_identity_provider() -> IdentityProvider:
    return GitHubIdentityProvider(
        settings.github_client_id,
        settings.github_client_secret,
        settings.github_redirect_uri,
        timeout=settings.identity_provider_timeout_seconds,
    )
