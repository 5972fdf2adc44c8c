"""Tests for the Google and GitHub code exchanges."""

import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from services.auth import GitHubIdentityProvider, GoogleIdentityProvider
from services.errors import IdentityProviderError


def _google(handler) -> GoogleIdentityProvider:
    return GoogleIdentityProvider(
        "google-client",
        "google-secret",
        "http://testserver/api/v1/auth/google/callback",
        transport=httpx.MockTransport(handler),
    )


def _github(handler) -> GitHubIdentityProvider:
    return GitHubIdentityProvider(
        "github-client",
        "github-secret",
        "http://testserver/api/v1/auth/github/callback",
        transport=httpx.MockTransport(handler),
    )


def test_google_authorization_url_requests_email_scope() -> None:
    provider = _google(lambda request: httpx.Response(500))

    query = parse_qs(urlsplit(provider.authorization_url()).query)

    assert query["client_id"] == ["google-client"]
    assert query["response_type"] == ["code"]
    assert "email" in query["scope"][0].split()


@pytest.mark.asyncio
async def test_google_exchange_returns_profile() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.method == "POST":
            assert parse_qs(request.content.decode())["code"] == ["auth-code"]
            return httpx.Response(200, json={"access_token": "google-access"})
        assert request.headers["Authorization"] == "Bearer google-access"
        return httpx.Response(
            200,
            json={
                "email": "ada@example.com",
                "email_verified": True,
                "name": "Ada",
                "picture": "https://img/ada.png",
            },
        )

    profile = await _google(handler).exchange("auth-code")

    assert profile.email == "ada@example.com"
    assert profile.name == "Ada"
    assert profile.picture_url == "https://img/ada.png"
    assert seen == ["/token", "/oauth2/v3/userinfo"]


@pytest.mark.asyncio
async def test_google_exchange_rejected_code_raises_bad_gateway() -> None:
    provider = _google(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(IdentityProviderError) as exc_info:
        await provider.exchange("stale-code")

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_github_exchange_prefers_primary_email_and_login_fallback() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            assert json.loads(request.content)["code"] == "gh-code"
            return httpx.Response(200, json={"access_token": "gh-access"})
        assert request.headers["Authorization"] == "token gh-access"
        if request.url.path == "/user":
            return httpx.Response(200, json={"login": "octocat", "name": None})
        return httpx.Response(
            200,
            json=[
                {"email": "secondary@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ],
        )

    profile = await _github(handler).exchange("gh-code")

    assert profile.email == "octo@example.com"
    assert profile.name == "octocat"


@pytest.mark.asyncio
async def test_github_exchange_without_emails_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"access_token": "gh-access"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        return httpx.Response(200, json=[])

    with pytest.raises(IdentityProviderError):
        await _github(handler).exchange("gh-code")


@pytest.mark.asyncio
@pytest.mark.parametrize("verified_claim", [False, None, "true"])
async def test_google_exchange_rejects_unverified_email(verified_claim) -> None:
    userinfo = {"email": "victim@example.com", "name": "Mallory"}
    if verified_claim is not None:
        userinfo["email_verified"] = verified_claim

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"access_token": "google-access"})
        return httpx.Response(200, json=userinfo)

    with pytest.raises(IdentityProviderError) as exc_info:
        await _google(handler).exchange("auth-code")

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "emails",
    [
        [{"email": "victim@example.com", "primary": False, "verified": False}],
        [{"email": "victim@example.com", "primary": True, "verified": False}],
        [
            {"email": "victim@example.com", "primary": True, "verified": False},
            {"email": "mine@example.com", "primary": False, "verified": True},
        ],
    ],
)
async def test_github_exchange_requires_verified_primary_email(emails) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"access_token": "gh-access"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"login": "mallory"})
        return httpx.Response(200, json=emails)

    with pytest.raises(IdentityProviderError):
        await _github(handler).exchange("gh-code")
