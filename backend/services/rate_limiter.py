"""Redis-backed rate limiting for the HTTP API.

Every request is attributed to a client key, resolved in this order:

1. a proxy-supplied client key carrying a valid HMAC signature,
2. the user id inside a verifiable access or refresh token,
3. the first forwarded address, when the peer is a trusted proxy,
4. the peer address.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from functools import lru_cache
from ipaddress import IPv4Network, IPv6Network, ip_address, ip_network
from typing import Callable, Iterable, Mapping, Protocol, runtime_checkable

from fastapi import status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.types import ASGIApp

from core import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, TokenError, decode_token, settings

from .auth.cookies import ACCESS_COOKIE, REFRESH_COOKIE
from .auth.gate import extract_bearer_token

logger = logging.getLogger(__name__)


@runtime_checkable
class SupportsRateLimitClient(Protocol):
    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl: int) -> None: ...


# Invite tokens carry no subject and never identify a caller.
SUPPORTED_TOKEN_TYPES = frozenset({ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE})
AUTH_PATH_PREFIX = f"{settings.api_v1_prefix}/auth"
FORWARDED_CLIENT_KEY_HEADER = "x-rate-limit-client"
FORWARDED_CLIENT_SIGNATURE_HEADER = "x-rate-limit-signature"
FORWARDED_CLIENT_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
FORWARDED_CLIENT_SIGNATURE_PATTERN = re.compile(r"^[0-9a-f]{64}$")

ClientResolver = Callable[[Request], str | None]


@lru_cache
def _trusted_proxy_networks() -> tuple[IPv4Network | IPv6Network, ...]:
    networks: list[IPv4Network | IPv6Network] = []
    for cidr in settings.rate_limit_trusted_proxies:
        try:
            networks.append(ip_network(cidr, strict=False))
        except ValueError as exc:  # pragma: no cover - invalid configuration
            raise ValueError(f"Invalid CIDR in RATE_LIMIT_TRUSTED_PROXIES: {cidr}") from exc
    return tuple(networks)


def _signed_proxy_key(request: Request) -> str | None:
    secret = settings.rate_limit_proxy_secret.strip()
    client_key = (request.headers.get(FORWARDED_CLIENT_KEY_HEADER) or "").strip()
    signature = (request.headers.get(FORWARDED_CLIENT_SIGNATURE_HEADER) or "").strip().lower()
    if not secret or not FORWARDED_CLIENT_KEY_PATTERN.fullmatch(client_key):
        return None
    if not FORWARDED_CLIENT_SIGNATURE_PATTERN.fullmatch(signature):
        return None

    expected = hmac.new(secret.encode("utf-8"), client_key.encode("utf-8"), hashlib.sha256)
    if not hmac.compare_digest(signature, expected.hexdigest()):
        return None
    return f"proxy:{client_key}"


def _token_subject(token: str) -> str | None:
    try:
        payload = decode_token(token)
    except TokenError:
        return None
    subject = payload.get("sub")
    if payload.get("type") not in SUPPORTED_TOKEN_TYPES or not isinstance(subject, str):
        return None
    return subject.strip() or None


def _authenticated_user(request: Request) -> str | None:
    for token in (
        request.cookies.get(ACCESS_COOKIE),
        request.cookies.get(REFRESH_COOKIE),
        extract_bearer_token(request),
    ):
        subject = _token_subject(token) if token else None
        if subject:
            return f"user:{subject}"
    return None


def _peer_host(request: Request) -> str | None:
    return request.client.host if request.client else None


def _forwarded_address(request: Request) -> str | None:
    host = _peer_host(request)
    try:
        peer = ip_address(host) if host else None
    except ValueError:
        return None
    if peer is None or not any(peer in network for network in _trusted_proxy_networks()):
        return None

    for header in settings.rate_limit_ip_headers:
        for candidate in (request.headers.get(header) or "").split(","):
            candidate = candidate.strip()
            try:
                ip_address(candidate)
            except ValueError:
                continue
            return candidate
    return None


CLIENT_RESOLVERS: tuple[ClientResolver, ...] = (
    _signed_proxy_key,
    _authenticated_user,
    _forwarded_address,
    _peer_host,
)


def default_client_identifier(request: Request) -> str:
    """Resolve a stable client identifier for rate limiting."""
    for resolve in CLIENT_RESOLVERS:
        identifier = resolve(request)
        if identifier:
            return identifier
    return "anonymous"


CREDENTIAL_SCOPE = "credentials"
OUTBOUND_MAIL_SCOPE = "outbound-mail"
DEFAULT_SCOPE = "default"

CREDENTIAL_PATHS = frozenset(
    f"{AUTH_PATH_PREFIX}/{name}"
    for name in ("login", "register", "forgot-password", "reset-password")
)
OUTBOUND_MAIL_PATHS = frozenset(
    f"{settings.api_v1_prefix}/people/{name}" for name in ("invite", "message")
)


def classify_request(method: str, path: str) -> str:
    """Map a request onto the budget it is counted against."""
    if method != "POST":
        return DEFAULT_SCOPE
    if path in CREDENTIAL_PATHS:
        return CREDENTIAL_SCOPE
    if path in OUTBOUND_MAIL_PATHS:
        return OUTBOUND_MAIL_SCOPE
    return DEFAULT_SCOPE


class RateLimiter:
    """Fixed-window rate limiter backed by Redis.

    Each scope gets its own counter per client and window. Scopes without an
    entry in ``scope_limits`` share the default ``limit``.
    """

    def __init__(
        self,
        redis_client: SupportsRateLimitClient,
        limit: int,
        window_seconds: int,
        prefix: str = "rate-limit",
        scope_limits: Mapping[str, int] | None = None,
    ) -> None:
        self.redis = redis_client
        self.limit = max(limit, 0)
        self.window_seconds = max(window_seconds, 0)
        self.prefix = prefix
        self.scope_limits = {scope: max(value, 0) for scope, value in (scope_limits or {}).items()}

    def limit_for(self, scope: str) -> int:
        return self.scope_limits.get(scope, self.limit)

    def retry_after(self, now: float | None = None) -> int:
        """Seconds until the current window closes."""
        if self.window_seconds == 0:
            return 0
        current = time.time() if now is None else now
        return self.window_seconds - int(current) % self.window_seconds

    async def allow(self, key: str, scope: str = DEFAULT_SCOPE) -> bool:
        """Return True when the request should be allowed, False if limited."""
        limit = self.limit_for(scope)
        if limit == 0 or self.window_seconds == 0:
            return True

        bucket = int(time.time()) // self.window_seconds
        redis_key = f"{self.prefix}:{scope}:{key}:{bucket}"

        count = await self.redis.incr(redis_key)
        if count == 1:
            await self.redis.expire(redis_key, self.window_seconds)
        return count <= limit


@lru_cache
def get_redis_client() -> SupportsRateLimitClient:
    """Return a cached async Redis client."""
    return Redis.from_url(settings.redis_url, decode_responses=False)


_cached_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Singleton accessor for the shared rate limiter."""
    global _cached_rate_limiter
    if _cached_rate_limiter is None:
        _cached_rate_limiter = RateLimiter(
            redis_client=get_redis_client(),
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            scope_limits={
                CREDENTIAL_SCOPE: settings.rate_limit_credential_requests,
                OUTBOUND_MAIL_SCOPE: settings.rate_limit_outbound_mail_requests,
            },
        )
    return _cached_rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    """Override the cached rate limiter (primarily for tests)."""
    global _cached_rate_limiter
    _cached_rate_limiter = limiter


def _service_unavailable() -> JSONResponse:
    return JSONResponse(
        {"detail": "Service unavailable"},
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Counts every HTTP request against its client's budget.

    When Redis cannot be reached, auth routes fail closed with 503 and
    everything else is let through.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter_factory: Callable[[], RateLimiter],
        exempt_paths: Iterable[str] | None = None,
        client_identifier: Callable[[Request], str] | None = None,
    ) -> None:
        super().__init__(app)
        self._limiter: RateLimiter | None = None
        self.limiter_factory = limiter_factory
        self.exempt_paths = set(exempt_paths or ())
        self.client_identifier = client_identifier or default_client_identifier

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        path = request.url.path
        if request.scope["type"] != "http" or path in self.exempt_paths:
            return await call_next(request)

        override = getattr(request.app.state, "rate_limiter_override", None)
        limiter = override if override is not None else self._get_limiter()
        fail_closed = _is_auth_path(path)
        if limiter is None:
            return _service_unavailable() if fail_closed else await call_next(request)

        client_key = self.client_identifier(request) or "anonymous"
        scope = classify_request(request.method, path)
        try:
            is_allowed = await limiter.allow(client_key, scope)
        except Exception as exc:  # pragma: no cover - Redis outage
            logger.warning("Rate limiter backend unavailable", exc_info=exc)
            return _service_unavailable() if fail_closed else await call_next(request)

        if not is_allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"client": client_key, "scope": scope, "path": path},
            )
            return JSONResponse(
                {"detail": "Too Many Requests"},
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers={"Retry-After": str(limiter.retry_after())},
            )

        return await call_next(request)

    def _get_limiter(self) -> RateLimiter | None:
        if self._limiter is None:
            try:
                self._limiter = self.limiter_factory()
            except Exception as exc:  # pragma: no cover - misconfigured Redis URL
                logger.warning("Rate limiter could not be created", exc_info=exc)
                self._limiter = None
        return self._limiter


def _is_auth_path(path: str) -> bool:
    return path == AUTH_PATH_PREFIX or path.startswith(f"{AUTH_PATH_PREFIX}/")
