"""Authentication domain services."""

from .cookies import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    clear_token_cookies,
    set_access_cookie,
    set_refresh_cookie,
    set_token_cookies,
)
from .gate import (
    GateResult,
    extract_access_token,
    extract_bearer_token,
    resolve_session,
)
from .identity import (
    authenticate_password,
    create_user,
    get_or_create_federated_user,
    get_user_by_email,
    get_user_by_id,
    normalize_email,
    save_user,
)
from .identity_provider import (
    FederatedProfile,
    GitHubIdentityProvider,
    GoogleIdentityProvider,
    IdentityProvider,
    get_github_identity_provider,
    get_google_identity_provider,
)
from .password_reset import (
    MIN_PASSWORD_LENGTH,
    ensure_aware,
    hash_reset_token,
    prune_expired_reset_tokens,
    request_password_reset,
    reset_password,
)

__all__ = [
    "ACCESS_COOKIE",
    "REFRESH_COOKIE",
    "MIN_PASSWORD_LENGTH",
    "clear_token_cookies",
    "set_access_cookie",
    "set_refresh_cookie",
    "set_token_cookies",
    "GateResult",
    "extract_access_token",
    "extract_bearer_token",
    "resolve_session",
    "authenticate_password",
    "create_user",
    "get_or_create_federated_user",
    "get_user_by_email",
    "get_user_by_id",
    "normalize_email",
    "save_user",
    "FederatedProfile",
    "IdentityProvider",
    "GoogleIdentityProvider",
    "GitHubIdentityProvider",
    "get_google_identity_provider",
    "get_github_identity_provider",
    "ensure_aware",
    "hash_reset_token",
    "prune_expired_reset_tokens",
    "request_password_reset",
    "reset_password",
]
