"""Application configuration using Pydantic Settings."""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "local"
    log_level: str = "INFO"
    api_v1_prefix: str = "/api/v1"
    database_url: str = "sqlite+aiosqlite:///./bugsnap.db"

    # Signing
    jwt_secret_key: str = Field(min_length=MIN_SECRET_LENGTH)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_minutes: int = 7 * 24 * 60
    invite_token_expire_minutes: int = 7 * 24 * 60
    password_reset_expire_minutes: int = 15

    # Cookies / browser
    allow_insecure_http_cookies: bool = False
    frontend_url: str = "http://localhost:5173"
    cors_origins: list[str] = ["http://localhost:5173"]

    # Invitations
    max_invite_recipients: int = 100
    product_name: str = "BugSnap"

    # Rate limiting
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60
    rate_limit_credential_requests: int = 10
    rate_limit_outbound_mail_requests: int = 10
    rate_limit_trusted_proxies: list[str] = []
    rate_limit_ip_headers: list[str] = ["x-forwarded-for", "x-real-ip"]
    rate_limit_proxy_secret: str = ""

    # Federated login
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    github_redirect_uri: str = ""
    identity_provider_timeout_seconds: float = 10.0

    # Outbound mail; an empty host logs messages instead of sending them
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "BugSnap <no-reply@bugsnap.local>"

    @field_validator("jwt_secret_key")
    @classmethod
    def _reject_blank_secret(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("JWT_SECRET_KEY must not be blank")
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slashes(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("max_invite_recipients")
    @classmethod
    def _require_positive_recipient_cap(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("MAX_INVITE_RECIPIENTS must be positive")
        return value


settings = Settings()
