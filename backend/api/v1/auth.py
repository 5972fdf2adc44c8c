"""Authentication endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, get_sender
from core import (
    TokenError,
    create_access_token,
    create_refresh_token,
    hash_password,
    settings,
    verify_refresh_token,
)
from models import User
from services.auth import (
    REFRESH_COOKIE,
    IdentityProvider,
    authenticate_password,
    clear_token_cookies,
    create_user,
    get_github_identity_provider,
    get_google_identity_provider,
    get_or_create_federated_user,
    get_user_by_email,
    get_user_by_id,
    request_password_reset,
    reset_password,
    set_token_cookies,
)
from services.auto_accept import sweep
from services.errors import AuthenticationInvalid, AuthenticationMissing, ValidationFailed
from services.mailer import NotificationSender

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Name cannot be blank")
        return normalized


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    image_url: str | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    password: str = Field(max_length=128)


def _issue_tokens(response: Response, user_id: str) -> TokenResponse:
    access_token = create_access_token(user_id)
    refresh_token = create_refresh_token(user_id)
    set_token_cookies(response, access_token=access_token, refresh_token=refresh_token)
    return TokenResponse(access_token=access_token, refresh_token=refresh_token)


def _dashboard_url(invite_accepted: bool) -> str:
    url = f"{settings.frontend_url}/dashboard"
    if invite_accepted:
        return f"{url}?inviteAccepted=true"
    return url


@router.post("/register", status_code=status.HTTP_201_CREATED, response_model=UserResponse)
async def register(
    payload: RegisterRequest,
    response: Response,
    session: AsyncSession = Depends(get_db),
) -> UserResponse:
    user = await create_user(
        session,
        email=str(payload.email),
        name=payload.name,
        password_hash=hash_password(payload.password),
    )
    _issue_tokens(response, user.id)
    return UserResponse.model_validate(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_db),
) -> TokenResponse:
    existing = await get_user_by_email(session, str(payload.email))
    if existing is not None and existing.password_hash is None:
        raise ValidationFailed("This account uses Google or GitHub sign-in")

    user = await authenticate_password(
        session,
        email=str(payload.email),
        password=payload.password,
    )
    if user is None:
        raise AuthenticationInvalid("Invalid credentials")

    logger.info("Password login", extra={"user_id": user.id})
    return _issue_tokens(response, user.id)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_db),
) -> TokenResponse:
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise AuthenticationMissing("Missing refresh token")

    try:
        claims = verify_refresh_token(refresh_token)
    except TokenError as exc:
        raise AuthenticationInvalid("Invalid refresh token") from exc

    user = await get_user_by_id(session, claims["sub"])
    if user is None:
        raise AuthenticationInvalid("Invalid refresh token")
    return _issue_tokens(response, user.id)


@router.post("/logout", status_code=status.HTTP_200_OK)
async def logout(response: Response) -> dict[str, Any]:
    clear_token_cookies(response)
    return {"detail": "Logged out"}


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(current_user)


@router.post("/forgot-password", status_code=status.HTTP_200_OK)
async def forgot_password(
    payload: ForgotPasswordRequest,
    session: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_sender),
) -> dict[str, Any]:
    await request_password_reset(session, sender, email=str(payload.email))
    return {"detail": "If that account exists, a reset link has been sent"}


@router.post("/reset-password", status_code=status.HTTP_200_OK)
async def reset_password_endpoint(
    payload: ResetPasswordRequest,
    session: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await reset_password(session, token=payload.token, new_password=payload.password)
    return {"detail": "Password updated"}


async def _complete_federated_login(
    provider: IdentityProvider,
    code: str | None,
    session: AsyncSession,
) -> RedirectResponse:
    if not code:
        raise ValidationFailed("Missing authorization code")

    profile = await provider.exchange(code)
    user, created = await get_or_create_federated_user(session, profile)
    user_id = user.id

    accepted = 0
    if created:
        try:
            accepted = await sweep(session, user)
        except Exception as exc:
            await session.rollback()
            logger.warning(
                "Invite auto-accept failed during first login",
                extra={"user_id": user_id, "provider": provider.name},
                exc_info=exc,
            )

    logger.info(
        "Federated login",
        extra={"user_id": user_id, "provider": provider.name, "created": created},
    )
    redirect = RedirectResponse(
        _dashboard_url(accepted > 0),
        status_code=status.HTTP_302_FOUND,
    )
    _issue_tokens(redirect, user_id)
    return redirect


@router.get("/google", response_class=RedirectResponse)
async def google_login(
    provider: IdentityProvider = Depends(get_google_identity_provider),
) -> RedirectResponse:
    return RedirectResponse(provider.authorization_url(), status_code=status.HTTP_302_FOUND)


@router.get("/google/callback", response_class=RedirectResponse)
async def google_callback(
    code: str | None = None,
    provider: IdentityProvider = Depends(get_google_identity_provider),
    session: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    return await _complete_federated_login(provider, code, session)


@router.get("/github", response_class=RedirectResponse)
async def github_login(
    provider: IdentityProvider = Depends(get_github_identity_provider),
) -> RedirectResponse:
    return RedirectResponse(provider.authorization_url(), status_code=status.HTTP_302_FOUND)


@router.get("/github/callback", response_class=RedirectResponse)
async def github_callback(
    code: str | None = None,
    provider: IdentityProvider = Depends(get_github_identity_provider),
    session: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    return await _complete_federated_login(provider, code, session)
