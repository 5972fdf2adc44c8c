"""Single-use password reset secrets delivered by mail."""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, cast
from urllib.parse import urlencode

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from core import hash_password, settings
from models import PasswordResetToken

from ..errors import NotificationDeliveryError, ValidationFailed
from ..mailer import NotificationSender, render_password_reset_message
from .identity import get_user_by_email, normalize_email, save_user

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def _eq(column: Any, value: Any) -> ColumnElement[bool]:
    return cast(ColumnElement[bool], column == value)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def build_reset_url(token: str) -> str:
    return f"{settings.frontend_url}/resetPassword?{urlencode({'token': token})}"


async def request_password_reset(
    session: AsyncSession,
    sender: NotificationSender,
    *,
    email: str,
    now: datetime | None = None,
) -> str | None:
    """Mail a reset link when ``email`` belongs to an account.

    Returns the raw secret when one was issued. Unknown addresses are
    ignored silently so callers cannot probe for registered accounts.
    """
    normalized = normalize_email(email)
    user = await get_user_by_email(session, normalized)
    if user is None:
        logger.info("Password reset requested for unknown email")
        return None

    issued_at = now or datetime.now(timezone.utc)
    token = secrets.token_hex(32)

    # Only the newest link for an address stays valid.
    await session.execute(
        delete(PasswordResetToken).where(_eq(PasswordResetToken.email, normalized))
    )
    session.add(
        PasswordResetToken(
            email=normalized,
            token_hash=hash_reset_token(token),
            expires_at=issued_at + timedelta(minutes=settings.password_reset_expire_minutes),
        )
    )
    await session.commit()

    user_id = user.id
    subject, body = render_password_reset_message(reset_url=build_reset_url(token))
    try:
        await sender.send(normalized, subject, body)
    except NotificationDeliveryError as exc:
        logger.warning(
            "Password reset email not delivered",
            extra={"user_id": user_id},
            exc_info=exc,
        )
        return None
    logger.info("Password reset issued", extra={"user_id": user_id})
    return token


async def reset_password(
    session: AsyncSession,
    *,
    token: str,
    new_password: str,
    now: datetime | None = None,
) -> None:
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )

    result = await session.execute(
        select(PasswordResetToken).where(
            _eq(PasswordResetToken.token_hash, hash_reset_token(token))
        )
    )
    stored = result.scalar_one_or_none()
    current = now or datetime.now(timezone.utc)
    if stored is None or ensure_aware(stored.expires_at) <= current:
        raise ValidationFailed("Password reset link is invalid or has expired")

    email = stored.email
    await session.execute(
        delete(PasswordResetToken).where(_eq(PasswordResetToken.email, email))
    )
    user = await get_user_by_email(session, email)
    if user is None:
        await session.commit()
        raise ValidationFailed("Password reset link is invalid or has expired")

    user.password_hash = hash_password(new_password)
    await save_user(session, user)
    logger.info("Password reset completed", extra={"user_id": user.id})


async def prune_expired_reset_tokens(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> int:
    cutoff = now or datetime.now(timezone.utc)
    result = await session.execute(
        delete(PasswordResetToken).where(
            cast(ColumnElement[bool], cast(Any, PasswordResetToken.expires_at) <= cutoff)
        )
    )
    await session.commit()
    return cast(Any, result).rowcount or 0
