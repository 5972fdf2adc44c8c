"""User lookup, creation and login resolution helpers."""

from __future__ import annotations

import logging
from typing import Any, cast

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from core import hash_password, needs_rehash, verify_password
from db.errors import is_unique_violation
from models import User

from ..errors import EmailAlreadyRegistered
from .identity_provider import FederatedProfile

logger = logging.getLogger(__name__)


def _eq(column: Any, value: Any) -> ColumnElement[bool]:
    return cast(ColumnElement[bool], column == value)


def normalize_email(value: str) -> str:
    return value.strip().lower()


async def get_user_by_id(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(
        select(User).where(_eq(User.email, normalize_email(email))).limit(1)
    )
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    name: str,
    password_hash: str | None = None,
    image_url: str | None = None,
) -> User:
    user = User(
        email=normalize_email(email),
        name=name,
        password_hash=password_hash,
        image_url=image_url,
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if is_unique_violation(exc):
            raise EmailAlreadyRegistered() from exc
        raise
    await session.refresh(user)
    logger.info("User created", extra={"user_id": user.id})
    return user


async def save_user(session: AsyncSession, user: User) -> User:
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def get_or_create_federated_user(
    session: AsyncSession,
    profile: FederatedProfile,
) -> tuple[User, bool]:
    """Return the user for a federated profile and whether it was just created."""
    existing = await get_user_by_email(session, profile.email)
    if existing is not None:
        return existing, False

    try:
        user = await create_user(
            session,
            email=profile.email,
            name=profile.name or profile.email.split("@")[0],
            image_url=profile.picture_url,
        )
    except EmailAlreadyRegistered:
        # A concurrent first login for the same email won the insert.
        winner = await get_user_by_email(session, profile.email)
        if winner is None:
            raise
        return winner, False
    return user, True


async def authenticate_password(
    session: AsyncSession,
    *,
    email: str,
    password: str,
) -> User | None:
    """Return the user when the password matches, rehashing stale hashes."""
    user = await get_user_by_email(session, email)
    if user is None or not verify_password(password, user.password_hash):
        return None
    if user.password_hash is not None and needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        await save_user(session, user)
    return user
