"""Shared FastAPI dependencies."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from db import get_session
from models import User
from services.auth import get_user_by_id, resolve_session
from services.errors import AuthenticationInvalid
from services.mailer import NotificationSender, get_notification_sender

logger = logging.getLogger(__name__)


async def get_db() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


async def get_current_user(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_db),
) -> User:
    """Run the session gate and load the caller's account."""
    gate = resolve_session(request, response)
    user = await get_user_by_id(session, gate.user_id)
    if user is None:
        logger.info("Token subject has no account", extra={"user_id": gate.user_id})
        raise AuthenticationInvalid()
    return user


def get_sender() -> NotificationSender:
    return get_notification_sender()
