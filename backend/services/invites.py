"""Invitation tokens, single-use redemption and batch sending."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, cast
from urllib.parse import urlencode

from fastapi import HTTPException
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from core import TokenError, create_invite_token, settings, verify_invite_token
from models import Invite, User

from .auth.identity import get_user_by_email, normalize_email
from .errors import (
    InviteEmailMismatch,
    InviterNotFound,
    InviteTokenAlreadyUsed,
    InviteTokenInvalid,
    InviteTokenMalformed,
    InviteTokenNotFound,
    ValidationFailed,
)
from .friends import connect
from .mailer import NotificationSender, render_invite_message

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")
RECIPIENT_SEPARATORS = re.compile(r"[,;\s]+")
DEFAULT_SENDER_NAME = "Someone"
PRUNE_BATCH_SIZE = 500

InviteStatus = Literal["sent", "invalid", "failed"]


def _eq(column: Any, value: Any) -> ColumnElement[bool]:
    return cast(ColumnElement[bool], column == value)


@dataclass(frozen=True, slots=True)
class CreatedInvite:
    token: str
    url: str


@dataclass(frozen=True, slots=True)
class InviteClaims:
    invited_email: str
    invited_by: str


@dataclass(slots=True)
class InviteOutcome:
    to: str
    status: InviteStatus
    error: str | None = None
    message_id: str | None = None


def is_probable_email(value: str) -> bool:
    return EMAIL_PATTERN.fullmatch(value.strip()) is not None


def build_invite_url(token: str, inviter_name: str) -> str:
    query = urlencode({"token": token, "inviter": inviter_name})
    return f"{settings.frontend_url}/accept-invite?{query}"


def _flatten(value: Any) -> Iterator[Any]:
    if value is None:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            yield from _flatten(item)
        return
    yield value


def parse_recipients(raw: str | Sequence[Any]) -> list[str]:
    """Normalize a delimited string or a nested list into unique addresses."""
    if isinstance(raw, str):
        candidates: list[Any] = RECIPIENT_SEPARATORS.split(raw)
    elif isinstance(raw, (list, tuple)):
        candidates = list(_flatten(raw))
    else:
        raise ValidationFailed("`emails` must be an array or a string")

    normalized = (
        normalize_email(candidate) if isinstance(candidate, str) else str(candidate).strip()
        for candidate in candidates
    )
    return list(dict.fromkeys(value for value in normalized if value))


def claims_from_payload(payload: dict[str, Any]) -> InviteClaims | None:
    invited_email = payload.get("invited_email")
    invited_by = payload.get("invited_by")
    if not isinstance(invited_email, str) or not invited_email:
        return None
    if not isinstance(invited_by, str) or not invited_by:
        return None
    return InviteClaims(
        invited_email=normalize_email(invited_email),
        invited_by=normalize_email(invited_by),
    )


def read_invite_claims(token: str) -> InviteClaims:
    try:
        payload = verify_invite_token(token)
    except TokenError as exc:
        raise InviteTokenInvalid() from exc
    claims = claims_from_payload(payload)
    if claims is None:
        raise InviteTokenMalformed()
    return claims


async def create_invite(
    session: AsyncSession,
    *,
    inviter_email: str,
    invitee_email: str,
    inviter_name: str,
    commit: bool = True,
) -> CreatedInvite:
    token = create_invite_token(normalize_email(invitee_email), normalize_email(inviter_email))
    session.add(Invite(token=token))
    if commit:
        await session.commit()
    return CreatedInvite(token=token, url=build_invite_url(token, inviter_name))


async def get_invite_by_token(session: AsyncSession, token: str) -> Invite | None:
    result = await session.execute(select(Invite).where(_eq(Invite.token, token)))
    return result.scalar_one_or_none()


async def list_pending_invites(session: AsyncSession) -> list[Invite]:
    result = await session.execute(
        select(Invite).where(_eq(Invite.used, False)).order_by(Invite.created_at, Invite.id)
    )
    return list(result.scalars().all())


async def prune_expired_invites(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int = PRUNE_BATCH_SIZE,
) -> int:
    """Delete unused invites whose tokens can no longer verify."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(
        minutes=settings.invite_token_expire_minutes
    )
    created_at_column = cast(Any, Invite.created_at)
    id_column = cast(Any, Invite.id)
    deleted = 0

    while True:
        result = await session.execute(
            select(id_column)
            .where(
                _eq(Invite.used, False),
                cast(ColumnElement[bool], created_at_column < cutoff),
            )
            .order_by(id_column)
            .limit(batch_size)
        )
        invite_ids = list(result.scalars().all())
        if not invite_ids:
            break
        await session.execute(delete(Invite).where(id_column.in_(invite_ids)))
        await session.commit()
        deleted += len(invite_ids)
        if len(invite_ids) < batch_size:
            break

    return deleted


async def accept_invite(
    session: AsyncSession,
    invite: Invite,
    *,
    inviter_id: str,
    invitee_id: str,
) -> None:
    """Connect the pair, then mark the invite consumed."""
    await connect(session, inviter_id, invitee_id)
    invite.used = True
    invite.used_at = datetime.now(timezone.utc)
    session.add(invite)
    await session.commit()


async def consume_invite(session: AsyncSession, token: str, current_user: User) -> User:
    """Redeem ``token`` for ``current_user`` and return the inviter."""
    invite = await get_invite_by_token(session, token)
    if invite is None:
        raise InviteTokenNotFound()
    if invite.used:
        raise InviteTokenAlreadyUsed()

    claims = read_invite_claims(token)
    if claims.invited_email != normalize_email(current_user.email):
        logger.warning(
            "Invite redemption rejected for non-addressee",
            extra={"invite_id": invite.id, "user_id": current_user.id},
        )
        raise InviteEmailMismatch()

    inviter = await get_user_by_email(session, claims.invited_by)
    if inviter is None:
        raise InviterNotFound()

    await accept_invite(
        session,
        invite,
        inviter_id=inviter.id,
        invitee_id=current_user.id,
    )
    logger.info(
        "Invite accepted",
        extra={"invite_id": invite.id, "inviter_id": inviter.id, "user_id": current_user.id},
    )
    return inviter


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    return str(exc) or type(exc).__name__


async def _dispatch(
    sender: NotificationSender,
    recipient: str,
    *,
    subject: str,
    body: str,
) -> InviteOutcome:
    try:
        receipt = await sender.send(recipient, subject, body)
    except Exception as exc:
        logger.warning(
            "Invite delivery failed",
            extra={"recipient": recipient},
            exc_info=exc,
        )
        return InviteOutcome(to=recipient, status="failed", error=_describe_failure(exc))
    return InviteOutcome(to=recipient, status="sent", message_id=receipt.message_id)


async def invite_many(
    session: AsyncSession,
    sender: NotificationSender,
    *,
    inviter: User,
    raw_recipients: str | Sequence[Any],
    max_recipients: int | None = None,
) -> list[InviteOutcome]:
    """Mint, persist and deliver one invite per address.

    Invalid addresses are reported but never sent. Deliveries run
    concurrently and are all awaited; one failure does not affect others.
    """
    limit = settings.max_invite_recipients if max_recipients is None else max_recipients
    recipients = parse_recipients(raw_recipients)
    if not recipients:
        raise ValidationFailed("No valid recipients")
    if len(recipients) > limit:
        raise ValidationFailed(f"Too many recipients. Max {limit} allowed.")

    inviter_email = normalize_email(inviter.email)
    inviter_name = inviter.name or DEFAULT_SENDER_NAME
    outcomes: list[InviteOutcome | None] = [None] * len(recipients)
    pending: list[tuple[int, str, CreatedInvite]] = []

    for index, recipient in enumerate(recipients):
        if not is_probable_email(recipient):
            outcomes[index] = InviteOutcome(to=recipient, status="invalid", error="Invalid email format")
            continue
        if recipient == inviter_email:
            outcomes[index] = InviteOutcome(to=recipient, status="invalid", error="Cannot invite yourself")
            continue
        created = await create_invite(
            session,
            inviter_email=inviter_email,
            invitee_email=recipient,
            inviter_name=inviter_name,
            commit=False,
        )
        pending.append((index, recipient, created))

    if pending:
        await session.commit()

    deliveries = []
    for _index, recipient, created in pending:
        subject, body = render_invite_message(
            sender_name=inviter_name,
            sender_email=inviter_email,
            invite_url=created.url,
        )
        deliveries.append(_dispatch(sender, recipient, subject=subject, body=body))

    delivered = await asyncio.gather(*deliveries)
    for (index, _recipient, _created), outcome in zip(pending, delivered):
        outcomes[index] = outcome

    logger.info(
        "Invitations processed",
        extra={
            "inviter_id": inviter.id,
            "sent": sum(1 for outcome in delivered if outcome.status == "sent"),
            "failed": sum(1 for outcome in delivered if outcome.status == "failed"),
            "invalid": len(recipients) - len(pending),
        },
    )
    return [outcome for outcome in outcomes if outcome is not None]
