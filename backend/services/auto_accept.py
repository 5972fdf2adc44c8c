"""Redeem outstanding invites addressed to a user on their first login."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from core import TokenError, verify_invite_token
from models import User

from .auth.identity import get_user_by_email, normalize_email
from .friends import are_connected
from .invites import accept_invite, claims_from_payload, list_pending_invites

logger = logging.getLogger(__name__)


async def sweep(session: AsyncSession, new_user: User) -> int:
    """Accept every unused invite addressed to ``new_user``.

    Tokens that fail verification are skipped, as are invites from inviters
    that no longer exist. When the pair is already connected the invite is
    left untouched. Returns how many invites were accepted.
    """
    new_user_id = new_user.id
    new_user_email = normalize_email(new_user.email)
    accepted = 0

    for invite in await list_pending_invites(session):
        try:
            payload = verify_invite_token(invite.token)
        except TokenError:
            continue
        claims = claims_from_payload(payload)
        if claims is None or claims.invited_email != new_user_email:
            continue

        inviter = await get_user_by_email(session, claims.invited_by)
        if inviter is None or inviter.id == new_user_id:
            continue
        inviter_id = inviter.id
        if await are_connected(session, inviter_id, new_user_id):
            continue

        await accept_invite(session, invite, inviter_id=inviter_id, invitee_id=new_user_id)
        accepted += 1

    if accepted:
        logger.info(
            "Auto-accepted pending invites",
            extra={"user_id": new_user_id, "accepted": accepted},
        )
    return accepted
