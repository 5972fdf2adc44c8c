"""Friend list, invitation and direct message endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, get_sender
from models import User
from services.auth import get_user_by_email, normalize_email
from services.errors import SelfFriendshipError, UserNotFound
from services.friends import disconnect, list_friends
from services.invites import consume_invite, invite_many
from services.mailer import NotificationSender, render_direct_message

router = APIRouter(prefix="/people", tags=["people"])


class FriendResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    image_url: str | None = None


class FriendListResponse(BaseModel):
    count: int
    people: list[FriendResponse]


class InviteRequest(BaseModel):
    emails: str | list[Any]


class InviteResult(BaseModel):
    to: str
    status: str
    error: str | None = None
    message_id: str | None = None


class InviteResponse(BaseModel):
    message: str
    results: list[InviteResult]


class AcceptInviteRequest(BaseModel):
    token: str = Field(min_length=1)


class AcceptInviteResponse(BaseModel):
    message: str
    friend: FriendResponse


class RemoveFriendRequest(BaseModel):
    # Matches stored addresses, which need not pass EmailStr.
    email: str = Field(min_length=3, max_length=255)


class DirectMessageRequest(BaseModel):
    email: EmailStr
    subject: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=10_000)


class DirectMessageResponse(BaseModel):
    message: str
    message_id: str


@router.get("", response_model=FriendListResponse)
async def get_people(
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
) -> FriendListResponse:
    people = await list_friends(session, current_user.id, FriendResponse.model_validate)
    return FriendListResponse(count=len(people), people=people)


@router.post("/invite", response_model=InviteResponse)
async def send_invites(
    payload: InviteRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_sender),
) -> InviteResponse:
    outcomes = await invite_many(
        session,
        sender,
        inviter=current_user,
        raw_recipients=payload.emails,
    )
    sent = sum(1 for outcome in outcomes if outcome.status == "sent")
    return InviteResponse(
        message=f"Invitations processed: {sent} of {len(outcomes)} sent",
        results=[
            InviteResult(
                to=outcome.to,
                status=outcome.status,
                error=outcome.error,
                message_id=outcome.message_id,
            )
            for outcome in outcomes
        ],
    )


@router.patch("/accept", response_model=AcceptInviteResponse)
async def accept_invite(
    payload: AcceptInviteRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
) -> AcceptInviteResponse:
    inviter = await consume_invite(session, payload.token.strip(), current_user)
    return AcceptInviteResponse(
        message="Friend added",
        friend=FriendResponse.model_validate(inviter),
    )


@router.delete("", status_code=status.HTTP_200_OK)
async def remove_friend(
    payload: RemoveFriendRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    current_user_id = current_user.id
    if normalize_email(str(payload.email)) == normalize_email(current_user.email):
        raise SelfFriendshipError("Cannot remove yourself")

    friend = await get_user_by_email(session, str(payload.email))
    if friend is None:
        raise UserNotFound()

    removed = await disconnect(session, current_user_id, friend.id)
    return {"message": "Friend removed", "removed": removed}


@router.post("/message", response_model=DirectMessageResponse)
async def send_direct_message(
    payload: DirectMessageRequest,
    current_user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
    sender: NotificationSender = Depends(get_sender),
) -> DirectMessageResponse:
    recipient_email = normalize_email(str(payload.email))
    recipient = await get_user_by_email(session, recipient_email)
    recipient_name = recipient.name if recipient is not None else recipient_email.split("@")[0]

    body = render_direct_message(
        sender_name=current_user.name,
        sender_email=current_user.email,
        recipient_name=recipient_name,
        message=payload.message,
    )
    receipt = await sender.send(recipient_email, payload.subject.strip(), body)
    return DirectMessageResponse(
        message=f"Message sent to {recipient_email}",
        message_id=receipt.message_id,
    )
