"""Tests for invitation minting, redemption and batch sending."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core import create_invite_token, verify_invite_token
from core.config import settings
from models import Invite
from services import DeliveryReceipt
from services.errors import (
    InviteEmailMismatch,
    InviterNotFound,
    InviteTokenAlreadyUsed,
    InviteTokenInvalid,
    InviteTokenMalformed,
    InviteTokenNotFound,
    ValidationFailed,
)
from services.friends import are_connected
from services.invites import (
    build_invite_url,
    consume_invite,
    create_invite,
    get_invite_by_token,
    invite_many,
    parse_recipients,
    prune_expired_invites,
)


async def _store_token(session: AsyncSession, token: str) -> None:
    session.add(Invite(token=token))
    await session.commit()


# Recipient parsing


def test_parse_recipients_splits_delimited_string() -> None:
    raw = " Ann@Example.com, bob@example.com;carol@example.com\n dave@example.com  "

    assert parse_recipients(raw) == [
        "ann@example.com",
        "bob@example.com",
        "carol@example.com",
        "dave@example.com",
    ]


def test_parse_recipients_flattens_nested_lists_and_deduplicates() -> None:
    raw = ["a@x.com", ["B@x.com ", ["a@x.com", ""]], "  ", "b@x.com"]

    assert parse_recipients(raw) == ["a@x.com", "b@x.com"]


def test_parse_recipients_rejects_other_shapes() -> None:
    with pytest.raises(ValidationFailed):
        parse_recipients(42)  # type: ignore[arg-type]


def test_invite_url_carries_token_and_inviter_name() -> None:
    url = build_invite_url("tok.en", "Ada Lovelace")
    parts = urlsplit(url)

    assert f"{parts.scheme}://{parts.netloc}" == settings.frontend_url
    assert parts.path == "/accept-invite"
    assert parse_qs(parts.query) == {"token": ["tok.en"], "inviter": ["Ada Lovelace"]}


# Minting and redemption


@pytest.mark.asyncio
async def test_create_invite_persists_unused_record(db_session: AsyncSession) -> None:
    created = await create_invite(
        db_session,
        inviter_email="Owner@Example.com",
        invitee_email="Friend@Example.com",
        inviter_name="Owner",
    )

    invite = await get_invite_by_token(db_session, created.token)
    assert invite is not None
    assert invite.used is False
    claims = verify_invite_token(created.token)
    assert claims["invited_email"] == "friend@example.com"
    assert claims["invited_by"] == "owner@example.com"
    assert created.url == build_invite_url(created.token, "Owner")


@pytest.mark.asyncio
async def test_consume_invite_connects_pair_and_marks_used(
    db_session: AsyncSession, make_user
) -> None:
    owner = await make_user("owner@example.com", "Owner")
    friend = await make_user("friend@example.com", "Friend")
    created = await create_invite(
        db_session,
        inviter_email=owner.email,
        invitee_email=friend.email,
        inviter_name=owner.name,
    )

    inviter = await consume_invite(db_session, created.token, friend)

    assert inviter.id == owner.id
    assert await are_connected(db_session, owner.id, friend.id)
    invite = await get_invite_by_token(db_session, created.token)
    assert invite is not None
    assert invite.used is True
    assert invite.used_at is not None


@pytest.mark.asyncio
async def test_consume_invite_twice_is_already_used(
    db_session: AsyncSession, make_user
) -> None:
    owner = await make_user("owner@example.com", "Owner")
    friend = await make_user("friend@example.com", "Friend")
    created = await create_invite(
        db_session,
        inviter_email=owner.email,
        invitee_email=friend.email,
        inviter_name=owner.name,
    )
    await consume_invite(db_session, created.token, friend)

    with pytest.raises(InviteTokenAlreadyUsed) as exc_info:
        await consume_invite(db_session, created.token, friend)

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_consume_invite_by_other_user_is_email_mismatch(
    db_session: AsyncSession, make_user
) -> None:
    owner = await make_user("owner@example.com", "Owner")
    await make_user("friend@example.com", "Friend")
    intruder = await make_user("intruder@example.com", "Intruder")
    created = await create_invite(
        db_session,
        inviter_email=owner.email,
        invitee_email="friend@example.com",
        inviter_name=owner.name,
    )

    with pytest.raises(InviteEmailMismatch) as exc_info:
        await consume_invite(db_session, created.token, intruder)

    assert exc_info.value.status_code == 403
    assert not await are_connected(db_session, owner.id, intruder.id)
    invite = await get_invite_by_token(db_session, created.token)
    assert invite is not None and invite.used is False


@pytest.mark.asyncio
async def test_consume_unknown_token_is_not_found(db_session: AsyncSession, make_user) -> None:
    friend = await make_user("friend@example.com")
    token = create_invite_token("friend@example.com", "owner@example.com")

    with pytest.raises(InviteTokenNotFound) as exc_info:
        await consume_invite(db_session, token, friend)

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_consume_expired_token_is_invalid(db_session: AsyncSession, make_user) -> None:
    await make_user("owner@example.com")
    friend = await make_user("friend@example.com")
    token = create_invite_token(
        "friend@example.com",
        "owner@example.com",
        now=datetime.now(timezone.utc) - timedelta(days=30),
    )
    await _store_token(db_session, token)

    with pytest.raises(InviteTokenInvalid):
        await consume_invite(db_session, token, friend)


@pytest.mark.asyncio
async def test_used_check_precedes_signature_check(
    db_session: AsyncSession, make_user
) -> None:
    friend = await make_user("friend@example.com")
    token = create_invite_token(
        "friend@example.com",
        "owner@example.com",
        now=datetime.now(timezone.utc) - timedelta(days=30),
    )
    db_session.add(Invite(token=token, used=True))
    await db_session.commit()

    with pytest.raises(InviteTokenAlreadyUsed):
        await consume_invite(db_session, token, friend)


@pytest.mark.asyncio
async def test_consume_token_missing_claims_is_malformed(
    db_session: AsyncSession, make_user
) -> None:
    friend = await make_user("friend@example.com")
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "type": "invite",
            "invited_email": "friend@example.com",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
        },
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    await _store_token(db_session, token)

    with pytest.raises(InviteTokenMalformed):
        await consume_invite(db_session, token, friend)


@pytest.mark.asyncio
async def test_consume_invite_from_deleted_inviter_is_not_found(
    db_session: AsyncSession, make_user
) -> None:
    friend = await make_user("friend@example.com")
    token = create_invite_token("friend@example.com", "gone@example.com")
    await _store_token(db_session, token)

    with pytest.raises(InviterNotFound) as exc_info:
        await consume_invite(db_session, token, friend)

    assert exc_info.value.status_code == 404


# Batch sending


@pytest.mark.asyncio
async def test_invite_many_skips_invalid_and_duplicate_addresses(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com", "Owner")

    outcomes = await invite_many(
        db_session,
        sender,
        inviter=owner,
        raw_recipients=["a@x.com", "not-an-email", "a@x.com"],
    )

    assert [(outcome.to, outcome.status) for outcome in outcomes] == [
        ("a@x.com", "sent"),
        ("not-an-email", "invalid"),
    ]
    assert outcomes[0].message_id == sender.sent[0].message_id
    assert sender.recipients() == ["a@x.com"]
    invites = (await db_session.execute(select(Invite))).scalars().all()
    assert len(invites) == 1


@pytest.mark.asyncio
async def test_invite_many_isolates_delivery_failures(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com", "Owner")
    sender.fail_for.add("broken@x.com")

    outcomes = await invite_many(
        db_session,
        sender,
        inviter=owner,
        raw_recipients="good@x.com, broken@x.com; other@x.com",
    )

    statuses = {outcome.to: outcome.status for outcome in outcomes}
    assert statuses == {"good@x.com": "sent", "broken@x.com": "failed", "other@x.com": "sent"}
    failed = next(outcome for outcome in outcomes if outcome.status == "failed")
    assert failed.error == "Failed to deliver message to broken@x.com"
    assert sorted(sender.recipients()) == ["good@x.com", "other@x.com"]


@pytest.mark.asyncio
async def test_invite_many_mints_a_distinct_token_per_recipient(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com", "Owner")

    await invite_many(db_session, sender, inviter=owner, raw_recipients="a@x.com b@x.com")

    tokens = (await db_session.execute(select(Invite.token))).scalars().all()
    addressees = sorted(verify_invite_token(token)["invited_email"] for token in tokens)
    assert addressees == ["a@x.com", "b@x.com"]
    assert all("/accept-invite?token=" in message.body for message in sender.sent)
    assert all(message.subject == "Owner invited you to join BugSnap" for message in sender.sent)


@pytest.mark.asyncio
async def test_invite_many_marks_own_address_invalid(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com", "Owner")

    outcomes = await invite_many(
        db_session,
        sender,
        inviter=owner,
        raw_recipients=["OWNER@example.com"],
    )

    assert outcomes[0].status == "invalid"
    assert sender.sent == []


@pytest.mark.asyncio
async def test_invite_many_requires_recipients(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com")

    with pytest.raises(ValidationFailed):
        await invite_many(db_session, sender, inviter=owner, raw_recipients=" , ; ")


@pytest.mark.asyncio
async def test_invite_many_enforces_recipient_cap(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com")
    recipients = [f"user{index}@x.com" for index in range(4)]

    with pytest.raises(ValidationFailed) as exc_info:
        await invite_many(
            db_session,
            sender,
            inviter=owner,
            raw_recipients=recipients,
            max_recipients=3,
        )

    assert exc_info.value.detail == "Too many recipients. Max 3 allowed."
    assert sender.sent == []


@pytest.mark.asyncio
async def test_invite_many_with_zero_cap_rejects_any_recipient(
    db_session: AsyncSession, make_user, sender
) -> None:
    owner = await make_user("owner@example.com")

    with pytest.raises(ValidationFailed) as exc_info:
        await invite_many(
            db_session,
            sender,
            inviter=owner,
            raw_recipients="a@x.com",
            max_recipients=0,
        )

    assert exc_info.value.detail == "Too many recipients. Max 0 allowed."
    assert sender.sent == []


class SlowSender:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.in_flight = 0
        self.peak_in_flight = 0

    async def send(self, recipient: str, subject: str, body: str) -> DeliveryReceipt:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return DeliveryReceipt(message_id=f"<{recipient}>")


@pytest.mark.asyncio
async def test_invite_many_delivers_concurrently(db_session: AsyncSession, make_user) -> None:
    owner = await make_user("owner@example.com", "Owner")
    slow = SlowSender(delay=0.3)
    recipients = [f"user{index}@x.com" for index in range(5)]

    started = time.perf_counter()
    outcomes = await invite_many(db_session, slow, inviter=owner, raw_recipients=recipients)
    elapsed = time.perf_counter() - started

    assert [outcome.status for outcome in outcomes] == ["sent"] * 5
    assert slow.peak_in_flight == 5
    assert elapsed < 1.0


# Pruning


@pytest.mark.asyncio
async def test_prune_expired_invites_keeps_fresh_and_used_records(
    db_session: AsyncSession,
) -> None:
    stale_time = datetime.now(timezone.utc) - timedelta(
        minutes=settings.invite_token_expire_minutes + 60
    )
    db_session.add(Invite(token="stale-unused", created_at=stale_time))
    db_session.add(Invite(token="stale-used", used=True, created_at=stale_time))
    db_session.add(Invite(token="fresh-unused"))
    await db_session.commit()

    deleted = await prune_expired_invites(db_session, batch_size=1)

    assert deleted == 1
    remaining = (await db_session.execute(select(Invite.token))).scalars().all()
    assert sorted(remaining) == ["fresh-unused", "stale-used"]
