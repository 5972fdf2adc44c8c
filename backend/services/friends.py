"""Bidirectional friend relation stored as two directed membership rows.

``connect`` and ``disconnect`` issue one independent, idempotent write per
direction. There is no enclosing transaction, so a concurrent reader can
briefly observe an asymmetric pair until the second write lands; the stable
end state is symmetric. ``repair_asymmetric_edges`` reconciles leftovers
from writes that failed halfway.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar, cast, overload

from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from sqlalchemy.sql import ColumnElement

from db.errors import is_check_violation, is_unique_violation
from models import Friendship, User

from .errors import SelfFriendshipError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _eq(column: Any, value: Any) -> ColumnElement[bool]:
    return cast(ColumnElement[bool], column == value)


@dataclass(slots=True)
class RepairReport:
    added: int = 0
    removed: int = 0


async def _has_edge(session: AsyncSession, *, user_id: str, friend_id: str) -> bool:
    result = await session.execute(
        select(Friendship).where(
            _eq(Friendship.user_id, user_id),
            _eq(Friendship.friend_id, friend_id),
        )
    )
    return result.scalar_one_or_none() is not None


async def _add_edge(session: AsyncSession, *, user_id: str, friend_id: str) -> bool:
    if await _has_edge(session, user_id=user_id, friend_id=friend_id):
        return False

    session.add(Friendship(user_id=user_id, friend_id=friend_id))
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        if is_unique_violation(exc):
            return False
        if is_check_violation(exc):
            raise SelfFriendshipError() from exc
        raise
    return True


async def _remove_edge(session: AsyncSession, *, user_id: str, friend_id: str) -> bool:
    result = await session.execute(
        delete(Friendship).where(
            _eq(Friendship.user_id, user_id),
            _eq(Friendship.friend_id, friend_id),
        )
    )
    await session.commit()
    return (cast(Any, result).rowcount or 0) > 0


async def connect(session: AsyncSession, first_user_id: str, second_user_id: str) -> bool:
    """Add each direction of the pair; True when at least one row was written."""
    if first_user_id == second_user_id:
        raise SelfFriendshipError()

    added_forward = await _add_edge(session, user_id=first_user_id, friend_id=second_user_id)
    added_reverse = await _add_edge(session, user_id=second_user_id, friend_id=first_user_id)
    if added_forward or added_reverse:
        logger.info(
            "Friendship connected",
            extra={"user_id": first_user_id, "friend_id": second_user_id},
        )
    return added_forward or added_reverse


async def disconnect(session: AsyncSession, first_user_id: str, second_user_id: str) -> bool:
    """Remove each direction of the pair; True when at least one row was removed."""
    if first_user_id == second_user_id:
        raise SelfFriendshipError("Cannot remove yourself")

    removed_forward = await _remove_edge(session, user_id=first_user_id, friend_id=second_user_id)
    removed_reverse = await _remove_edge(session, user_id=second_user_id, friend_id=first_user_id)
    if removed_forward or removed_reverse:
        logger.info(
            "Friendship removed",
            extra={"user_id": first_user_id, "friend_id": second_user_id},
        )
    return removed_forward or removed_reverse


async def are_connected(session: AsyncSession, first_user_id: str, second_user_id: str) -> bool:
    result = await session.execute(
        select(func.count()).select_from(Friendship).where(
            or_(
                and_(
                    _eq(Friendship.user_id, first_user_id),
                    _eq(Friendship.friend_id, second_user_id),
                ),
                and_(
                    _eq(Friendship.user_id, second_user_id),
                    _eq(Friendship.friend_id, first_user_id),
                ),
            )
        )
    )
    return int(result.scalar_one()) == 2


@overload
async def list_friends(session: AsyncSession, user_id: str) -> list[User]: ...


@overload
async def list_friends(
    session: AsyncSession,
    user_id: str,
    projection: Callable[[User], T],
) -> list[T]: ...


async def list_friends(
    session: AsyncSession,
    user_id: str,
    projection: Callable[[User], Any] | None = None,
) -> list[Any]:
    """Return the users ``user_id`` lists as friends, optionally projected."""
    result = await session.execute(
        select(User)
        .join(Friendship, _eq(Friendship.friend_id, User.id))
        .where(_eq(Friendship.user_id, user_id))
        .order_by(User.name, User.email)
    )
    friends = list(result.scalars().all())
    if projection is None:
        return friends
    return [projection(friend) for friend in friends]


async def repair_asymmetric_edges(session: AsyncSession) -> RepairReport:
    """Drop edges to missing users and add every missing reverse edge."""
    report = RepairReport()

    known_user = select(User.id)
    dangling = await session.execute(
        delete(Friendship).where(
            or_(
                cast(Any, Friendship.user_id).not_in(known_user),
                cast(Any, Friendship.friend_id).not_in(known_user),
            )
        )
    )
    report.removed = cast(Any, dangling).rowcount or 0
    await session.commit()

    reverse = aliased(Friendship)
    reverse_exists = exists(
        select(1).where(
            _eq(reverse.user_id, Friendship.friend_id),
            _eq(reverse.friend_id, Friendship.user_id),
        )
    )
    one_way = await session.execute(
        select(Friendship.user_id, Friendship.friend_id).where(~reverse_exists)
    )
    for user_id, friend_id in one_way.all():
        if await _add_edge(session, user_id=friend_id, friend_id=user_id):
            report.added += 1

    if report.added or report.removed:
        logger.info(
            "Repaired friendship edges",
            extra={"added": report.added, "removed": report.removed},
        )
    return report
