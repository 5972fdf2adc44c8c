"""Directed friend membership entry; an undirected friendship is two rows."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String, func
from sqlmodel import Field, SQLModel


class Friendship(SQLModel, table=True):
    """Represents ``user_id`` listing ``friend_id`` among its friends."""

    __tablename__ = "friendships"
    __table_args__ = (
        CheckConstraint("user_id <> friend_id", name="ck_friendships_no_self_edge"),
        Index("ix_friendships_friend_user", "friend_id", "user_id"),
    )

    user_id: str = Field(
        sa_column=Column(
            String(36),
            ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    friend_id: str = Field(
        sa_column=Column(
            String(36),
            ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        )
    )
    created_at: datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            nullable=False,
        )
    )
