"""Persisted invitation token state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Text, func, text
from sqlmodel import Field, SQLModel


class Invite(SQLModel, table=True):
    """Single-use record for a signed invite token.

    The addressee and inviter live inside the signed token; this row only
    tracks whether the token has been redeemed.
    """

    __tablename__ = "invites"
    __table_args__ = (Index("ix_invites_used_created_at", "used", "created_at"),)

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    token: str = Field(sa_column=Column(Text, unique=True, nullable=False))
    used: bool = Field(
        default=False,
        sa_column=Column(
            Boolean,
            nullable=False,
            server_default=text("false"),
        ),
    )
    used_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            nullable=False,
        )
    )
