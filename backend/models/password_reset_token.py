"""Password reset token model."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, func
from sqlmodel import Field, SQLModel


class PasswordResetToken(SQLModel, table=True):
    """Hashed single-use secret mailed to an account owner."""

    __tablename__ = "password_reset_tokens"

    id: int | None = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True),
    )
    email: str = Field(sa_column=Column(String(255), nullable=False, index=True))
    token_hash: str = Field(
        sa_column=Column(String(64), unique=True, nullable=False)
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    created_at: datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            nullable=False,
        )
    )
