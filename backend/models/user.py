"""User domain model."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """Identity created by password signup or first federated login."""

    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), sa_column=Column(String(36), primary_key=True))
    email: str = Field(
        sa_column=Column(String(255), unique=True, nullable=False, index=True)
    )
    name: str = Field(
        sa_column=Column(String(80), nullable=False)
    )
    # Accounts created through an identity provider have no local password.
    password_hash: str | None = Field(
        default=None, sa_column=Column(String(255), nullable=True)
    )
    image_url: str | None = Field(
        default=None, sa_column=Column(String(1024), nullable=True)
    )
    created_at: datetime = Field(
        sa_column=Column(
            DateTime(timezone=True), server_default=func.now(), nullable=False
        )
    )
    updated_at: datetime = Field(
        sa_column=Column(
            DateTime(timezone=True),
            server_default=func.now(),
            onupdate=func.now(),
            nullable=False,
        )
    )
