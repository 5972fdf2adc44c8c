"""SQLModel models package."""

from .friendship import Friendship
from .invite import Invite
from .password_reset_token import PasswordResetToken
from .user import User

__all__ = [
    "User",
    "Friendship",
    "Invite",
    "PasswordResetToken",
]
