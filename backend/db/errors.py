"""Database error helpers."""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

UNIQUE_VIOLATION_SQLSTATE = "23505"
CHECK_VIOLATION_SQLSTATE = "23514"


def _sqlstate(error: IntegrityError) -> str | None:
    original = getattr(error, "orig", None)
    return getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)


def _message(error: IntegrityError) -> str:
    return str(getattr(error, "orig", None) or error).lower()


def is_unique_violation(error: IntegrityError) -> bool:
    """Return True when the IntegrityError indicates a unique-constraint conflict.

    Postgres reports a sqlstate; SQLite only exposes the message text.
    """
    if _sqlstate(error) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    message = _message(error)
    return "duplicate key" in message or "unique constraint" in message


def is_check_violation(error: IntegrityError) -> bool:
    """Return True when the IntegrityError comes from a CHECK constraint."""
    if _sqlstate(error) == CHECK_VIOLATION_SQLSTATE:
        return True
    return "check constraint" in _message(error)


__all__ = ["is_check_violation", "is_unique_violation"]
