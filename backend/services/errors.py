"""Domain errors rendered directly as HTTP responses.

Each error carries its status and default detail, so services can raise
them and FastAPI's ``HTTPException`` handling turns them into
``{"detail": ...}`` bodies without per-route translation.
"""

from __future__ import annotations

from typing import ClassVar

from fastapi import HTTPException, status


class DomainError(HTTPException):
    status_code_default: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail_default: ClassVar[str] = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(
            status_code=self.status_code_default,
            detail=detail or self.detail_default,
        )


# Authentication


class AuthenticationMissing(DomainError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    detail_default = "Access and refresh token missing"


class SessionExpired(DomainError):
    status_code_default = status.HTTP_403_FORBIDDEN
    detail_default = "Session expired. Please login again."


class AuthenticationInvalid(DomainError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    detail_default = "Invalid access token"


# Request shape


class ValidationFailed(DomainError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    detail_default = "Invalid request"


class SelfFriendshipError(ValidationFailed):
    detail_default = "Cannot befriend yourself"


class InviteTokenInvalid(ValidationFailed):
    detail_default = "Invalid or expired invite token"


class InviteTokenMalformed(ValidationFailed):
    detail_default = "Malformed invite token"


# Conflicts


class Conflict(DomainError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    detail_default = "Conflict"


class InviteTokenAlreadyUsed(Conflict):
    detail_default = "Invite token already used"


class EmailAlreadyRegistered(Conflict):
    status_code_default = status.HTTP_409_CONFLICT
    detail_default = "User with that email already exists"


# Authorization


class InviteEmailMismatch(DomainError):
    status_code_default = status.HTTP_403_FORBIDDEN
    detail_default = "This invitation was not issued for your account"


# Missing entities


class NotFound(DomainError):
    status_code_default = status.HTTP_404_NOT_FOUND
    detail_default = "Not found"


class UserNotFound(NotFound):
    detail_default = "User not found"


class InviterNotFound(NotFound):
    detail_default = "Inviter not found"


class InviteTokenNotFound(NotFound):
    detail_default = "Invite token not recognized"


# Upstream failures


class IdentityProviderError(DomainError):
    status_code_default = status.HTTP_502_BAD_GATEWAY
    detail_default = "Federated login failed"


class NotificationDeliveryError(DomainError):
    status_code_default = status.HTTP_502_BAD_GATEWAY
    detail_default = "Failed to deliver message"
