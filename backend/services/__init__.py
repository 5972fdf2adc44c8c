"""Business logic services."""

from .mailer import (
    DeliveryReceipt,
    LoggingNotificationSender,
    NotificationSender,
    SmtpNotificationSender,
    get_notification_sender,
    set_notification_sender,
)
from .rate_limiter import (
    RateLimitMiddleware,
    RateLimiter,
    get_rate_limiter,
    set_rate_limiter,
)

__all__ = [
    "DeliveryReceipt",
    "NotificationSender",
    "SmtpNotificationSender",
    "LoggingNotificationSender",
    "get_notification_sender",
    "set_notification_sender",
    "RateLimiter",
    "RateLimitMiddleware",
    "get_rate_limiter",
    "set_rate_limiter",
]
