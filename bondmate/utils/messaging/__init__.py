"""Messaging utilities (push notifications, real-time events)."""

from .push import (
    PushDeliveryError,
    PushMessage,
    WebPushTransport,
    validate_subscription,
)
from .realtime import hub, emit_to_user

__all__ = [
    "PushDeliveryError",
    "PushMessage",
    "WebPushTransport",
    "validate_subscription",
    "hub",
    "emit_to_user",
]
