import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

import requests
from pywebpush import webpush, WebPushException

from bondmate.core.config import settings

log = logging.getLogger(__name__)

# Failure codes reported by push transports
NO_PUSH_TOKEN = "no_push_token"
INVALID_PUSH_TOKEN = "invalid_push_token"
TOKEN_INVALID = "token_invalid"
NETWORK = "network"
SERVER_UNAVAILABLE = "server_unavailable"
INTERNAL = "internal"
REJECTED = "rejected"
NOT_CONFIGURED = "not_configured"

RETRYABLE_CODES = frozenset({TOKEN_INVALID, NETWORK, SERVER_UNAVAILABLE, INTERNAL})


class PushDeliveryError(Exception):
    def __init__(self, code: str, message: str = "", status_code: int | None = None):
        super().__init__(message or code)
        self.code = code
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES


@dataclass
class PushMessage:
    title: str
    body: str
    data: dict = field(default_factory=dict)


class PushTransport(Protocol):
    async def send(self, subscription: dict, message: PushMessage) -> str:
        """Deliver ``message`` and return a delivery id, or raise ``PushDeliveryError``."""


def validate_subscription(subscription: dict | None) -> dict:
    if not subscription:
        raise PushDeliveryError(NO_PUSH_TOKEN, "User has no push subscription")
    keys = subscription.get("keys") if isinstance(subscription, dict) else None
    if (
        not isinstance(subscription, dict)
        or not subscription.get("endpoint")
        or not isinstance(keys, dict)
        or not keys.get("p256dh")
        or not keys.get("auth")
    ):
        raise PushDeliveryError(INVALID_PUSH_TOKEN, "Push subscription is malformed")
    return subscription


def classify_http_status(status_code: int | None) -> str:
    if status_code in (404, 410):
        return TOKEN_INVALID
    if status_code == 429 or (status_code is not None and status_code >= 500):
        return SERVER_UNAVAILABLE
    if status_code is None:
        return INTERNAL
    return REJECTED


def classify_exception(exc: Exception) -> PushDeliveryError:
    if isinstance(exc, PushDeliveryError):
        return exc
    if isinstance(exc, WebPushException):
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
        return PushDeliveryError(classify_http_status(status_code), str(exc), status_code)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return PushDeliveryError(NETWORK, str(exc))
    return PushDeliveryError(INTERNAL, str(exc))


class WebPushTransport:
    """Web Push delivery through pywebpush, run off the event loop."""

    def __init__(
        self,
        vapid_private_key: str | None = None,
        vapid_email: str | None = None,
        ttl: int = 24 * 60 * 60,
    ):
        self.vapid_private_key = vapid_private_key or settings.VAPID_PRIVATE_KEY
        self.vapid_email = vapid_email or settings.VAPID_EMAIL or "mailto:admin@example.com"
        self.ttl = ttl

    async def send(self, subscription: dict, message: PushMessage) -> str:
        if not self.vapid_private_key:
            raise PushDeliveryError(NOT_CONFIGURED, "VAPID private key is not configured")

        payload = {"title": message.title, "body": message.body, "data": message.data}
        if message.data.get("type"):
            payload["tag"] = message.data["type"]

        try:
            response = await asyncio.to_thread(
                webpush,
                subscription_info=subscription,
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_email},
                ttl=self.ttl,
            )
        except Exception as e:
            raise classify_exception(e) from e

        delivery_id = None
        headers = getattr(response, "headers", None)
        if headers:
            delivery_id = headers.get("Location")
        log.debug("[push] delivered: %s", message.title)
        return delivery_id or uuid.uuid4().hex
