"""
Notification Dispatcher
=======================
Durable in-app notifications plus best-effort Web Push.

Every ``send`` first stores a ``Notification`` row in its own transaction,
so in-app delivery never depends on push. Push failures are classified by
the transport; retryable ones are retried with capped exponential backoff
inside a wall-clock window, and anything left over is written to the audit
log and swallowed. Nothing here touches relationship state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bondmate.core.config import settings
from bondmate.core.errors import ValidationError
from bondmate.db.models import BreakupRequest, Notification, Partner, PartnerRequest, PushSubscription, User
from bondmate.services import audit
from bondmate.utils.messaging.push import (
    PushDeliveryError,
    PushMessage,
    PushTransport,
    WebPushTransport,
    classify_exception,
    validate_subscription,
)

log = logging.getLogger(__name__)

# Notification types
PARTNER_REQUEST = "partner_request"
PARTNER_ACCEPTED = "partner_accepted"
PARTNER_REJECTED = "partner_rejected"
PARTNER_CANCELLED = "partner_cancelled"
BREAKUP_REQUEST = "breakup_request"
BREAKUP_ACCEPTED = "breakup_accepted"
BREAKUP_REJECTED = "breakup_rejected"


@dataclass
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    max_retry_window: float = 60.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.NOTIFY_MAX_RETRIES,
            base_delay=settings.NOTIFY_BASE_DELAY_SECONDS,
            multiplier=settings.NOTIFY_BACKOFF_MULTIPLIER,
            max_delay=settings.NOTIFY_MAX_DELAY_SECONDS,
            max_retry_window=settings.NOTIFY_MAX_RETRY_WINDOW_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the failed ``attempt`` (0-indexed)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** attempt)


@dataclass
class NotificationPayload:
    type: str
    title: str
    body: str
    data: dict = field(default_factory=dict)


@dataclass
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    attempts: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        transport: PushTransport | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if session_factory is None:
            from bondmate.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.transport = transport or WebPushTransport()
        self.policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self._stores: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def send(self, user_id: int, payload: NotificationPayload) -> DeliveryResult:
        subscription = await self._store_in_app(user_id, payload)
        return await self._push(user_id, subscription, payload)

    async def _push(self, user_id: int, subscription: dict | None, payload: NotificationPayload) -> DeliveryResult:
        try:
            subscription = validate_subscription(subscription)
        except PushDeliveryError as e:
            log.info("[NOTIFY] No push for user %s (%s): %s", user_id, payload.type, e.code)
            return DeliveryResult(success=False, error=e.code, attempts=0)

        return await self._deliver(user_id, subscription, payload)

    async def _store_in_app(self, user_id: int, payload: NotificationPayload) -> dict | None:
        """Persist the in-app row and return the user's latest push subscription."""
        try:
            async with self.session_factory() as db:
                db.add(
                    Notification(
                        user_id=user_id,
                        type=payload.type,
                        title=payload.title,
                        body=payload.body,
                        data=payload.data,
                    )
                )
                result = await db.execute(
                    select(PushSubscription)
                    .where(PushSubscription.user_id == user_id)
                    .order_by(PushSubscription.created_at.desc(), PushSubscription.id.desc())
                    .limit(1)
                )
                subscription = result.scalars().first()
                await db.commit()
                return subscription.subscription_json if subscription else None
        except SQLAlchemyError as e:
            log.error("[NOTIFY] Could not store in-app notification for user %s: %s", user_id, e, exc_info=True)
            return None

    async def _deliver(self, user_id: int, subscription: dict, payload: NotificationPayload) -> DeliveryResult:
        message = PushMessage(title=payload.title, body=payload.body, data={"type": payload.type, **payload.data})
        started = time.monotonic()
        attempt = 0

        while True:
            try:
                message_id = await self.transport.send(subscription, message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_exception(e)
                delay = self.policy.delay_for(attempt)
                within_window = time.monotonic() - started + delay <= self.policy.max_retry_window
                if error.retryable and attempt < self.policy.max_retries and within_window:
                    log.info(
                        "[NOTIFY] Push to user %s failed (%s), retry %s in %.1fs",
                        user_id, error.code, attempt + 1, delay,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue

                await self._record_failure(user_id, payload, error, attempt + 1)
                return DeliveryResult(success=False, error=error.code, attempts=attempt + 1)

            log.info("[NOTIFY] Push delivered to user %s: %s", user_id, payload.title)
            await self._audit(
                user_id,
                audit.NOTIFICATION_SENT,
                f"Notification sent: {payload.title}",
                {"message_id": message_id, "type": payload.type, "attempts": attempt + 1},
            )
            return DeliveryResult(success=True, message_id=message_id, attempts=attempt + 1)

    async def _record_failure(
        self,
        user_id: int,
        payload: NotificationPayload,
        error: PushDeliveryError,
        attempts: int,
    ) -> None:
        log.warning(
            "[NOTIFY] Push to user %s gave up after %s attempt(s): %s %s",
            user_id, attempts, error.code, error,
        )
        await self._audit(
            user_id,
            audit.NOTIFICATION_FAILED,
            f"Notification send failed: {payload.title}",
            {
                "type": payload.type,
                "error": str(error),
                "code": error.code,
                "status_code": error.status_code,
                "attempts": attempts,
            },
        )

    async def _audit(self, user_id: int, action: str, details: str, metadata: dict) -> None:
        try:
            async with self.session_factory() as db:
                await audit.log_activity(db, user_id, action, details, metadata=metadata)
                await db.commit()
        except SQLAlchemyError as e:
            log.error("[NOTIFY] Could not audit %s for user %s: %s", action, user_id, e)

    def dispatch(self, user_id: int, payload: NotificationPayload) -> asyncio.Task | None:
        """Store the in-app row and run the push in the background.

        The store is tracked apart from the push so ``shutdown`` can cancel
        deliveries without losing the in-app row. A closed dispatcher still
        stores the row and skips the push.
        """
        stored = asyncio.create_task(self._store_in_app(user_id, payload))
        self._stores.add(stored)
        stored.add_done_callback(self._stores.discard)
        if self._closed:
            log.warning("[NOTIFY] Dispatcher closed, skipping push of %s for user %s", payload.type, user_id)
            return None
        task = asyncio.create_task(self._run(user_id, payload, stored))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, user_id: int, payload: NotificationPayload, stored: asyncio.Task) -> DeliveryResult | None:
        try:
            subscription = await asyncio.shield(stored)
            return await self._push(user_id, subscription, payload)
        except asyncio.CancelledError:
            log.info("[NOTIFY] Delivery of %s to user %s cancelled", payload.type, user_id)
            raise
        except Exception as e:
            log.exception("[NOTIFY] Unexpected error delivering %s to user %s: %s", payload.type, user_id, e)
            return None

    async def drain(self) -> None:
        while self._tasks or self._stores:
            await asyncio.gather(*self._tasks, *self._stores, return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("[NOTIFY] Cancelled %s outstanding deliveries", len(tasks))
        while self._stores:
            await asyncio.gather(*self._stores, return_exceptions=True)


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def configure_dispatcher(dispatcher: NotificationDispatcher | None) -> NotificationDispatcher | None:
    """Replace the process-wide dispatcher; returns the previous one."""
    global _dispatcher
    previous = _dispatcher
    _dispatcher = dispatcher
    return previous


# ---- payload builders ----

def partner_request_payload(request: PartnerRequest, sender: User) -> NotificationPayload:
    return NotificationPayload(
        type=PARTNER_REQUEST,
        title="New Partner Request",
        body=f"{sender.name} wants to be your partner",
        data={"request_id": request.id, "from_user_id": sender.id, "from_user_name": sender.name},
    )


def partner_accepted_payload(partner: Partner, accepter: User) -> NotificationPayload:
    return NotificationPayload(
        type=PARTNER_ACCEPTED,
        title="Partner Request Accepted!",
        body=f"{accepter.name} accepted your partner request",
        data={"partnership_id": partner.id, "partner_id": accepter.id, "partner_name": accepter.name},
    )


def partner_rejected_payload(request: PartnerRequest, rejecter: User) -> NotificationPayload:
    return NotificationPayload(
        type=PARTNER_REJECTED,
        title="Partner Request Rejected",
        body=f"{rejecter.name} declined your partner request",
        data={"request_id": request.id, "user_id": rejecter.id},
    )


def partner_cancelled_payload(request: PartnerRequest, sender: User) -> NotificationPayload:
    return NotificationPayload(
        type=PARTNER_CANCELLED,
        title="Partner Request Cancelled",
        body=f"{sender.name} cancelled their partner request",
        data={"request_id": request.id, "from_user_id": sender.id},
    )


def breakup_request_payload(breakup: BreakupRequest, sender: User) -> NotificationPayload:
    return NotificationPayload(
        type=BREAKUP_REQUEST,
        title="Breakup Request",
        body=f"{sender.name} wants to end the relationship",
        data={"breakup_request_id": breakup.id, "from_user_id": sender.id, "reason": breakup.reason},
    )


def breakup_accepted_payload(breakup: BreakupRequest, other: User) -> NotificationPayload:
    return NotificationPayload(
        type=BREAKUP_ACCEPTED,
        title="Relationship Ended",
        body=f"Your relationship with {other.name} has ended",
        data={"breakup_request_id": breakup.id, "ex_partner_id": other.id},
    )


def breakup_rejected_payload(breakup: BreakupRequest, rejecter: User, recipient: User) -> NotificationPayload:
    if recipient.id == rejecter.id:
        body = "You declined the breakup request"
    else:
        body = f"{rejecter.name} declined your breakup request"
    return NotificationPayload(
        type=BREAKUP_REJECTED,
        title="Breakup Request Rejected",
        body=body,
        data={"breakup_request_id": breakup.id, "rejected_by": rejecter.id},
    )


# ---- subscriptions ----

async def register_push_subscription(db: AsyncSession, user_id: int, subscription: dict) -> PushSubscription:
    try:
        subscription = validate_subscription(subscription)
    except PushDeliveryError as e:
        raise ValidationError(str(e)) from e

    result = await db.execute(
        select(PushSubscription).where(
            PushSubscription.user_id == user_id,
            PushSubscription.subscription_json["endpoint"].as_string() == subscription["endpoint"],
        )
    )
    existing = result.scalars().first()
    if existing is not None:
        if existing.subscription_json != subscription:
            existing.subscription_json = subscription
            await db.commit()
        return existing

    row = PushSubscription(user_id=user_id, subscription_json=subscription)
    db.add(row)
    await db.commit()
    await db.refresh(row)
    log.info("[NOTIFY] Push subscription registered for user %s", user_id)
    return row
