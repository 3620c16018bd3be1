"""
services/notification/dispatcher.py
Post-commit notification fan-out.

Core operations never send anything themselves: they return a list of
NotificationEvent values alongside their result. Routers commit the
transaction first and then call dispatch(), so a rolled-back operation
never notifies anybody and a broken broker never fails a committed one.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable

from tasks.notification_tasks import send_event_email

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    BOOKING_REQUESTED = "booking_requested"
    PRICE_QUOTED = "price_quoted"
    BOOKING_REJECTED = "booking_rejected"
    PRICE_ACCEPTED = "price_accepted"
    PRICE_DECLINED = "price_declined"
    PAYMENT_DUE = "payment_due"
    PAYMENT_SENT = "payment_sent"
    PAYMENT_RECEIVED = "payment_received"
    REVIEW_RECEIVED = "review_received"
    WALLET_REQUEST_APPROVED = "wallet_request_approved"
    WALLET_REQUEST_REJECTED = "wallet_request_rejected"
    PROVIDER_VERIFIED = "provider_verified"


@dataclass(frozen=True)
class NotificationEvent:
    recipient_id: uuid.UUID
    type: NotificationType
    context: Dict[str, Any] = field(default_factory=dict)


def dispatch(events: Iterable[NotificationEvent]) -> int:
    """
    Enqueue one email task per event. Returns how many were enqueued.
    Enqueue failures are logged and dropped; delivery is best-effort.
    """
    sent = 0
    for event in events:
        try:
            send_event_email.delay(
                recipient_id=str(event.recipient_id),
                event_type=event.type.value,
                context={k: str(v) for k, v in event.context.items()},
            )
            sent += 1
        except Exception as e:
            logger.warning(
                f"Notification enqueue failed ({event.type.value} → {event.recipient_id}): {e}"
            )
    return sent
