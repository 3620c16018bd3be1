"""
tasks/notification_tasks.py
Celery task for transactional email delivery.

One task per (recipient, event). The API enqueues it only after its
transaction committed, so every task describes something that happened.
Delivery failures retry with exponential backoff and never reach the API.

Usage (via services.notification.dispatcher):
    send_event_email.delay(recipient_id=str(user.id), event_type="price_quoted",
                           context={"booking_id": "...", "amount": "450.00"})
"""

import html
import logging
import uuid
from typing import Dict, Optional, Tuple

from celery import Task
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Base Task with DB session ──────────────────────────────────────────────────

class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _sessionmaker = None

    def get_session(self):
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        if DatabaseTask._sessionmaker is None:
            # Convert async URL (postgresql+asyncpg://) to sync (postgresql+psycopg2://)
            sync_url = (
                settings.DATABASE_URL
                .replace("+asyncpg", "+psycopg2")
                .replace("+aiosqlite", "")
            )
            engine = create_engine(sync_url, pool_pre_ping=True)
            DatabaseTask._sessionmaker = sessionmaker(bind=engine)
        return DatabaseTask._sessionmaker()


# ── Core Delivery ──────────────────────────────────────────────────────────────

def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Notification Templates ─────────────────────────────────────────────────────

TEMPLATES: Dict[str, Dict[str, str]] = {
    "booking_requested": {
        "subject": "New booking request {booking_id}",
        "body": "You have a new booking request scheduled for {scheduled_at}. "
                "Open your dashboard to quote a price or decline it.",
    },
    "price_quoted": {
        "subject": "Price quote received for booking {booking_id}",
        "body": "Your provider quoted {amount} for booking {booking_id}. "
                "Please accept or decline the price.",
    },
    "booking_rejected": {
        "subject": "Booking {booking_id} was declined",
        "body": "The provider declined booking {booking_id}. {reason}",
    },
    "price_accepted": {
        "subject": "Booking {booking_id} price accepted",
        "body": "The customer accepted your price of {amount}. The job is confirmed.",
    },
    "price_declined": {
        "subject": "Booking {booking_id} price declined",
        "body": "The customer declined your price of {amount}. The booking is cancelled.",
    },
    "payment_due": {
        "subject": "Action required: payment due for booking {booking_id}",
        "body": "Your provider marked booking {booking_id} as completed. "
                "Please pay {amount} from your wallet.",
    },
    "payment_sent": {
        "subject": "Payment receipt for booking {booking_id}",
        "body": "{amount} was paid from your wallet for booking {booking_id}.",
    },
    "payment_received": {
        "subject": "Payment received for booking {booking_id}",
        "body": "{amount} was credited to your wallet for booking {booking_id}.",
    },
    "review_received": {
        "subject": "New review on booking {booking_id}",
        "body": "Your customer rated booking {booking_id} {rating}/5.",
    },
    "wallet_request_approved": {
        "subject": "Your {request_type} request was approved",
        "body": "Your {request_type} request for {amount} has been approved.",
    },
    "wallet_request_rejected": {
        "subject": "Your {request_type} request was rejected",
        "body": "Your {request_type} request for {amount} was rejected. {note}",
    },
    "provider_verified": {
        "subject": "Your profile is verified",
        "body": "Congratulations {display_name}, your provider profile is now verified.",
    },
}


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _render(template: str, **kwargs) -> str:
    """
    Fill {placeholders} in one pass. Unknown placeholders are left as-is and
    substituted values are never re-scanned for placeholders.
    """
    return template.format_map(_KeepMissing((k, str(v)) for k, v in kwargs.items()))


def render_event(event_type: str, context: dict, recipient_name: Optional[str] = None) -> Tuple[str, str]:
    """Returns (subject, html_body) for an event. Raises KeyError for unknown types."""
    template = TEMPLATES[event_type]
    subject = _render(template["subject"], **context)
    body = _render(template["body"], **{k: html.escape(str(v)) for k, v in context.items()})
    greeting = f"Hi {html.escape(recipient_name)}," if recipient_name else "Hi,"
    html_body = (
        f"<p>{greeting}</p>"
        f"<p>{body}</p>"
        f'<p><a href="{settings.FRONTEND_URL}">Open {html.escape(settings.APP_NAME)}</a></p>'
    )
    return subject, html_body


# ── Task ───────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=5, default_retry_delay=60)
def send_event_email(self, recipient_id: str, event_type: str, context: dict = None):
    """
    Email one recipient about one event.
    Unknown recipients and event types are logged and dropped, not retried.
    """
    from shared.models.models import User

    context = context or {}
    if event_type not in TEMPLATES:
        logger.error(f"No email template for event type {event_type!r}")
        return False

    session = self.get_session()
    try:
        user = session.execute(
            select(User).where(User.id == uuid.UUID(recipient_id))
        ).scalar_one_or_none()
        if not user:
            logger.warning(f"Notification recipient {recipient_id} not found; dropping {event_type}")
            return False
        email, name = user.email, user.name
    finally:
        session.close()

    subject, html_body = render_event(event_type, context, name)
    if not _send_email(email, subject, html_body):
        raise self.retry(countdown=60 * (2 ** self.request.retries))

    logger.info(f"Sent {event_type} email to {recipient_id}")
    return True
