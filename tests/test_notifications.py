"""
tests/test_notifications.py
Post-commit dispatch and the email task: enqueue failures never surface,
templates render escaped context, and the task drops or retries correctly.
"""

import uuid
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import Retry
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.dispatcher import NotificationEvent, NotificationType, dispatch
from shared.models.models import BookingStatus, ProviderProfile, User
from tasks import notification_tasks
from tasks.notification_tasks import TEMPLATES, DatabaseTask, render_event, send_event_email
from tests.factories import auth_headers, make_booking, status_of


# ── Dispatch ───────────────────────────────────────────────────────────────────

def test_every_event_type_has_a_template():
    assert set(TEMPLATES) == {t.value for t in NotificationType}


def test_dispatch_enqueues_one_task_per_event(notify):
    recipient = uuid.uuid4()
    booking_id = uuid.uuid4()
    sent = dispatch([
        NotificationEvent(recipient, NotificationType.PRICE_QUOTED, {"booking_id": booking_id, "amount": "450.00"}),
        NotificationEvent(recipient, NotificationType.PAYMENT_DUE, {"booking_id": booking_id}),
    ])
    assert sent == 2
    first = notify.delay.call_args_list[0].kwargs
    assert first == {
        "recipient_id": str(recipient),
        "event_type": "price_quoted",
        "context": {"booking_id": str(booking_id), "amount": "450.00"},
    }


def test_dispatch_swallows_broker_errors(notify):
    notify.delay.side_effect = ConnectionError("broker down")
    sent = dispatch([NotificationEvent(uuid.uuid4(), NotificationType.PROVIDER_VERIFIED)])
    assert sent == 0


@pytest.mark.asyncio
async def test_broken_broker_does_not_fail_committed_transition(
    client: AsyncClient, db: AsyncSession, customer: User, provider_user: User,
    provider_profile: ProviderProfile, notify,
):
    notify.delay.side_effect = ConnectionError("broker down")
    booking = await make_booking(db, customer, provider_profile)

    response = await client.post(
        f"/bookings/{booking.id}/quote", json={"amount": "300"}, headers=auth_headers(provider_user)
    )
    assert response.status_code == 200
    assert await status_of(db, booking.id) == BookingStatus.AWAITING_CUSTOMER_CONFIRMATION


@pytest.mark.asyncio
async def test_failed_transition_sends_nothing(
    client: AsyncClient, db: AsyncSession, customer: User, provider_user: User,
    provider_profile: ProviderProfile, notify,
):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.CLOSED)
    response = await client.post(f"/bookings/{booking.id}/complete", headers=auth_headers(provider_user))
    assert response.status_code == 409
    notify.delay.assert_not_called()


# ── Rendering ──────────────────────────────────────────────────────────────────

def test_render_event_fills_placeholders():
    subject, body = render_event("price_quoted", {"booking_id": "B-1", "amount": "450.00"}, "Asha")
    assert subject == "Price quote received for booking B-1"
    assert "450.00" in body
    assert body.startswith("<p>Hi Asha,</p>")


def test_render_event_escapes_context():
    _, body = render_event(
        "booking_rejected", {"booking_id": "B-1", "reason": "<script>alert(1)</script>"}, "<b>Ravi</b>"
    )
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "&lt;b&gt;Ravi&lt;/b&gt;" in body


def test_render_event_does_not_expand_placeholders_inside_values():
    _, body = render_event("booking_rejected", {"booking_id": "B-1", "reason": "see {booking_id}"})
    assert "The provider declined booking B-1. see {booking_id}" in body


def test_render_event_leaves_missing_placeholders():
    subject, body = render_event("booking_rejected", {"booking_id": "B-1"})
    assert subject == "Booking B-1 was declined"
    assert "The provider declined booking B-1. {reason}" in body


def test_render_event_unknown_type():
    with pytest.raises(KeyError):
        render_event("no_such_event", {})


# ── Task ───────────────────────────────────────────────────────────────────────

def _session_returning(user):
    session = MagicMock()
    session.execute.return_value.scalar_one_or_none.return_value = user
    return session


def test_task_sends_email():
    user = SimpleNamespace(email="asha@example.com", name="Asha")
    with patch.object(DatabaseTask, "get_session", return_value=_session_returning(user)), \
            patch.object(notification_tasks, "_send_email", return_value=True) as send:
        result = send_event_email(
            recipient_id=str(uuid.uuid4()),
            event_type="payment_received",
            context={"booking_id": "B-1", "amount": "500.00"},
        )
    assert result is True
    to_email, subject, _ = send.call_args.args
    assert to_email == "asha@example.com"
    assert subject == "Payment received for booking B-1"


def test_task_drops_unknown_event_type():
    with patch.object(DatabaseTask, "get_session") as get_session:
        assert send_event_email(recipient_id=str(uuid.uuid4()), event_type="mystery") is False
    get_session.assert_not_called()


def test_task_drops_unknown_recipient():
    session = _session_returning(None)
    with patch.object(DatabaseTask, "get_session", return_value=session), \
            patch.object(notification_tasks, "_send_email") as send:
        assert send_event_email(recipient_id=str(uuid.uuid4()), event_type="payment_due") is False
    send.assert_not_called()
    session.close.assert_called_once()


def test_task_retries_when_delivery_fails():
    user = SimpleNamespace(email="asha@example.com", name="Asha")
    with patch.object(DatabaseTask, "get_session", return_value=_session_returning(user)), \
            patch.object(notification_tasks, "_send_email", return_value=False):
        with pytest.raises(Retry):
            send_event_email(
                recipient_id=str(uuid.uuid4()),
                event_type="payment_due",
                context={"booking_id": "B-1", "amount": "500.00"},
            )
