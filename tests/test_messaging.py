"""
tests/test_messaging.py
Booking chat: who may read and write a thread, when it is writable, ordering
and the read/unread bookkeeping.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.messaging import service
from shared.models.models import BookingStatus, ProviderProfile, User
from tests.factories import auth_headers, make_booking


async def send(client: AsyncClient, booking_id, user: User, content: str = "Hello"):
    return await client.post(
        f"/bookings/{booking_id}/messages", json={"content": content}, headers=auth_headers(user)
    )


def test_active_chat_states():
    assert service.is_chat_active(BookingStatus.ACCEPTED)
    assert service.is_chat_active(BookingStatus.CLOSED)
    assert not service.is_chat_active(BookingStatus.PENDING_PROVIDER)
    assert not service.is_chat_active(BookingStatus.REJECTED)


@pytest.mark.asyncio
async def test_send_message_on_active_booking(client: AsyncClient, db: AsyncSession, customer: User,
                                              provider_user: User, provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.ACCEPTED)
    response = await send(client, booking.id, customer, "  Is 10am fine?  ")
    assert response.status_code == 201
    data = response.json()
    assert data["content"] == "Is 10am fine?"
    assert data["sender_id"] == str(customer.id)
    assert data["recipient_id"] == str(provider_user.id)
    assert data["is_read"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status",
    [BookingStatus.PENDING_PROVIDER, BookingStatus.AWAITING_CUSTOMER_CONFIRMATION, BookingStatus.REJECTED],
)
async def test_chat_closed_outside_active_states(client: AsyncClient, db: AsyncSession, customer: User,
                                                 provider_profile: ProviderProfile, status):
    booking = await make_booking(db, customer, provider_profile, status)
    response = await send(client, booking.id, customer)
    assert response.status_code == 403
    assert response.json()["details"]["status"] == status.value


@pytest.mark.asyncio
async def test_stranger_cannot_read_or_write(client: AsyncClient, db: AsyncSession, customer: User,
                                             other_customer: User, other_provider: User,
                                             provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.ACCEPTED)
    for user in (other_customer, other_provider):
        assert (await send(client, booking.id, user)).status_code == 403
        listed = await client.get(f"/bookings/{booking.id}/messages", headers=auth_headers(user))
        assert listed.status_code == 403


@pytest.mark.asyncio
async def test_admin_is_not_a_chat_party(client: AsyncClient, db: AsyncSession, customer: User,
                                         admin_user: User, provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.ACCEPTED)
    assert (await send(client, booking.id, admin_user)).status_code == 403


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client: AsyncClient, db: AsyncSession, customer: User,
                                         provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.ACCEPTED)
    response = await send(client, booking.id, customer, "   ")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_attachment_only_message(client: AsyncClient, db: AsyncSession, customer: User,
                                       provider_user: User, provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.COMPLETED)
    response = await client.post(
        f"/bookings/{booking.id}/messages",
        json={"attachment_url": "s3://chat/leak.jpg"},
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 201
    assert response.json()["content"] is None
    assert response.json()["recipient_id"] == str(customer.id)


@pytest.mark.asyncio
async def test_message_for_unknown_booking(client: AsyncClient, customer: User):
    response = await send(client, uuid.uuid4(), customer)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_thread_is_ordered_and_readable_after_close(client: AsyncClient, db: AsyncSession,
                                                          customer: User, provider_user: User,
                                                          provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.CLOSED)
    await send(client, booking.id, customer, "one")
    await send(client, booking.id, provider_user, "two")
    await send(client, booking.id, customer, "three")

    response = await client.get(f"/bookings/{booking.id}/messages", headers=auth_headers(provider_user))
    assert response.status_code == 200
    messages = response.json()
    assert [m["content"] for m in messages] == ["one", "two", "three"]
    ids = [m["id"] for m in messages]
    assert ids == sorted(ids)


@pytest.mark.asyncio
async def test_history_survives_rejection(client: AsyncClient, db: AsyncSession, customer: User,
                                          provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.REJECTED)
    response = await client.get(f"/bookings/{booking.id}/messages", headers=auth_headers(customer))
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(client: AsyncClient, db: AsyncSession, customer: User,
                                       provider_user: User, provider_profile: ProviderProfile):
    booking = await make_booking(db, customer, provider_profile, BookingStatus.ACCEPTED)
    await send(client, booking.id, customer, "first")
    await send(client, booking.id, customer, "second")
    await send(client, booking.id, provider_user, "reply")

    first = await client.post(f"/bookings/{booking.id}/messages/read", headers=auth_headers(provider_user))
    assert first.status_code == 200
    assert first.json() == {"updated": 2}

    second = await client.post(f"/bookings/{booking.id}/messages/read", headers=auth_headers(provider_user))
    assert second.json() == {"updated": 0}

    # The provider's own message is still unread for the customer
    unread = await client.get("/messages/unread-count", headers=auth_headers(customer))
    assert unread.json() == {"unread": 1}


@pytest.mark.asyncio
async def test_unread_count_spans_bookings(client: AsyncClient, db: AsyncSession, customer: User,
                                           provider_user: User, provider_profile: ProviderProfile):
    first = await make_booking(db, customer, provider_profile, BookingStatus.ACCEPTED)
    second = await make_booking(db, customer, provider_profile, BookingStatus.COMPLETED)
    await send(client, first.id, customer, "a")
    await send(client, second.id, customer, "b")
    await send(client, second.id, customer, "c")

    response = await client.get("/messages/unread-count", headers=auth_headers(provider_user))
    assert response.status_code == 200
    assert response.json() == {"unread": 3}

    await client.post(f"/bookings/{second.id}/messages/read", headers=auth_headers(provider_user))
    response = await client.get("/messages/unread-count", headers=auth_headers(provider_user))
    assert response.json() == {"unread": 1}
