"""
services/messaging/service.py
Per-booking chat between the customer and the assigned provider.

A thread is only writable while its booking is active (accepted, completed
or closed). Messages are ordered by their integer id, which is assigned at
insert time and never reused.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.errors import Forbidden, NotFound, ValidationError
from shared.models.models import Booking, BookingStatus, Message, ProviderProfile
from shared.permissions import Actor, Operation, authorize

logger = logging.getLogger(__name__)

ACTIVE_CHAT_STATES = frozenset(
    {BookingStatus.ACCEPTED, BookingStatus.COMPLETED, BookingStatus.CLOSED}
)


def is_chat_active(status: BookingStatus) -> bool:
    return status in ACTIVE_CHAT_STATES


async def _load_thread(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
) -> Tuple[Booking, uuid.UUID]:
    """Return the booking and the other party's user id; non-parties get Forbidden."""
    row = (
        await db.execute(
            select(Booking, ProviderProfile.user_id)
            .join(ProviderProfile, ProviderProfile.id == Booking.provider_id)
            .where(Booking.id == booking_id)
        )
    ).one_or_none()
    if row is None:
        raise NotFound("Booking not found")

    booking, provider_user_id = row
    if actor.id == booking.customer_id:
        return booking, provider_user_id
    if actor.id == provider_user_id:
        return booking, booking.customer_id
    raise Forbidden("You are not a party to this booking")


async def send_message(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
    content: Optional[str] = None,
    attachment_url: Optional[str] = None,
) -> Message:
    authorize(actor, Operation.CHAT_SEND)
    booking, recipient_id = await _load_thread(db, actor, booking_id)
    if not is_chat_active(booking.status):
        raise Forbidden(
            f"Chat is not available while the booking is '{booking.status.value}'",
            {"status": booking.status.value},
        )

    content = content.strip() if content else None
    attachment_url = attachment_url.strip() if attachment_url else None
    if not content and not attachment_url:
        raise ValidationError("A message needs content or an attachment", {"field": "content"})
    if content and len(content) > settings.CHAT_MESSAGE_MAX_LENGTH:
        raise ValidationError(
            f"Message exceeds {settings.CHAT_MESSAGE_MAX_LENGTH} characters",
            {"field": "content"},
        )

    message = Message(
        booking_id=booking.id,
        sender_id=actor.id,
        recipient_id=recipient_id,
        content=content,
        attachment_url=attachment_url,
        is_read=False,
    )
    db.add(message)
    await db.flush()
    logger.info(f"Message {message.id} on booking {booking.id} from {actor.id}")
    return message


async def list_messages(db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> List[Message]:
    """The whole thread, oldest first. Readable in any booking state."""
    authorize(actor, Operation.CHAT_LIST)
    await _load_thread(db, actor, booking_id)
    result = await db.execute(
        select(Message).where(Message.booking_id == booking_id).order_by(Message.id.asc())
    )
    return list(result.scalars().all())


async def mark_read(db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> int:
    """Flip every unread message addressed to the actor in this thread. Idempotent."""
    authorize(actor, Operation.CHAT_MARK_READ)
    await _load_thread(db, actor, booking_id)
    result = await db.execute(
        update(Message)
        .where(
            Message.booking_id == booking_id,
            Message.recipient_id == actor.id,
            Message.is_read.is_(False),
        )
        .values(is_read=True)
    )
    return result.rowcount or 0


async def unread_count(db: AsyncSession, actor: Actor) -> int:
    authorize(actor, Operation.CHAT_UNREAD_COUNT)
    count = await db.scalar(
        select(func.count(Message.id)).where(
            Message.recipient_id == actor.id,
            Message.is_read.is_(False),
        )
    )
    return count or 0
