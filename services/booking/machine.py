"""
services/booking/machine.py
Booking lifecycle state machine.

    pending_provider → awaiting_customer_confirmation → accepted → completed → closed
    pending_provider | awaiting_customer_confirmation → rejected

Every mutating operation runs inside the caller's transaction:
    1. authorize the actor's role
    2. read a status snapshot, then SELECT ... FOR UPDATE the booking row
    3. check ownership and the source state against the locked row
    4. write the new state plus a BookingAuditLog row
and returns the notifications to dispatch once the transaction commits.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.dispatcher import NotificationEvent, NotificationType
from services.wallet import ledger
from shared.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    ProviderProfile,
    Review,
    UserRole,
)
from shared.permissions import Actor, Operation, authorize
from shared.utils.money import format_money, positive_money

logger = logging.getLogger(__name__)

Events = List[NotificationEvent]

# Allowed edges. Anything not listed here is never written.
TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING_PROVIDER: frozenset(
        {BookingStatus.AWAITING_CUSTOMER_CONFIRMATION, BookingStatus.REJECTED}
    ),
    BookingStatus.AWAITING_CUSTOMER_CONFIRMATION: frozenset(
        {BookingStatus.ACCEPTED, BookingStatus.REJECTED}
    ),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.COMPLETED: frozenset({BookingStatus.CLOSED}),
    BookingStatus.CLOSED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def can_transition(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def check_transition(
    snapshot: BookingStatus,
    current: BookingStatus,
    allowed_from: FrozenSet[BookingStatus],
) -> None:
    """
    Guard on the locked row.

    If the status moved between our unlocked snapshot and the lock, and the
    snapshot would have been a valid source, another request won the race:
    that is a Conflict. Any other wrong source state is an InvalidTransition.
    """
    if current in allowed_from:
        return
    if snapshot != current and snapshot in allowed_from:
        raise Conflict(
            f"Booking changed from '{snapshot.value}' to '{current.value}' while this request was in flight",
            {"expected": sorted(s.value for s in allowed_from), "actual": current.value},
        )
    raise InvalidTransition(
        f"Booking is '{current.value}'",
        {"expected": sorted(s.value for s in allowed_from), "actual": current.value},
    )


# ── Helpers ───────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _provider_user_id(db: AsyncSession, provider_id: uuid.UUID) -> uuid.UUID:
    user_id = await db.scalar(
        select(ProviderProfile.user_id).where(ProviderProfile.id == provider_id)
    )
    if user_id is None:
        raise NotFound("Provider not found")
    return user_id


async def _lock_for_transition(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
    allowed_from: FrozenSet[BookingStatus],
    owner: UserRole,
) -> Tuple[Booking, uuid.UUID]:
    """Lock the booking row and run the ownership and source-state guards."""
    snapshot = await db.scalar(select(Booking.status).where(Booking.id == booking_id))
    if snapshot is None:
        raise NotFound("Booking not found")

    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one()
    provider_user_id = await _provider_user_id(db, booking.provider_id)

    owner_id = booking.customer_id if owner == UserRole.CUSTOMER else provider_user_id
    if actor.id != owner_id:
        raise Forbidden("You are not a party to this booking")

    check_transition(snapshot, booking.status, allowed_from)
    return booking, provider_user_id


async def _apply(
    db: AsyncSession,
    booking: Booking,
    to_status: BookingStatus,
    actor: Actor,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Write the new status and its audit row."""
    from_status = booking.status
    if not can_transition(from_status, to_status):
        raise InvalidTransition(f"Cannot move booking from '{from_status.value}' to '{to_status.value}'")

    booking.status = to_status
    db.add(
        BookingAuditLog(
            booking_id=booking.id,
            from_status=from_status.value,
            to_status=to_status.value,
            changed_by_id=actor.id,
            reason=reason,
            audit_metadata=metadata,
        )
    )
    await db.flush()
    logger.info(f"Booking {booking.id}: {from_status.value} → {to_status.value} by {actor.id}")


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} is required", {"field": field})
    return value.strip()


# ── Operations ────────────────────────────────────────────────

async def create(
    db: AsyncSession,
    actor: Actor,
    provider_id: uuid.UUID,
    service_id: uuid.UUID,
    scheduled_at: datetime,
    address: str,
    description: str,
    notes: Optional[str] = None,
) -> Tuple[Booking, Events]:
    authorize(actor, Operation.BOOKING_CREATE)
    if provider_id is None:
        raise ValidationError("provider_id is required", {"field": "provider_id"})
    if service_id is None:
        raise ValidationError("service_id is required", {"field": "service_id"})
    if scheduled_at is None:
        raise ValidationError("scheduled_at is required", {"field": "scheduled_at"})
    address = _require_text(address, "address")
    description = _require_text(description, "description")

    provider_user_id = await _provider_user_id(db, provider_id)

    booking = Booking(
        customer_id=actor.id,
        provider_id=provider_id,
        service_id=service_id,
        status=BookingStatus.PENDING_PROVIDER,
        scheduled_at=scheduled_at,
        address=address,
        description=description,
        notes=notes,
    )
    db.add(booking)
    await db.flush()

    db.add(
        BookingAuditLog(
            booking_id=booking.id,
            from_status=None,
            to_status=BookingStatus.PENDING_PROVIDER.value,
            changed_by_id=actor.id,
        )
    )
    logger.info(f"Booking {booking.id} created by {actor.id} for provider {provider_id}")

    events = [
        NotificationEvent(
            provider_user_id,
            NotificationType.BOOKING_REQUESTED,
            {"booking_id": booking.id, "scheduled_at": scheduled_at.isoformat()},
        )
    ]
    return booking, events


async def set_price_and_accept(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
    amount: Decimal,
) -> Tuple[Booking, Events]:
    """Provider quotes a price. The amount is written exactly once, here."""
    authorize(actor, Operation.BOOKING_QUOTE)
    amount = positive_money(amount)

    booking, _ = await _lock_for_transition(
        db, actor, booking_id, frozenset({BookingStatus.PENDING_PROVIDER}), UserRole.PROVIDER
    )
    booking.amount = amount
    booking.quoted_at = _utcnow()
    await _apply(
        db, booking, BookingStatus.AWAITING_CUSTOMER_CONFIRMATION, actor,
        metadata={"amount": format_money(amount)},
    )

    events = [
        NotificationEvent(
            booking.customer_id,
            NotificationType.PRICE_QUOTED,
            {"booking_id": booking.id, "amount": format_money(amount)},
        )
    ]
    return booking, events


async def reject(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
    reason: Optional[str] = None,
) -> Tuple[Booking, Events]:
    authorize(actor, Operation.BOOKING_REJECT)
    booking, _ = await _lock_for_transition(
        db, actor, booking_id, frozenset({BookingStatus.PENDING_PROVIDER}), UserRole.PROVIDER
    )
    booking.rejection_reason = reason
    await _apply(db, booking, BookingStatus.REJECTED, actor, reason=reason)

    events = [
        NotificationEvent(
            booking.customer_id,
            NotificationType.BOOKING_REJECTED,
            {"booking_id": booking.id, "reason": reason or ""},
        )
    ]
    return booking, events


async def confirm_price(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
    accept: bool,
) -> Tuple[Booking, Events]:
    """Customer accepts the quote (→ accepted) or declines it (→ rejected)."""
    authorize(actor, Operation.BOOKING_CONFIRM_PRICE)
    booking, provider_user_id = await _lock_for_transition(
        db,
        actor,
        booking_id,
        frozenset({BookingStatus.AWAITING_CUSTOMER_CONFIRMATION}),
        UserRole.CUSTOMER,
    )

    if accept:
        await _apply(db, booking, BookingStatus.ACCEPTED, actor)
        event_type = NotificationType.PRICE_ACCEPTED
    else:
        booking.rejection_reason = "Price declined by customer"
        await _apply(db, booking, BookingStatus.REJECTED, actor, reason=booking.rejection_reason)
        event_type = NotificationType.PRICE_DECLINED

    events = [
        NotificationEvent(
            provider_user_id,
            event_type,
            {"booking_id": booking.id, "amount": format_money(booking.amount)},
        )
    ]
    return booking, events


async def mark_completed(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
) -> Tuple[Booking, Events]:
    authorize(actor, Operation.BOOKING_COMPLETE)
    booking, _ = await _lock_for_transition(
        db, actor, booking_id, frozenset({BookingStatus.ACCEPTED}), UserRole.PROVIDER
    )
    booking.completed_at = _utcnow()
    await _apply(db, booking, BookingStatus.COMPLETED, actor)

    events = [
        NotificationEvent(
            booking.customer_id,
            NotificationType.PAYMENT_DUE,
            {"booking_id": booking.id, "amount": format_money(booking.amount)},
        )
    ]
    return booking, events


async def pay(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
) -> Tuple[Booking, Events]:
    """
    Settle a completed booking from the customer's wallet.

    Lock order is booking row first, then both wallets by ascending user id.
    InsufficientFunds is raised before any balance or status write, so the
    rolled-back transaction leaves the booking completed and both wallets as
    they were.
    """
    authorize(actor, Operation.BOOKING_PAY)
    booking, provider_user_id = await _lock_for_transition(
        db, actor, booking_id, frozenset({BookingStatus.COMPLETED}), UserRole.CUSTOMER
    )
    if booking.amount is None:
        raise InvalidTransition("Booking has no agreed amount")
    amount = booking.amount

    await ledger.lock_wallets(db, [booking.customer_id, provider_user_id])
    await ledger.debit(db, booking.customer_id, amount, booking_id=booking.id)
    await ledger.credit(db, provider_user_id, amount, booking_id=booking.id)

    booking.closed_at = _utcnow()
    await _apply(db, booking, BookingStatus.CLOSED, actor, metadata={"amount": format_money(amount)})

    context = {"booking_id": booking.id, "amount": format_money(amount)}
    events = [
        NotificationEvent(booking.customer_id, NotificationType.PAYMENT_SENT, context),
        NotificationEvent(provider_user_id, NotificationType.PAYMENT_RECEIVED, context),
    ]
    return booking, events


async def attach_review(
    db: AsyncSession,
    actor: Actor,
    booking_id: uuid.UUID,
    rating: int,
    comment: Optional[str] = None,
) -> Tuple[Review, Events]:
    authorize(actor, Operation.BOOKING_REVIEW)
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer between 1 and 5", {"field": "rating"})

    booking, provider_user_id = await _lock_for_transition(
        db, actor, booking_id, frozenset({BookingStatus.CLOSED}), UserRole.CUSTOMER
    )

    existing = await db.scalar(select(Review.id).where(Review.booking_id == booking.id))
    if existing is not None:
        raise InvalidTransition("This booking has already been reviewed")

    review = Review(
        booking_id=booking.id,
        customer_id=booking.customer_id,
        provider_id=booking.provider_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    await db.flush()

    # Recalculate and denormalize aggregate rating on ProviderProfile
    avg, count = (
        await db.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(
                Review.provider_id == booking.provider_id
            )
        )
    ).one()
    profile = await db.get(ProviderProfile, booking.provider_id)
    profile.rating_avg = Decimal(str(avg or 0)).quantize(Decimal("0.01"))
    profile.rating_count = count
    logger.info(f"Review {review.id} on booking {booking.id}: provider rating now {profile.rating_avg} ({count})")

    events = [
        NotificationEvent(
            provider_user_id,
            NotificationType.REVIEW_RECEIVED,
            {"booking_id": booking.id, "rating": rating},
        )
    ]
    return review, events


# ── Reads ─────────────────────────────────────────────────────

async def get_booking(db: AsyncSession, actor: Actor, booking_id: uuid.UUID) -> Booking:
    authorize(actor, Operation.BOOKING_VIEW)
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if actor.is_admin:
        return booking
    if actor.id == booking.customer_id:
        return booking
    if actor.id == await _provider_user_id(db, booking.provider_id):
        return booking
    raise Forbidden("You are not a party to this booking")


async def list_bookings(
    db: AsyncSession,
    actor: Actor,
    status: Optional[BookingStatus] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Booking], int]:
    """Customers see their own bookings, providers their assigned ones, admins all."""
    authorize(actor, Operation.BOOKING_LIST)

    query = select(Booking)
    if actor.role == UserRole.CUSTOMER:
        query = query.where(Booking.customer_id == actor.id)
    elif actor.role == UserRole.PROVIDER:
        query = query.join(ProviderProfile, ProviderProfile.id == Booking.provider_id).where(
            ProviderProfile.user_id == actor.id
        )
    if status is not None:
        query = query.where(Booking.status == status)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc(), Booking.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total or 0
