"""
services/booking/router.py
HTTP surface of the booking lifecycle.
States: PENDING_PROVIDER → AWAITING_CUSTOMER_CONFIRMATION → ACCEPTED
        → COMPLETED → CLOSED, with REJECTED from the first two.

Each state-changing route commits the operation's transaction and only
then dispatches its notifications.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_optional_redis
from services.booking import machine
from services.notification.dispatcher import dispatch
from shared.middleware.auth import get_current_actor
from shared.models.models import BookingStatus
from shared.permissions import Actor
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    ConfirmPriceRequest,
    QuoteRequest,
    RejectRequest,
    ReviewCreateRequest,
    ReviewResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"], responses=ERROR_RESPONSES)


# ── Creation ──────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Customer requests a service from a provider. Starts in PENDING_PROVIDER."""
    booking, events = await machine.create(
        db,
        actor,
        provider_id=data.provider_id,
        service_id=data.service_id,
        scheduled_at=data.scheduled_at,
        address=data.address,
        description=data.description,
        notes=data.notes,
    )
    await db.commit()
    dispatch(events)
    return BookingResponse.model_validate(booking)


# ── Reads ─────────────────────────────────────────────────────

@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    bookings, total = await machine.list_bookings(db, actor, status_filter, page, page_size)
    return BookingListResponse(
        items=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await machine.get_booking(db, actor, booking_id)
    return BookingResponse.model_validate(booking)


# ── Provider actions ──────────────────────────────────────────

@router.post("/{booking_id}/quote", response_model=BookingResponse)
async def quote_booking(
    booking_id: UUID,
    data: QuoteRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Provider sets the price: PENDING_PROVIDER → AWAITING_CUSTOMER_CONFIRMATION."""
    booking, events = await machine.set_price_and_accept(db, actor, booking_id, data.amount)
    await db.commit()
    dispatch(events)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    data: Optional[RejectRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    booking, events = await machine.reject(db, actor, booking_id, data.reason if data else None)
    await db.commit()
    dispatch(events)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Provider marks the job done; the customer is told payment is due."""
    booking, events = await machine.mark_completed(db, actor, booking_id)
    await db.commit()
    dispatch(events)
    return BookingResponse.model_validate(booking)


# ── Customer actions ──────────────────────────────────────────

@router.post("/{booking_id}/confirm-price", response_model=BookingResponse)
async def confirm_price(
    booking_id: UUID,
    data: ConfirmPriceRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    booking, events = await machine.confirm_price(db, actor, booking_id, data.accept)
    await db.commit()
    dispatch(events)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/pay", response_model=BookingResponse)
async def pay_booking(
    booking_id: UUID,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=255),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_optional_redis),
):
    """
    Pay a COMPLETED booking from the customer's wallet → CLOSED.
    A retried request carrying the same Idempotency-Key replays the first
    success instead of failing the state guard.
    """
    cache = RedisCache(redis) if redis is not None and idempotency_key else None
    if cache:
        replay_key = cache.replay_key("booking.pay", str(actor.id), str(booking_id), idempotency_key)
        cached = await cache.get_replay(replay_key)
        if cached is not None:
            return JSONResponse(content=cached, headers={"Idempotent-Replayed": "true"})

    booking, events = await machine.pay(db, actor, booking_id)
    await db.commit()
    dispatch(events)

    response = BookingResponse.model_validate(booking)
    if cache:
        await cache.store_replay(replay_key, response.model_dump(mode="json"))
    return response


@router.post("/{booking_id}/review", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def review_booking(
    booking_id: UUID,
    data: ReviewCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """One review per CLOSED booking; updates the provider's rating aggregate."""
    review, events = await machine.attach_review(db, actor, booking_id, data.rating, data.comment)
    await db.commit()
    dispatch(events)
    return ReviewResponse.model_validate(review)
