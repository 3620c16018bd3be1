"""
services/provider/router.py
A provider's own profile (create on first save, then update) and the
earnings summary read from the wallet ledger and closed bookings.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.wallet import ledger
from shared.errors import NotFound
from shared.middleware.auth import get_current_actor
from shared.models.models import (
    Booking,
    BookingStatus,
    ProviderProfile,
    WalletTransaction,
    WalletTransactionType,
)
from shared.permissions import Actor, Operation, authorize
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    EarningsResponse,
    ProviderProfileResponse,
    ProviderProfileUpdate,
)
from shared.utils.money import ZERO

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/provider", tags=["Provider"], responses=ERROR_RESPONSES)


async def _own_profile(db: AsyncSession, actor: Actor, lock: bool = False):
    query = select(ProviderProfile).where(ProviderProfile.user_id == actor.id)
    if lock:
        query = query.with_for_update()
    return (await db.execute(query)).scalar_one_or_none()


# ── Profile ───────────────────────────────────────────────────

@router.get("/profile", response_model=ProviderProfileResponse)
async def get_my_profile(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    authorize(actor, Operation.PROVIDER_PROFILE_VIEW)
    profile = await _own_profile(db, actor)
    if not profile:
        raise NotFound("Provider profile not found. Please complete setup.")
    return ProviderProfileResponse.model_validate(profile)


@router.put("/profile", response_model=ProviderProfileResponse)
async def update_my_profile(
    data: ProviderProfileUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Create the profile on first save, update it afterwards.
    Fields left out keep their stored value; is_verified is not writable here.
    """
    authorize(actor, Operation.PROVIDER_PROFILE_UPDATE)

    profile = await _own_profile(db, actor, lock=True)
    created = profile is None
    if created:
        profile = ProviderProfile(user_id=actor.id, display_name=data.display_name)
        db.add(profile)

    for field, value in data.model_dump(exclude_none=True).items():
        setattr(profile, field, value)

    await db.commit()
    logger.info(f"Provider profile {profile.id} {'created' if created else 'updated'} by {actor.id}")
    return ProviderProfileResponse.model_validate(profile)


# ── Earnings ──────────────────────────────────────────────────

@router.get("/earnings", response_model=EarningsResponse)
async def get_my_earnings(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Wallet balance, lifetime payments received, closed jobs and rating."""
    authorize(actor, Operation.PROVIDER_EARNINGS)
    profile = await _own_profile(db, actor)
    if not profile:
        raise NotFound("Provider profile not found. Please complete setup.")

    wallet = await ledger.get_or_create_wallet(db, actor.id)

    total_earned = await db.scalar(
        select(func.sum(WalletTransaction.amount)).where(
            WalletTransaction.user_id == actor.id,
            WalletTransaction.type == WalletTransactionType.PAYMENT_RECEIVED,
        )
    )
    completed_jobs = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.provider_id == profile.id,
            Booking.status == BookingStatus.CLOSED,
        )
    )

    return EarningsResponse(
        wallet_balance=wallet.balance,
        total_earned=total_earned or ZERO,
        completed_jobs=completed_jobs or 0,
        rating_avg=profile.rating_avg,
        rating_count=profile.rating_count,
    )
