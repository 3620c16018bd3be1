"""
services/admin/router.py
Admin-only endpoints: the wallet settlement queue, provider listing and
verification, and the platform overview.

ALL mutations are logged to AdminAuditLog in the same transaction.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_optional_redis
from services.notification.dispatcher import NotificationEvent, NotificationType, dispatch
from services.wallet import ledger
from shared.errors import InvalidTransition, NotFound
from shared.middleware.auth import get_current_actor
from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingStatus,
    ProviderProfile,
    WalletRequest,
    WalletRequestStatus,
    WalletRequestType,
)
from shared.permissions import Actor, Operation, authorize
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    AdminOverviewResponse,
    ProviderProfileListResponse,
    ProviderProfileResponse,
    ResolveRequest,
    WalletRequestListResponse,
    WalletRequestResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"], responses=ERROR_RESPONSES)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ── Wallet Settlement Queue ───────────────────────────────────

@router.get("/wallet-requests", response_model=WalletRequestListResponse)
async def list_wallet_requests(
    status_filter: Optional[WalletRequestStatus] = Query(None, alias="status"),
    type_filter: Optional[WalletRequestType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Deposit and withdrawal requests, oldest first (FIFO queue)."""
    items, total = await ledger.admin_list_requests(
        db, actor, status_filter, type_filter, page, page_size
    )
    return WalletRequestListResponse(
        items=[WalletRequestResponse.model_validate(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/wallet-requests/{request_id}/resolve", response_model=WalletRequestResponse)
async def resolve_wallet_request(
    request_id: UUID,
    data: ResolveRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=255),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_optional_redis),
):
    """
    Approve or reject a pending request.
    - deposit approve: wallet credited
    - withdrawal approve: wallet debited, or the request is rejected with
      note 'insufficient_funds' (committed) and 402 is returned
    - reject: no balance change
    """
    cache = RedisCache(redis) if redis is not None and idempotency_key else None
    if cache:
        replay_key = cache.replay_key(
            "wallet.resolve", str(actor.id), str(request_id), idempotency_key
        )
        cached = await cache.get_replay(replay_key)
        if cached is not None:
            return JSONResponse(content=cached, headers={"Idempotent-Replayed": "true"})

    resolution = await ledger.resolve_request(
        db, actor, request_id, data.decision, data.note, ip_address=_client_ip(request)
    )
    await db.commit()
    dispatch(resolution.events)

    if resolution.error is not None:
        raise resolution.error

    response = WalletRequestResponse.model_validate(resolution.request)
    if cache:
        await cache.store_replay(replay_key, response.model_dump(mode="json"))
    return response


# ── Overview ──────────────────────────────────────────────────

@router.get("/overview", response_model=AdminOverviewResponse)
async def get_overview(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Counts an operator needs at a glance. All queries run against the primary DB."""
    authorize(actor, Operation.ADMIN_OVERVIEW)

    pending = dict(
        (
            await db.execute(
                select(WalletRequest.type, func.count(WalletRequest.id))
                .where(WalletRequest.status == WalletRequestStatus.PENDING)
                .group_by(WalletRequest.type)
            )
        ).all()
    )
    unverified = await db.scalar(
        select(func.count(ProviderProfile.id)).where(ProviderProfile.is_verified.is_(False))
    )
    by_status = dict(
        (
            await db.execute(
                select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
            )
        ).all()
    )

    return AdminOverviewResponse(
        pending_deposits=pending.get(WalletRequestType.DEPOSIT, 0),
        pending_withdrawals=pending.get(WalletRequestType.WITHDRAWAL, 0),
        unverified_providers=unverified or 0,
        bookings_by_status={s.value: by_status.get(s, 0) for s in BookingStatus},
    )


# ── Providers ─────────────────────────────────────────────────

@router.get("/providers", response_model=ProviderProfileListResponse)
async def list_providers(
    verified: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Provider profiles, newest first; filter on verified to build the review queue."""
    authorize(actor, Operation.ADMIN_LIST_PROVIDERS)

    query = select(ProviderProfile)
    if verified is not None:
        query = query.where(ProviderProfile.is_verified.is_(verified))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(ProviderProfile.created_at.desc(), ProviderProfile.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return ProviderProfileListResponse(
        items=[ProviderProfileResponse.model_validate(p) for p in result.scalars().all()],
        total=total or 0,
        page=page,
        page_size=page_size,
    )


# ── Provider Verification ─────────────────────────────────────

@router.post("/providers/{provider_id}/verify", response_model=ProviderProfileResponse)
async def verify_provider(
    provider_id: UUID,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Mark a provider profile as verified. Only admins ever write is_verified."""
    authorize(actor, Operation.ADMIN_VERIFY_PROVIDER)

    result = await db.execute(
        select(ProviderProfile).where(ProviderProfile.id == provider_id).with_for_update()
    )
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFound("Provider not found")
    if profile.is_verified:
        raise InvalidTransition("Provider is already verified")

    profile.is_verified = True
    profile.verified_at = datetime.now(timezone.utc)

    db.add(
        AdminAuditLog(
            admin_id=actor.id,
            action="provider.verify",
            entity_type="provider_profile",
            entity_id=str(provider_id),
            payload={},
            ip_address=_client_ip(request),
        )
    )
    await db.commit()

    dispatch([
        NotificationEvent(
            profile.user_id,
            NotificationType.PROVIDER_VERIFIED,
            {"display_name": profile.display_name},
        )
    ])
    return ProviderProfileResponse.model_validate(profile)
