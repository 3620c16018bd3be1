"""
services/wallet/ledger.py
Wallet ledger: lazily created per-user balances, admin-mediated deposit and
withdrawal requests, and the debit/credit primitives used by booking
payment.

Every balance mutation happens on a row locked with SELECT ... FOR UPDATE
and appends a WalletTransaction carrying the resulting balance. Balances
never go negative: debits check first and raise InsufficientFunds without
touching the row (the DB CHECK constraint backs this up).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.dispatcher import NotificationEvent, NotificationType
from shared.errors import InsufficientFunds, InvalidTransition, NotFound, ValidationError
from shared.models.models import (
    AdminAuditLog,
    Wallet,
    WalletRequest,
    WalletRequestStatus,
    WalletRequestType,
    WalletTransaction,
    WalletTransactionType,
)
from shared.permissions import Actor, Operation, authorize
from shared.utils.money import ZERO, format_money, positive_money

logger = logging.getLogger(__name__)

INSUFFICIENT_FUNDS_NOTE = "insufficient_funds"


@dataclass
class Resolution:
    """
    Outcome of resolve_request. error is set when the persisted outcome
    (an auto-rejected withdrawal) must still be reported as a failure.
    """
    request: WalletRequest
    events: List[NotificationEvent] = field(default_factory=list)
    error: Optional[InsufficientFunds] = None


# ── Wallet rows ───────────────────────────────────────────────

async def get_or_create_wallet(
    db: AsyncSession,
    user_id: uuid.UUID,
    lock: bool = False,
) -> Wallet:
    """
    Return the user's wallet, creating it with a zero balance on first use.
    Two concurrent first accesses both try the insert; the loser hits the
    primary key inside its savepoint and re-reads the winner's row.
    """
    query = select(Wallet).where(Wallet.user_id == user_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)

    wallet = (await db.execute(query)).scalar_one_or_none()
    if wallet is not None:
        return wallet

    try:
        async with db.begin_nested():
            db.add(Wallet(user_id=user_id, balance=ZERO))
    except IntegrityError:
        logger.info(f"Wallet for {user_id} created concurrently, re-reading")

    return (await db.execute(query)).scalar_one()


async def lock_wallets(db: AsyncSession, user_ids: Iterable[uuid.UUID]) -> List[Wallet]:
    """Lock several wallets in ascending user id order."""
    return [await get_or_create_wallet(db, uid, lock=True) for uid in sorted(set(user_ids))]


async def debit(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    booking_id: Optional[uuid.UUID] = None,
    txn_type: WalletTransactionType = WalletTransactionType.PAYMENT_SENT,
    wallet_request_id: Optional[uuid.UUID] = None,
) -> Wallet:
    amount = positive_money(amount)
    wallet = await get_or_create_wallet(db, user_id, lock=True)
    if wallet.balance < amount:
        raise InsufficientFunds(
            "Insufficient wallet balance",
            {"balance": format_money(wallet.balance), "required": format_money(amount)},
        )

    wallet.balance = wallet.balance - amount
    db.add(
        WalletTransaction(
            user_id=user_id,
            type=txn_type,
            amount=amount,
            balance_after=wallet.balance,
            booking_id=booking_id,
            wallet_request_id=wallet_request_id,
        )
    )
    logger.info(f"Wallet {user_id}: -{format_money(amount)} ({txn_type.value}) → {format_money(wallet.balance)}")
    return wallet


async def credit(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: Decimal,
    booking_id: Optional[uuid.UUID] = None,
    txn_type: WalletTransactionType = WalletTransactionType.PAYMENT_RECEIVED,
    wallet_request_id: Optional[uuid.UUID] = None,
) -> Wallet:
    amount = positive_money(amount)
    wallet = await get_or_create_wallet(db, user_id, lock=True)

    wallet.balance = wallet.balance + amount
    db.add(
        WalletTransaction(
            user_id=user_id,
            type=txn_type,
            amount=amount,
            balance_after=wallet.balance,
            booking_id=booking_id,
            wallet_request_id=wallet_request_id,
        )
    )
    logger.info(f"Wallet {user_id}: +{format_money(amount)} ({txn_type.value}) → {format_money(wallet.balance)}")
    return wallet


# ── Requests ──────────────────────────────────────────────────

async def request_deposit(
    db: AsyncSession,
    actor: Actor,
    amount: Decimal,
    reference: str,
    screenshot_url: Optional[str] = None,
) -> WalletRequest:
    """Record an off-platform top-up for an admin to verify. No balance change."""
    authorize(actor, Operation.WALLET_REQUEST_DEPOSIT)
    amount = positive_money(amount)
    if not reference or not reference.strip():
        raise ValidationError("reference is required", {"field": "reference"})

    request = WalletRequest(
        user_id=actor.id,
        type=WalletRequestType.DEPOSIT,
        amount=amount,
        reference=reference.strip(),
        screenshot_url=screenshot_url,
        status=WalletRequestStatus.PENDING,
    )
    db.add(request)
    await db.flush()
    logger.info(f"Deposit request {request.id} by {actor.id} for {format_money(amount)}")
    return request


async def request_withdrawal(
    db: AsyncSession,
    actor: Actor,
    amount: Decimal,
    payout_reference: str,
) -> WalletRequest:
    """
    Ask for a payout. The balance check here is advisory (unlocked, nothing
    is held); approval re-checks against the locked wallet.
    """
    authorize(actor, Operation.WALLET_REQUEST_WITHDRAWAL)
    amount = positive_money(amount)
    if amount < settings.WALLET_MIN_WITHDRAWAL:
        raise ValidationError(
            f"Minimum withdrawal is {format_money(settings.WALLET_MIN_WITHDRAWAL)}",
            {"field": "amount", "minimum": format_money(settings.WALLET_MIN_WITHDRAWAL)},
        )
    if not payout_reference or not payout_reference.strip():
        raise ValidationError("payout_reference is required", {"field": "payout_reference"})

    wallet = await get_or_create_wallet(db, actor.id)
    # Unlocked read, nothing held. The binding check is the locked re-read
    # in resolve_request at approval time.
    if amount > wallet.balance:
        raise InsufficientFunds(
            "Withdrawal exceeds wallet balance",
            {"balance": format_money(wallet.balance), "required": format_money(amount)},
        )

    request = WalletRequest(
        user_id=actor.id,
        type=WalletRequestType.WITHDRAWAL,
        amount=amount,
        reference=payout_reference.strip(),
        status=WalletRequestStatus.PENDING,
    )
    db.add(request)
    await db.flush()
    logger.info(f"Withdrawal request {request.id} by {actor.id} for {format_money(amount)}")
    return request


async def resolve_request(
    db: AsyncSession,
    actor: Actor,
    request_id: uuid.UUID,
    decision: str,
    note: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Resolution:
    """
    Approve or reject a pending request. Locks the request row, then the
    wallet row. An approved withdrawal the wallet can no longer cover is
    rejected with note 'insufficient_funds' and returned with error set:
    the caller must commit that rejection before reporting the error.
    """
    authorize(actor, Operation.WALLET_RESOLVE_REQUEST)
    if decision not in ("approve", "reject"):
        raise ValidationError("decision must be 'approve' or 'reject'", {"field": "decision"})

    result = await db.execute(
        select(WalletRequest)
        .where(WalletRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFound("Wallet request not found")
    if request.status != WalletRequestStatus.PENDING:
        raise InvalidTransition(
            f"Wallet request is already {request.status.value}",
            {"status": request.status.value},
        )

    error: Optional[InsufficientFunds] = None
    resolution_note = note

    if decision == "reject":
        request.status = WalletRequestStatus.REJECTED
    elif request.type == WalletRequestType.DEPOSIT:
        await credit(
            db, request.user_id, request.amount,
            txn_type=WalletTransactionType.DEPOSIT, wallet_request_id=request.id,
        )
        request.status = WalletRequestStatus.APPROVED
    else:
        wallet = await get_or_create_wallet(db, request.user_id, lock=True)
        if wallet.balance < request.amount:
            request.status = WalletRequestStatus.REJECTED
            resolution_note = INSUFFICIENT_FUNDS_NOTE
            error = InsufficientFunds(
                "Wallet balance no longer covers this withdrawal; request rejected",
                {
                    "balance": format_money(wallet.balance),
                    "required": format_money(request.amount),
                    "request_id": str(request.id),
                },
            )
        else:
            await debit(
                db, request.user_id, request.amount,
                txn_type=WalletTransactionType.WITHDRAWAL, wallet_request_id=request.id,
            )
            request.status = WalletRequestStatus.APPROVED

    request.resolution_note = resolution_note
    request.resolved_by_id = actor.id
    request.resolved_at = datetime.now(timezone.utc)

    db.add(
        AdminAuditLog(
            admin_id=actor.id,
            action=f"wallet_request.{request.status.value}",
            entity_type="wallet_request",
            entity_id=str(request.id),
            payload={
                "type": request.type.value,
                "amount": format_money(request.amount),
                "decision": decision,
                "note": resolution_note,
            },
            ip_address=ip_address,
        )
    )
    logger.info(
        f"Wallet request {request.id} ({request.type.value}) {request.status.value} by admin {actor.id}"
    )

    event_type = (
        NotificationType.WALLET_REQUEST_APPROVED
        if request.status == WalletRequestStatus.APPROVED
        else NotificationType.WALLET_REQUEST_REJECTED
    )
    events = [
        NotificationEvent(
            request.user_id,
            event_type,
            {
                "request_id": request.id,
                "request_type": request.type.value,
                "amount": format_money(request.amount),
                "note": resolution_note or "",
            },
        )
    ]
    return Resolution(request=request, events=events, error=error)


# ── Reads ─────────────────────────────────────────────────────

async def wallet_summary(db: AsyncSession, actor: Actor) -> Tuple[Wallet, int]:
    """Balance plus the number of the actor's still-pending requests."""
    authorize(actor, Operation.WALLET_VIEW)
    wallet = await get_or_create_wallet(db, actor.id)
    pending = await db.scalar(
        select(func.count(WalletRequest.id)).where(
            WalletRequest.user_id == actor.id,
            WalletRequest.status == WalletRequestStatus.PENDING,
        )
    )
    return wallet, pending or 0


async def list_requests(db: AsyncSession, actor: Actor) -> List[WalletRequest]:
    authorize(actor, Operation.WALLET_VIEW)
    result = await db.execute(
        select(WalletRequest)
        .where(WalletRequest.user_id == actor.id)
        .order_by(WalletRequest.requested_at.desc())
    )
    return list(result.scalars().all())


async def list_transactions(
    db: AsyncSession,
    actor: Actor,
    limit: int = 50,
) -> List[WalletTransaction]:
    authorize(actor, Operation.WALLET_VIEW)
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == actor.id)
        .order_by(WalletTransaction.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def admin_list_requests(
    db: AsyncSession,
    actor: Actor,
    status: Optional[WalletRequestStatus] = None,
    request_type: Optional[WalletRequestType] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[WalletRequest], int]:
    """Oldest first, so the settlement queue is worked in arrival order."""
    authorize(actor, Operation.ADMIN_LIST_WALLET_REQUESTS)
    query = select(WalletRequest)
    if status is not None:
        query = query.where(WalletRequest.status == status)
    if request_type is not None:
        query = query.where(WalletRequest.type == request_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(WalletRequest.requested_at.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total or 0
