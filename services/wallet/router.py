"""
services/wallet/router.py
Wallet endpoints for customers and providers: balance, history, and the
deposit / withdrawal requests an admin settles by hand.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.wallet import ledger
from shared.middleware.auth import get_current_actor
from shared.permissions import Actor
from shared.schemas.schemas import (
    ERROR_RESPONSES,
    DepositRequest,
    WalletRequestResponse,
    WalletResponse,
    WalletTransactionResponse,
    WithdrawalRequest,
)

router = APIRouter(prefix="/wallet", tags=["Wallet"], responses=ERROR_RESPONSES)


@router.get("", response_model=WalletResponse)
async def get_wallet(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    wallet, pending = await ledger.wallet_summary(db, actor)
    return WalletResponse(user_id=wallet.user_id, balance=wallet.balance, pending_requests=pending)


@router.get("/requests", response_model=List[WalletRequestResponse])
async def list_my_requests(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    requests = await ledger.list_requests(db, actor)
    return [WalletRequestResponse.model_validate(r) for r in requests]


@router.get("/transactions", response_model=List[WalletTransactionResponse])
async def list_my_transactions(
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    transactions = await ledger.list_transactions(db, actor, limit=limit)
    return [WalletTransactionResponse.model_validate(t) for t in transactions]


@router.post(
    "/deposit-requests",
    response_model=WalletRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_deposit_request(
    data: DepositRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Customer reports an off-platform top-up. The balance moves only on admin approval."""
    request = await ledger.request_deposit(
        db, actor, data.amount, data.reference, data.screenshot_url
    )
    await db.commit()
    return WalletRequestResponse.model_validate(request)


@router.post(
    "/withdrawal-requests",
    response_model=WalletRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_withdrawal_request(
    data: WithdrawalRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Provider asks for a payout. Nothing is held until an admin approves it."""
    request = await ledger.request_withdrawal(db, actor, data.amount, data.payout_reference)
    await db.commit()
    return WalletRequestResponse.model_validate(request)
