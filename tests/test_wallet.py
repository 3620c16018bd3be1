"""
tests/test_wallet.py
Wallet endpoints: balance summary, deposit and withdrawal requests, and the
transaction history written by booking payment.
"""

from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.wallet import ledger
from shared.errors import InsufficientFunds, ValidationError
from shared.models.models import BookingStatus, ProviderProfile, User, Wallet, WalletTransactionType
from tests.factories import actor_of, auth_headers, balance_of, fund_wallet, make_booking


# ── Summary ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_is_created_on_first_read(client: AsyncClient, db: AsyncSession, customer: User):
    response = await client.get("/wallet", headers=auth_headers(customer))
    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == str(customer.id)
    assert data["balance"] == "0.00"
    assert data["pending_requests"] == 0
    assert await db.get(Wallet, customer.id) is not None


@pytest.mark.asyncio
async def test_admin_has_no_wallet(client: AsyncClient, admin_user: User):
    response = await client.get("/wallet", headers=auth_headers(admin_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_get_or_create_wallet_is_stable(db: AsyncSession, customer: User):
    first = await ledger.get_or_create_wallet(db, customer.id)
    second = await ledger.get_or_create_wallet(db, customer.id, lock=True)
    await db.commit()
    assert first.user_id == second.user_id == customer.id
    assert second.balance == Decimal("0.00")


# ── Deposits ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deposit_request_leaves_balance_alone(client: AsyncClient, db: AsyncSession, customer: User):
    response = await client.post(
        "/wallet/deposit-requests",
        json={"amount": "500.00", "reference": " UPI-88213 ", "screenshot_url": "s3://proofs/88213.png"},
        headers=auth_headers(customer),
    )
    assert response.status_code == 201
    data = response.json()
    assert data["type"] == "deposit"
    assert data["status"] == "pending"
    assert data["amount"] == "500.00"
    assert data["reference"] == "UPI-88213"
    assert data["resolved_at"] is None

    assert await balance_of(db, customer) == Decimal("0.00")
    summary = await client.get("/wallet", headers=auth_headers(customer))
    assert summary.json()["pending_requests"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"amount": "0", "reference": "UPI-1"},
        {"amount": "-20.00", "reference": "UPI-1"},
        {"amount": "10.999", "reference": "UPI-1"},
        {"amount": "50.00", "reference": "   "},
        {"amount": "50.00"},
    ],
)
async def test_deposit_request_validation(client: AsyncClient, customer: User, payload):
    response = await client.post("/wallet/deposit-requests", json=payload, headers=auth_headers(customer))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_provider_cannot_request_deposit(client: AsyncClient, provider_user: User):
    response = await client.post(
        "/wallet/deposit-requests",
        json={"amount": "50.00", "reference": "UPI-1"},
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 403


# ── Withdrawals ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_withdrawal_request(client: AsyncClient, db: AsyncSession, provider_user: User):
    await fund_wallet(db, provider_user, "300.00")
    response = await client.post(
        "/wallet/withdrawal-requests",
        json={"amount": "200.00", "payout_reference": "priya@okbank"},
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 201
    assert response.json()["type"] == "withdrawal"
    assert response.json()["status"] == "pending"
    # Nothing is held until approval
    assert await balance_of(db, provider_user) == Decimal("300.00")


@pytest.mark.asyncio
async def test_withdrawal_below_minimum(client: AsyncClient, db: AsyncSession, provider_user: User):
    await fund_wallet(db, provider_user, "300.00")
    response = await client.post(
        "/wallet/withdrawal-requests",
        json={"amount": "99.99", "payout_reference": "priya@okbank"},
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 422
    assert response.json()["details"]["minimum"] == "100.00"


@pytest.mark.asyncio
async def test_withdrawal_over_balance_fails_soft_check(client: AsyncClient, db: AsyncSession,
                                                        provider_user: User):
    await fund_wallet(db, provider_user, "150.00")
    response = await client.post(
        "/wallet/withdrawal-requests",
        json={"amount": "200.00", "payout_reference": "priya@okbank"},
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 402
    assert response.json()["code"] == "insufficient_funds"


@pytest.mark.asyncio
async def test_customer_cannot_withdraw(client: AsyncClient, db: AsyncSession, customer: User):
    await fund_wallet(db, customer, "500.00")
    response = await client.post(
        "/wallet/withdrawal-requests",
        json={"amount": "200.00", "payout_reference": "asha@okbank"},
        headers=auth_headers(customer),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_request_withdrawal_directly(db: AsyncSession, provider_user: User):
    await fund_wallet(db, provider_user, "120.00")
    with pytest.raises(InsufficientFunds):
        await ledger.request_withdrawal(db, actor_of(provider_user), Decimal("150.00"), "priya@okbank")
    with pytest.raises(ValidationError):
        await ledger.request_withdrawal(db, actor_of(provider_user), Decimal("50.00"), "priya@okbank")


# ── Debit / credit primitives ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_debit_never_goes_negative(db: AsyncSession, customer: User):
    customer_id = customer.id
    await fund_wallet(db, customer, "40.00")
    with pytest.raises(InsufficientFunds) as exc:
        await ledger.debit(db, customer_id, Decimal("40.01"))
    assert exc.value.details == {"balance": "40.00", "required": "40.01"}
    await db.rollback()
    # Rollback expires every loaded instance; read by the saved id
    balance = await db.scalar(select(Wallet.balance).where(Wallet.user_id == customer_id))
    assert balance == Decimal("40.00")


@pytest.mark.asyncio
async def test_debit_and_credit_append_transactions(db: AsyncSession, customer: User, provider_user: User):
    await fund_wallet(db, customer, "100.00")
    await fund_wallet(db, provider_user, "0.00")
    await ledger.debit(db, customer.id, Decimal("60.00"))
    await ledger.credit(db, provider_user.id, Decimal("60.00"))
    await db.commit()

    assert await balance_of(db, customer) == Decimal("40.00")
    assert await balance_of(db, provider_user) == Decimal("60.00")

    customer_txns = await ledger.list_transactions(db, actor_of(customer))
    assert [(t.type, t.amount, t.balance_after) for t in customer_txns] == [
        (WalletTransactionType.PAYMENT_SENT, Decimal("60.00"), Decimal("40.00"))
    ]


# ── History ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_transactions_after_payment(client: AsyncClient, db: AsyncSession, customer: User,
                                          provider_user: User, provider_profile: ProviderProfile):
    await fund_wallet(db, customer, "1000.00")
    await fund_wallet(db, provider_user, "0.00")
    booking = await make_booking(db, customer, provider_profile, BookingStatus.COMPLETED, Decimal("250.00"))
    paid = await client.post(f"/bookings/{booking.id}/pay", headers=auth_headers(customer))
    assert paid.status_code == 200

    customer_view = (await client.get("/wallet/transactions", headers=auth_headers(customer))).json()
    assert len(customer_view) == 1
    assert customer_view[0]["type"] == "payment_sent"
    assert customer_view[0]["amount"] == "250.00"
    assert customer_view[0]["balance_after"] == "750.00"
    assert customer_view[0]["booking_id"] == str(booking.id)

    provider_view = (await client.get("/wallet/transactions", headers=auth_headers(provider_user))).json()
    assert provider_view[0]["type"] == "payment_received"
    assert provider_view[0]["balance_after"] == "250.00"


@pytest.mark.asyncio
async def test_list_my_requests(client: AsyncClient, db: AsyncSession, customer: User, other_customer: User):
    for reference in ("UPI-1", "UPI-2"):
        await client.post(
            "/wallet/deposit-requests",
            json={"amount": "10.00", "reference": reference},
            headers=auth_headers(customer),
        )
    await client.post(
        "/wallet/deposit-requests",
        json={"amount": "10.00", "reference": "UPI-3"},
        headers=auth_headers(other_customer),
    )

    response = await client.get("/wallet/requests", headers=auth_headers(customer))
    assert response.status_code == 200
    assert {r["reference"] for r in response.json()} == {"UPI-1", "UPI-2"}
