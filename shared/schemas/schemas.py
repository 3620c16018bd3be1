"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator, model_validator

from config.settings import settings
from shared.models.models import (
    BookingStatus,
    WalletRequestStatus,
    WalletRequestType,
    WalletTransactionType,
)
from shared.utils.money import format_money

# Money is accepted as a number or string and always rendered as "123.45"
Money = Annotated[
    Decimal,
    Field(max_digits=12, decimal_places=2),
    PlainSerializer(format_money, return_type=str, when_used="json"),
]


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


def _strip_required(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be blank")
    return v


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    provider_id: uuid.UUID
    service_id: uuid.UUID
    scheduled_at: datetime
    address: str = Field(..., max_length=1000)
    description: str = Field(..., max_length=4000)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("address", "description")
    @classmethod
    def validate_required_text(cls, v: str) -> str:
        return _strip_required(v)

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Scheduled time must be in the future")
        return v


class QuoteRequest(BaseSchema):
    amount: Money = Field(..., gt=0)


class RejectRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class ConfirmPriceRequest(BaseSchema):
    accept: bool


class ReviewCreateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    service_id: uuid.UUID
    status: BookingStatus
    amount: Optional[Money]
    scheduled_at: datetime
    address: str
    description: str
    notes: Optional[str]
    rejection_reason: Optional[str]
    quoted_at: Optional[datetime]
    completed_at: Optional[datetime]
    closed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class BookingListResponse(BaseSchema):
    items: List[BookingResponse]
    total: int
    page: int
    page_size: int


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: datetime


# ── Wallet ────────────────────────────────────────────────────

class DepositRequest(BaseSchema):
    amount: Money = Field(..., gt=0)
    reference: str = Field(..., max_length=255)
    screenshot_url: Optional[str] = Field(None, max_length=2000)

    @field_validator("reference")
    @classmethod
    def validate_reference(cls, v: str) -> str:
        return _strip_required(v)


class WithdrawalRequest(BaseSchema):
    amount: Money = Field(..., gt=0)
    payout_reference: str = Field(..., max_length=255)

    @field_validator("payout_reference")
    @classmethod
    def validate_payout_reference(cls, v: str) -> str:
        return _strip_required(v)


class ResolveRequest(BaseSchema):
    decision: Literal["approve", "reject"]
    note: Optional[str] = Field(None, max_length=1000)


class WalletResponse(BaseSchema):
    user_id: uuid.UUID
    balance: Money
    pending_requests: int = 0


class WalletRequestResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    type: WalletRequestType
    amount: Money
    reference: str
    screenshot_url: Optional[str]
    status: WalletRequestStatus
    resolution_note: Optional[str]
    resolved_by_id: Optional[uuid.UUID]
    requested_at: datetime
    resolved_at: Optional[datetime]


class WalletRequestListResponse(BaseSchema):
    items: List[WalletRequestResponse]
    total: int
    page: int
    page_size: int


class WalletTransactionResponse(BaseSchema):
    id: uuid.UUID
    type: WalletTransactionType
    amount: Money
    balance_after: Money
    booking_id: Optional[uuid.UUID]
    wallet_request_id: Optional[uuid.UUID]
    created_at: datetime


# ── Messaging ─────────────────────────────────────────────────

class MessageCreateRequest(BaseSchema):
    content: Optional[str] = Field(None, max_length=settings.CHAT_MESSAGE_MAX_LENGTH)
    attachment_url: Optional[str] = Field(None, max_length=2000)


class ChatMessageResponse(BaseSchema):
    id: int
    booking_id: uuid.UUID
    sender_id: uuid.UUID
    recipient_id: uuid.UUID
    content: Optional[str]
    attachment_url: Optional[str]
    is_read: bool
    created_at: datetime


class MarkReadResponse(BaseSchema):
    updated: int


class UnreadCountResponse(BaseSchema):
    unread: int


# ── Admin ─────────────────────────────────────────────────────

class AdminOverviewResponse(BaseSchema):
    pending_deposits: int
    pending_withdrawals: int
    unverified_providers: int
    bookings_by_status: Dict[str, int]


class ProviderProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    display_name: str
    payout_reference: Optional[str] = None
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None
    service_radius_km: Optional[Decimal] = None
    is_verified: bool
    verified_at: Optional[datetime]
    rating_avg: Decimal
    rating_count: int


class ProviderProfileListResponse(BaseSchema):
    items: List[ProviderProfileResponse]
    total: int
    page: int
    page_size: int


# ── Provider ──────────────────────────────────────────────────

class ProviderProfileUpdate(BaseSchema):
    display_name: str = Field(..., max_length=255)
    latitude: Optional[Decimal] = Field(None, ge=-90, le=90, decimal_places=6)
    longitude: Optional[Decimal] = Field(None, ge=-180, le=180, decimal_places=6)
    service_radius_km: Optional[Decimal] = Field(None, gt=0, le=500, decimal_places=2)
    payout_reference: Optional[str] = Field(None, max_length=255)

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        return _strip_required(v)

    @field_validator("payout_reference")
    @classmethod
    def validate_payout_reference(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None

    @model_validator(mode="after")
    def validate_location_pair(self) -> "ProviderProfileUpdate":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class EarningsResponse(BaseSchema):
    wallet_balance: Money
    total_earned: Money
    completed_jobs: int
    rating_avg: Decimal
    rating_count: int


# ── Generic ───────────────────────────────────────────────────

class ErrorResponse(BaseSchema):
    code: str
    detail: Any
    request_id: Optional[str] = None


# OpenAPI documentation of the domain error body, shared by every router
ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    status_code: {"model": ErrorResponse} for status_code in (401, 402, 403, 404, 409, 422)
}
