"""
shared/permissions.py
The caller identity passed into every core operation, and the single table
of which roles may invoke which operation.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet

from shared.errors import Forbidden
from shared.models.models import UserRole


@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class Operation(str, Enum):
    BOOKING_CREATE = "booking.create"
    BOOKING_QUOTE = "booking.quote"
    BOOKING_REJECT = "booking.reject"
    BOOKING_CONFIRM_PRICE = "booking.confirm_price"
    BOOKING_COMPLETE = "booking.complete"
    BOOKING_PAY = "booking.pay"
    BOOKING_REVIEW = "booking.review"
    BOOKING_VIEW = "booking.view"
    BOOKING_LIST = "booking.list"

    WALLET_VIEW = "wallet.view"
    WALLET_REQUEST_DEPOSIT = "wallet.request_deposit"
    WALLET_REQUEST_WITHDRAWAL = "wallet.request_withdrawal"
    WALLET_RESOLVE_REQUEST = "wallet.resolve_request"

    CHAT_LIST = "chat.list"
    CHAT_SEND = "chat.send"
    CHAT_MARK_READ = "chat.mark_read"
    CHAT_UNREAD_COUNT = "chat.unread_count"

    PROVIDER_PROFILE_VIEW = "provider.profile_view"
    PROVIDER_PROFILE_UPDATE = "provider.profile_update"
    PROVIDER_EARNINGS = "provider.earnings"

    ADMIN_LIST_WALLET_REQUESTS = "admin.list_wallet_requests"
    ADMIN_OVERVIEW = "admin.overview"
    ADMIN_VERIFY_PROVIDER = "admin.verify_provider"
    ADMIN_LIST_PROVIDERS = "admin.list_providers"


_CUSTOMER = frozenset({UserRole.CUSTOMER})
_PROVIDER = frozenset({UserRole.PROVIDER})
_ADMIN = frozenset({UserRole.ADMIN})
_PARTIES = frozenset({UserRole.CUSTOMER, UserRole.PROVIDER})
_EVERYONE = frozenset(UserRole)

ALLOWED_ROLES: Dict[Operation, FrozenSet[UserRole]] = {
    Operation.BOOKING_CREATE: _CUSTOMER,
    Operation.BOOKING_QUOTE: _PROVIDER,
    Operation.BOOKING_REJECT: _PROVIDER,
    Operation.BOOKING_CONFIRM_PRICE: _CUSTOMER,
    Operation.BOOKING_COMPLETE: _PROVIDER,
    Operation.BOOKING_PAY: _CUSTOMER,
    Operation.BOOKING_REVIEW: _CUSTOMER,
    Operation.BOOKING_VIEW: _EVERYONE,
    Operation.BOOKING_LIST: _EVERYONE,

    Operation.WALLET_VIEW: _PARTIES,
    Operation.WALLET_REQUEST_DEPOSIT: _CUSTOMER,
    Operation.WALLET_REQUEST_WITHDRAWAL: _PROVIDER,
    Operation.WALLET_RESOLVE_REQUEST: _ADMIN,

    Operation.CHAT_LIST: _PARTIES,
    Operation.CHAT_SEND: _PARTIES,
    Operation.CHAT_MARK_READ: _PARTIES,
    Operation.CHAT_UNREAD_COUNT: _PARTIES,

    Operation.PROVIDER_PROFILE_VIEW: _PROVIDER,
    Operation.PROVIDER_PROFILE_UPDATE: _PROVIDER,
    Operation.PROVIDER_EARNINGS: _PROVIDER,

    Operation.ADMIN_LIST_WALLET_REQUESTS: _ADMIN,
    Operation.ADMIN_OVERVIEW: _ADMIN,
    Operation.ADMIN_VERIFY_PROVIDER: _ADMIN,
    Operation.ADMIN_LIST_PROVIDERS: _ADMIN,
}


def authorize(actor: Actor, operation: Operation) -> None:
    """Raise Forbidden unless the actor's role may perform the operation."""
    allowed = ALLOWED_ROLES[operation]
    if actor.role not in allowed:
        raise Forbidden(
            f"Role '{actor.role.value}' may not perform {operation.value}",
            {"operation": operation.value, "allowed_roles": sorted(r.value for r in allowed)},
        )
