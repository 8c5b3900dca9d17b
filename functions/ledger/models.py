"""
Domain types for the credit ledger.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    CLAWBACK = "clawback"
    EXPIRED = "expired"


# Types whose positive amounts count as a grant a refund can reverse
GRANT_TYPES = (TransactionType.SUBSCRIPTION, TransactionType.PURCHASE, TransactionType.BONUS)


class CreditPool(str, Enum):
    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class ExpirationMode(str, Enum):
    NEVER = "never"
    END_OF_CYCLE = "end_of_cycle"
    ROLLING_WINDOW = "rolling_window"


@dataclass(frozen=True)
class PlanDefinition:
    key: str
    name: str
    price_id: str
    credits_per_cycle: int
    max_rollover: Optional[int]  # None = uncapped
    expiration_mode: ExpirationMode = ExpirationMode.NEVER


@dataclass(frozen=True)
class PackDefinition:
    key: str
    name: str
    price_id: str
    credits: int


@dataclass(frozen=True)
class PlanMatch:
    type: str  # "plan" or "pack"
    definition: Union[PlanDefinition, PackDefinition]


@dataclass(frozen=True)
class BalanceResult:
    new_balance: int
    expired_amount: int


@dataclass
class UserAccount:
    id: str
    provider_customer_id: Optional[str] = None
    subscription_credit_balance: int = 0
    purchased_credit_balance: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscription_tier: Optional[str] = None
    subscription_id: Optional[str] = None
    version: int = 0

    @property
    def total_balance(self) -> int:
        return self.subscription_credit_balance + self.purchased_credit_balance

    def balance(self, pool: CreditPool) -> int:
        if pool is CreditPool.SUBSCRIPTION:
            return self.subscription_credit_balance
        return self.purchased_credit_balance

    @classmethod
    def from_item(cls, item: dict) -> "UserAccount":
        return cls(
            id=item["pk"],
            provider_customer_id=item.get("provider_customer_id"),
            subscription_credit_balance=int(item.get("subscription_credit_balance", 0)),
            purchased_credit_balance=int(item.get("purchased_credit_balance", 0)),
            subscription_status=SubscriptionStatus(item.get("subscription_status") or "none"),
            subscription_tier=item.get("subscription_tier"),
            subscription_id=item.get("subscription_id"),
            version=int(item.get("version", 0)),
        )


@dataclass(frozen=True)
class CreditTransaction:
    """Immutable ledger entry. `key` is unique per user."""

    user_id: str
    amount: int
    type: TransactionType
    pool: CreditPool
    reference_id: Optional[str]
    description: str
    key: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def create(
        cls,
        user_id: str,
        amount: int,
        type: TransactionType,
        pool: CreditPool,
        reference_id: Optional[str],
        description: str,
        key_suffix: Optional[str] = None,
    ) -> "CreditTransaction":
        tx_id = str(uuid.uuid4())
        key = f"{reference_id or 'none:' + tx_id}#{type.value}"
        if key_suffix:
            key = f"{key}#{key_suffix}"
        return cls(
            user_id=user_id,
            amount=amount,
            type=type,
            pool=pool,
            reference_id=reference_id,
            description=description,
            key=key,
            id=tx_id,
        )

    def to_item(self, sort_key: str) -> dict:
        item = {
            "pk": self.user_id,
            "sk": sort_key,
            "transaction_id": self.id,
            "amount": self.amount,
            "type": self.type.value,
            "pool": self.pool.value,
            "description": self.description,
            "created_at": self.created_at,
        }
        if self.reference_id is not None:
            item["reference_id"] = self.reference_id
        return item

    @classmethod
    def from_item(cls, item: dict, prefix: str) -> "CreditTransaction":
        return cls(
            user_id=item["pk"],
            amount=int(item["amount"]),
            type=TransactionType(item["type"]),
            pool=CreditPool(item["pool"]),
            reference_id=item.get("reference_id"),
            description=item.get("description", ""),
            key=item["sk"][len(prefix):],
            id=item["transaction_id"],
            created_at=item["created_at"],
        )


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    user_id: str
    status: str  # provider-native status
    price_id: Optional[str]
    current_period_start: Optional[int]
    current_period_end: Optional[int]
    canceled_at: Optional[int] = None
    cancel_at_period_end: bool = False

    def to_item(self) -> dict:
        item = {
            "pk": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "cancel_at_period_end": self.cancel_at_period_end,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        for name in ("price_id", "current_period_start", "current_period_end", "canceled_at"):
            value = getattr(self, name)
            if value is not None:
                item[name] = value
        return item

    @classmethod
    def from_item(cls, item: dict) -> "SubscriptionRecord":
        def _int(name):
            value = item.get(name)
            return int(value) if value is not None else None

        return cls(
            id=item["pk"],
            user_id=item["user_id"],
            status=item["status"],
            price_id=item.get("price_id"),
            current_period_start=_int("current_period_start"),
            current_period_end=_int("current_period_end"),
            canceled_at=_int("canceled_at"),
            cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
        )


@dataclass(frozen=True)
class InvoiceLine:
    price_id: Optional[str]
    line_type: str = "other"  # "subscription" or "other"
    proration: bool = False
    amount: int = 0


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider view of a subscription, decoded from a payload or the API."""

    id: str
    customer_id: Optional[str]
    status: str
    lines: tuple = ()
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class EventClaim:
    """Proof that this worker currently owns processing of an event."""

    event_id: str
    event_type: str
    token: str
