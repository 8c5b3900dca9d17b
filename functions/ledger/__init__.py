# Credit ledger reconciliation core
from .balance import calculate_balance_with_expiration
from .errors import (
    BillingError,
    ErrorKind,
    InsufficientCorrelationError,
    InvalidEventError,
    NoResolvablePriceError,
    ProfileNotFoundError,
    TransientStoreError,
    UnknownPriceIdError,
)
from .models import BalanceResult, ExpirationMode

__all__ = [
    "calculate_balance_with_expiration",
    "BalanceResult",
    "ExpirationMode",
    "BillingError",
    "ErrorKind",
    "UnknownPriceIdError",
    "NoResolvablePriceError",
    "InsufficientCorrelationError",
    "ProfileNotFoundError",
    "TransientStoreError",
    "InvalidEventError",
]
