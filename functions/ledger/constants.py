"""
Configuration constants for the credit ledger.

Table names and tunables come from the Lambda environment; price ids use `or`
so an empty string from the deploy template falls back to the placeholder id.
"""

import os

LEDGER_TABLE = os.environ.get("LEDGER_TABLE", "creditledger-ledger")
SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "creditledger-subscriptions")
WEBHOOK_EVENTS_TABLE = os.environ.get("WEBHOOK_EVENTS_TABLE", "creditledger-webhook-events")

CUSTOMER_INDEX = "customer-index"
ACCOUNT_SK = "ACCOUNT"
TRANSACTION_SK_PREFIX = "TX#"

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS", "5"))
STRIPE_CACHE_TTL = 300  # 5 minutes

EVENT_CLAIM_LEASE_SECONDS = int(os.environ.get("EVENT_CLAIM_LEASE_SECONDS", "900"))
EVENT_RETENTION_DAYS = 90

# Default rollover cap is this many cycles worth of credits
ROLLOVER_MULTIPLIER = 6

CREDIT_EXPIRATION_MODE = os.environ.get("CREDIT_EXPIRATION_MODE") or "never"

# (key, display name, env var, fallback price id, credits per cycle)
PLAN_SETTINGS = (
    ("hobby", "Hobby", "STRIPE_PRICE_HOBBY", "price_hobby", 200),
    ("pro", "Pro", "STRIPE_PRICE_PRO", "price_pro", 1000),
    ("business", "Business", "STRIPE_PRICE_BUSINESS", "price_business", 5000),
)

# (key, display name, env var, fallback price id, credits)
PACK_SETTINGS = (
    ("small", "Small Pack", "STRIPE_PRICE_PACK_SMALL", "price_pack_small", 50),
    ("medium", "Medium Pack", "STRIPE_PRICE_PACK_MEDIUM", "price_pack_medium", 200),
    ("large", "Large Pack", "STRIPE_PRICE_PACK_LARGE", "price_pack_large", 600),
)

# DynamoDB error codes that indicate throttling (retryable)
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
