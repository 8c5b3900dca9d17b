"""
Shared pytest fixtures for credit ledger tests.
"""

import os
import sys
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons and caches between tests."""
    yield
    from ledger.aws_clients import reset_clients
    from ledger.catalog import reset_catalog
    from ledger.gateway import reset_stripe_api_key_cache

    reset_clients()
    reset_catalog()
    reset_stripe_api_key_cache()


def create_dynamodb_tables(dynamodb):
    """Create the ledger, subscription and webhook event tables."""
    dynamodb.create_table(
        TableName="creditledger-ledger",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "provider_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "customer-index",
                "KeySchema": [{"AttributeName": "provider_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="creditledger-subscriptions",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="creditledger-webhook-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with all tables created."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


def seed_account(
    dynamodb,
    user_id="user_1",
    customer_id="cus_1",
    subscription_credits=0,
    purchased_credits=0,
    status="active",
    tier=None,
    subscription_id=None,
):
    """Write an account row plus opening-balance entries so the log sums to the balances."""
    table = dynamodb.Table("creditledger-ledger")
    item = {
        "pk": user_id,
        "sk": "ACCOUNT",
        "subscription_credit_balance": subscription_credits,
        "purchased_credit_balance": purchased_credits,
        "subscription_status": status,
        "version": 0,
    }
    if customer_id:
        item["provider_customer_id"] = customer_id
    if tier:
        item["subscription_tier"] = tier
    if subscription_id:
        item["subscription_id"] = subscription_id
    table.put_item(Item=item)

    now = datetime.now(timezone.utc).isoformat()
    for pool, amount in (("subscription", subscription_credits), ("purchased", purchased_credits)):
        if amount:
            table.put_item(
                Item={
                    "pk": user_id,
                    "sk": f"TX#opening_{pool}#bonus",
                    "transaction_id": f"opening-{pool}",
                    "amount": amount,
                    "type": "bonus",
                    "pool": pool,
                    "reference_id": f"opening_{pool}",
                    "description": "Opening balance",
                    "created_at": now,
                }
            )


class FakeGateway:
    """PaymentGateway returning canned subscription snapshots."""

    def __init__(self, snapshots=None):
        self.snapshots = dict(snapshots or {})
        self.calls = []

    def get_subscription(self, subscription_id):
        self.calls.append(subscription_id)
        return self.snapshots.get(subscription_id)


@pytest.fixture
def catalog():
    from ledger.catalog import PriceCatalog
    from ledger.models import ExpirationMode, PackDefinition, PlanDefinition

    return PriceCatalog(
        plans=[
            PlanDefinition("starter", "Starter", "price_starter", 100, 1200, ExpirationMode.NEVER),
            PlanDefinition("pro", "Pro", "price_pro", 1000, 6000, ExpirationMode.NEVER),
            PlanDefinition("cycle", "Cycle", "price_cycle", 500, 600, ExpirationMode.END_OF_CYCLE),
            PlanDefinition("uncapped", "Uncapped", "price_uncapped", 300, None, ExpirationMode.NEVER),
        ],
        packs=[
            PackDefinition("small", "Small Pack", "price_pack_small", 50),
            PackDefinition("large", "Large Pack", "price_pack_large", 600),
        ],
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(mock_dynamodb):
    from ledger.store import DynamoLedgerStore

    return DynamoLedgerStore(dynamodb=mock_dynamodb)


@pytest.fixture
def ctx(store, catalog, gateway):
    from ledger.context import HandlerContext

    return HandlerContext(store=store, catalog=catalog, gateway=gateway)


@pytest.fixture
def idempotency(mock_dynamodb):
    from ledger.idempotency import IdempotencyStore

    return IdempotencyStore(dynamodb=mock_dynamodb)


@pytest.fixture
def router(store, idempotency, gateway, catalog):
    from ledger.router import WebhookRouter

    return WebhookRouter(store=store, idempotency=idempotency, gateway=gateway, catalog=catalog)


@pytest.fixture
def stripe_event():
    """Factory for Stripe event envelopes."""
    counter = {"n": 0}

    def _make(event_type, obj, event_id=None, previous_attributes=None):
        counter["n"] += 1
        data = {"object": obj}
        if previous_attributes is not None:
            data["previous_attributes"] = previous_attributes
        return {
            "id": event_id or f"evt_test_{counter['n']}",
            "type": event_type,
            "created": 1700000000,
            "livemode": False,
            "data": data,
        }

    return _make


@pytest.fixture
def invoice_object():
    """Factory for Stripe invoice payloads with a single subscription line."""

    def _make(invoice_id="in_1", customer="cus_1", subscription="sub_1", price="price_starter", lines=None, **extra):
        if lines is None:
            lines = [{"type": "subscription", "price": {"id": price}, "proration": False, "amount": 1000}]
        invoice = {
            "id": invoice_id,
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "payment_intent": f"pi_for_{invoice_id}",
            "amount_paid": 1000,
            "lines": {"data": lines},
        }
        invoice.update(extra)
        return invoice

    return _make


@pytest.fixture
def subscription_object():
    """Factory for Stripe subscription payloads."""

    def _make(subscription_id="sub_1", customer="cus_1", status="active", price="price_starter", **extra):
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "items": {"data": [{"price": {"id": price}}]},
            "current_period_start": 1700000000,
            "current_period_end": 1702592000,
            "cancel_at_period_end": False,
            "canceled_at": None,
        }
        subscription.update(extra)
        return subscription

    return _make
