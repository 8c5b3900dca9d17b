"""
Tests for invoice reconciliation: cycle grants, rollover caps and expiry.
"""

from unittest.mock import MagicMock

import pytest
import stripe

from conftest import seed_account
from ledger.errors import (
    NoResolvablePriceError,
    ProfileNotFoundError,
    TransientStoreError,
    UnknownPriceIdError,
)
from ledger.events import decode_event, decode_subscription_snapshot
from ledger.models import CreditPool, SubscriptionStatus, TransactionType


def _invoice(obj, event_type="invoice.paid"):
    return decode_event(event_type, {"object": obj})


class TestCycleGrant:
    def test_grants_plan_credits(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 100
        assert tx.type is TransactionType.SUBSCRIPTION
        assert tx.pool is CreditPool.SUBSCRIPTION
        assert tx.reference_id == "invoice_in_1"
        assert tx.description == "Monthly subscription renewal - Starter plan"
        assert ctx.store.get_user("user_1").subscription_credit_balance == 100

    def test_grant_up_to_exactly_the_cap(self, mock_dynamodb, ctx, invoice_object):
        """1100 + 100 with a cap of 1200 lands on 1200."""
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=1100)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 100
        assert ctx.store.get_user("user_1").total_balance == 1200

    def test_grant_is_capped(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=1100, purchased_credits=50)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 50
        assert "capped from 100 due to rollover limit of 1200" in tx.description
        assert ctx.store.get_user("user_1").total_balance == 1200

    def test_nothing_written_at_the_cap(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=1200)

        assert handle_invoice_paid(ctx, _invoice(invoice_object())) is None

        assert ctx.store.find_transaction_group("user_1", "invoice_in_1") == []
        assert ctx.store.get_user("user_1").total_balance == 1200

    def test_uncapped_plan(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=5000)

        handle_invoice_paid(ctx, _invoice(invoice_object(price="price_uncapped")))

        assert ctx.store.get_user("user_1").subscription_credit_balance == 5300

    def test_negative_balance_is_not_forgiven(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=-50)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 100
        assert ctx.store.get_user("user_1").subscription_credit_balance == 50

    def test_redelivered_invoice_grants_once(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)
        event = _invoice(invoice_object())

        assert handle_invoice_paid(ctx, event) is not None
        assert handle_invoice_paid(ctx, _invoice(invoice_object(), "invoice.payment_succeeded")) is None

        assert ctx.store.get_user("user_1").subscription_credit_balance == 100
        assert len(ctx.store.find_transaction_group("user_1", "invoice_in_1")) == 1

    def test_upgrade_proration_line_picks_new_plan(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)
        lines = [
            {"type": "invoiceitem", "price": {"id": "price_starter"}, "proration": True, "amount": -300},
            {"type": "invoiceitem", "price": {"id": "price_pro"}, "proration": True, "amount": 900},
        ]

        tx = handle_invoice_paid(ctx, _invoice(invoice_object(lines=lines)))

        assert tx.amount == 1000
        assert "Pro plan" in tx.description


class TestCycleGrantErrors:
    def test_invoice_without_subscription_is_ignored(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)

        assert handle_invoice_paid(ctx, _invoice(invoice_object(subscription=None))) is None
        assert ctx.store.get_user("user_1").version == 0

    def test_unknown_price_grants_nothing(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)

        with pytest.raises(UnknownPriceIdError):
            handle_invoice_paid(ctx, _invoice(invoice_object(price="price_mystery")))

        assert ctx.store.get_user("user_1").total_balance == 0

    def test_pack_price_on_subscription_invoice_is_rejected(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)

        with pytest.raises(UnknownPriceIdError):
            handle_invoice_paid(ctx, _invoice(invoice_object(price="price_pack_small")))

    def test_no_priced_lines(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb)

        with pytest.raises(NoResolvablePriceError):
            handle_invoice_paid(ctx, _invoice(invoice_object(lines=[{"type": "invoiceitem", "amount": 100}])))

    def test_unknown_customer(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        with pytest.raises(ProfileNotFoundError):
            handle_invoice_paid(ctx, _invoice(invoice_object(customer="cus_ghost")))


class TestEndOfCycleExpiry:
    def test_subscription_credits_expire_before_grant(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=300, purchased_credits=40)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object(price="price_cycle")))

        account = ctx.store.get_user("user_1")
        assert tx.amount == 500
        assert "(300 credits expired, 500 new credits added)" in tx.description
        assert account.subscription_credit_balance == 500
        assert account.purchased_credit_balance == 40

        group = ctx.store.find_transaction_group("user_1", "invoice_in_1")
        expired = [t for t in group if t.type is TransactionType.EXPIRED]
        assert [t.amount for t in expired] == [-300]

    def test_expiry_failure_still_grants(self, mock_dynamodb, ctx, invoice_object):
        """Expiry is best-effort; the cycle grant must not be lost with it."""
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=300)
        real_apply = ctx.store.apply
        calls = []

        def flaky_apply(user_id, compute, claim=None):
            calls.append(user_id)
            if len(calls) == 1:
                raise TransientStoreError("throttled")
            return real_apply(user_id, compute, claim)

        ctx.store.apply = flaky_apply

        tx = handle_invoice_paid(ctx, _invoice(invoice_object(price="price_cycle")))

        assert tx.amount == 500
        group = ctx.store.find_transaction_group("user_1", "invoice_in_1")
        assert all(t.type is not TransactionType.EXPIRED for t in group)

    def test_redelivery_after_expiry_grants_once(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, subscription_credits=300)
        event = _invoice(invoice_object(price="price_cycle"))

        handle_invoice_paid(ctx, event)
        assert handle_invoice_paid(ctx, event) is None

        assert ctx.store.get_user("user_1").subscription_credit_balance == 500


class TestSubscriptionSync:
    def test_refreshes_status_from_gateway(self, mock_dynamodb, ctx, invoice_object, subscription_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, status="none")
        ctx.gateway.snapshots["sub_1"] = decode_subscription_snapshot(subscription_object())

        handle_invoice_paid(ctx, _invoice(invoice_object()))

        account = ctx.store.get_user("user_1")
        assert ctx.gateway.calls == ["sub_1"]
        assert account.subscription_status is SubscriptionStatus.ACTIVE
        assert account.subscription_tier == "starter"
        assert account.subscription_credit_balance == 100

    def test_gateway_unavailable_still_grants(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, status="none")

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 100
        assert ctx.store.get_user("user_1").subscription_status is SubscriptionStatus.NONE

    def test_snapshot_from_stripe_object_is_applied(self, mock_dynamodb, ctx, invoice_object, subscription_object):
        from ledger.gateway import StripeGateway
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, status="none")
        client = MagicMock()
        client.subscriptions.retrieve.return_value = stripe.Subscription.construct_from(
            subscription_object(status="past_due"), "sk_test_123"
        )
        ctx.gateway = StripeGateway(client=client)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 100
        assert ctx.store.get_user("user_1").subscription_status is SubscriptionStatus.PAST_DUE

    def test_undecodable_stripe_object_still_grants(self, mock_dynamodb, ctx, invoice_object):
        from ledger.gateway import StripeGateway
        from ledger.invoices import handle_invoice_paid

        seed_account(mock_dynamodb, status="none")
        client = MagicMock()
        client.subscriptions.retrieve.return_value.to_dict.return_value = {
            "id": "sub_1",
            "status": "active",
            "items": "not-a-list-object",
        }
        ctx.gateway = StripeGateway(client=client)

        tx = handle_invoice_paid(ctx, _invoice(invoice_object()))

        assert tx.amount == 100
        assert ctx.store.get_user("user_1").subscription_status is SubscriptionStatus.NONE


class TestPaymentFailed:
    def test_marks_past_due(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_payment_failed

        seed_account(mock_dynamodb, status="active", subscription_id="sub_1")

        handle_invoice_payment_failed(ctx, _invoice(invoice_object(), "invoice.payment_failed"))

        assert ctx.store.get_user("user_1").subscription_status is SubscriptionStatus.PAST_DUE

    def test_one_off_invoice_ignored(self, mock_dynamodb, ctx, invoice_object):
        from ledger.invoices import handle_invoice_payment_failed

        seed_account(mock_dynamodb, status="active")

        handle_invoice_payment_failed(ctx, _invoice(invoice_object(subscription=None), "invoice.payment_failed"))

        assert ctx.store.get_user("user_1").subscription_status is SubscriptionStatus.ACTIVE
