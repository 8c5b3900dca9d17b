"""
Invoice reconciliation: subscription cycle credit grants and failed payments.
"""

import logging
from typing import Optional

from botocore.exceptions import ClientError

from ledger.balance import calculate_balance_with_expiration, credits_to_grant
from ledger.context import HandlerContext
from ledger.errors import TransientStoreError
from ledger.events import InvoiceEvent
from ledger.lifecycle import apply_subscription_snapshot, mark_past_due
from ledger.line_items import select_price_id
from ledger.metrics import emit_metric
from ledger.models import (
    CreditPool,
    CreditTransaction,
    PlanDefinition,
    TransactionType,
    UserAccount,
)
from ledger.store import LedgerMutation

logger = logging.getLogger(__name__)


def invoice_reference(invoice_id: str) -> str:
    return f"invoice_{invoice_id}"


def handle_invoice_paid(ctx: HandlerContext, invoice: InvoiceEvent) -> Optional[CreditTransaction]:
    """Grant a cycle's credits for a paid subscription invoice.

    Plan resolution errors propagate: no credits are granted against a price
    we cannot verify.
    """
    if not invoice.subscription_id:
        logger.info(f"Invoice {invoice.invoice_id} has no subscription, nothing to credit")
        return None

    plan = ctx.catalog.resolve_plan(select_price_id(invoice.lines))
    account = ctx.store.get_user_by_customer_id(invoice.customer_id)

    _sync_subscription(ctx, invoice.subscription_id, account)

    return credit_subscription_cycle(ctx, account.id, plan, invoice_reference(invoice.invoice_id))


def handle_invoice_payment_failed(ctx: HandlerContext, invoice: InvoiceEvent) -> None:
    if not invoice.subscription_id:
        logger.info(f"Failed invoice {invoice.invoice_id} has no subscription, ignoring")
        return
    mark_past_due(ctx, invoice.customer_id, invoice.subscription_id)


def _sync_subscription(ctx: HandlerContext, subscription_id: str, account: UserAccount) -> None:
    """Refresh status and tier from Stripe when it answers; crediting goes ahead either way."""
    if ctx.gateway is None:
        return
    snapshot = ctx.gateway.get_subscription(subscription_id)
    if snapshot is None:
        return
    apply_subscription_snapshot(ctx, snapshot, account)


def credit_subscription_cycle(
    ctx: HandlerContext,
    user_id: str,
    plan: PlanDefinition,
    reference_id: str,
) -> Optional[CreditTransaction]:
    """Expire prior subscription credits if the plan says so, then grant this cycle.

    Returns the grant transaction, or None when nothing was granted (already
    granted under this reference, or the balance is at the rollover cap).
    """
    group = ctx.store.find_transaction_group(user_id, reference_id)
    if any(tx.type is TransactionType.SUBSCRIPTION and tx.amount > 0 for tx in group):
        logger.info(f"Credits for {reference_id} already granted to {user_id}")
        return None

    account = ctx.store.get_user(user_id)
    preview = calculate_balance_with_expiration(
        account.total_balance,
        plan.credits_per_cycle,
        plan.expiration_mode,
        plan.max_rollover,
    )

    expired = 0
    if preview.expired_amount > 0:
        expired = _expire_subscription_credits(ctx, user_id, plan, reference_id)

    def compute(current: UserAccount) -> Optional[LedgerMutation]:
        current_balance = current.total_balance
        result = calculate_balance_with_expiration(
            current_balance,
            plan.credits_per_cycle,
            plan.expiration_mode,
            plan.max_rollover,
        )
        delta = credits_to_grant(current_balance, result)
        if delta <= 0:
            logger.info(
                f"Skipping credit grant for {user_id}: balance {current_balance} "
                f"already at rollover limit {plan.max_rollover}"
            )
            return None

        tx = CreditTransaction.create(
            user_id=user_id,
            amount=delta,
            type=TransactionType.SUBSCRIPTION,
            pool=CreditPool.SUBSCRIPTION,
            reference_id=reference_id,
            description=_grant_description(plan, delta, expired),
        )
        return LedgerMutation(transactions=[tx])

    write = ctx.store.apply(user_id, compute, ctx.claim)
    if write.duplicate or not write.transactions:
        return None

    tx = write.transactions[0]
    logger.info(
        f"Granted {tx.amount} credits to {user_id} for {reference_id} "
        f"(subscription balance now {write.account.subscription_credit_balance})"
    )
    emit_metric("CreditsGranted", tx.amount, dimensions={"Source": "subscription", "Plan": plan.key})
    return tx


def _grant_description(plan: PlanDefinition, delta: int, expired: int) -> str:
    description = f"Monthly subscription renewal - {plan.name} plan"
    if expired > 0:
        description += f" ({expired} credits expired, {delta} new credits added)"
    elif delta < plan.credits_per_cycle:
        description += (
            f" (capped from {plan.credits_per_cycle} due to rollover limit of {plan.max_rollover})"
        )
    return description


def _expire_subscription_credits(
    ctx: HandlerContext,
    user_id: str,
    plan: PlanDefinition,
    reference_id: str,
) -> int:
    """Zero the subscription pool. Purchased credits never expire.

    Best-effort: a failure is logged and the grant still goes ahead.
    """

    def compute(current: UserAccount) -> Optional[LedgerMutation]:
        amount = current.subscription_credit_balance
        if amount <= 0:
            return None
        tx = CreditTransaction.create(
            user_id=user_id,
            amount=-amount,
            type=TransactionType.EXPIRED,
            pool=CreditPool.SUBSCRIPTION,
            reference_id=reference_id,
            description=f"Unused {plan.name} plan credits expired at renewal",
        )
        return LedgerMutation(transactions=[tx])

    try:
        write = ctx.store.apply(user_id, compute, ctx.claim)
    except (TransientStoreError, ClientError) as e:
        logger.error(f"Failed to expire subscription credits for {user_id}, granting anyway: {e}")
        return 0

    expired = -sum(tx.amount for tx in write.transactions)
    if expired:
        logger.info(f"Expired {expired} subscription credits for {user_id} ({reference_id})")
    return expired
