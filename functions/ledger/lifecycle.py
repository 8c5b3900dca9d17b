"""
Subscription lifecycle.

Keeps the SubscriptionRecord row and the account's subscription status and
tier in step. Both are written in the same ledger transaction, so they are
never stale relative to each other.

An upgrade reported through `previous_attributes` tops up the tier
difference in that same transaction.

Events arrive unordered, so two guards apply:
- a subscription that has been canceled never goes back to a live status
  (Stripe never reactivates a canceled subscription; a late "updated" event is stale)
- the account follows the subscription it currently points at, or a new one
  that is live; a late event for an old subscription only updates its record
"""

import logging
import time
from dataclasses import replace
from typing import Optional

from ledger.balance import calculate_balance_with_expiration, credits_to_grant
from ledger.context import HandlerContext
from ledger.errors import NoResolvablePriceError, UnknownPriceIdError
from ledger.events import SubscriptionEvent
from ledger.line_items import select_price_id
from ledger.metrics import emit_metric
from ledger.models import (
    LIVE_STATUSES,
    CreditPool,
    CreditTransaction,
    ExpirationMode,
    PlanDefinition,
    SubscriptionRecord,
    SubscriptionSnapshot,
    SubscriptionStatus,
    TransactionType,
    UserAccount,
)
from ledger.store import LedgerMutation, LedgerWrite

logger = logging.getLogger(__name__)

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.NONE,
}


def map_status(provider_status: str) -> SubscriptionStatus:
    status = PROVIDER_STATUS_MAP.get(provider_status)
    if status is None:
        logger.warning(f"Unknown subscription status {provider_status!r}, treating as none")
        return SubscriptionStatus.NONE
    return status


def resolve_plan(ctx: HandlerContext, snapshot: SubscriptionSnapshot) -> Optional[PlanDefinition]:
    """Plan for a subscription, or None (logged) when its price is not a known plan."""
    try:
        return ctx.catalog.resolve_plan(select_price_id(snapshot.lines))
    except (UnknownPriceIdError, NoResolvablePriceError) as e:
        logger.error(f"Cannot resolve plan for subscription {snapshot.id}, keeping current tier: {e}")
        return None


def _follows(account: UserAccount, subscription_id: str, status: SubscriptionStatus) -> bool:
    return account.subscription_id in (None, subscription_id) or status in LIVE_STATUSES


def apply_subscription_snapshot(
    ctx: HandlerContext,
    snapshot: SubscriptionSnapshot,
    account: Optional[UserAccount] = None,
    previous_plan: Optional[PlanDefinition] = None,
) -> Optional[LedgerWrite]:
    """Upsert the subscription record and move the account to its status and tier.

    With `previous_plan` set (a price change reported by Stripe), an active
    upgrade also grants the tier difference in the same write.
    """
    if account is None:
        account = ctx.store.get_user_by_customer_id(snapshot.customer_id)

    existing = ctx.store.get_subscription(snapshot.id)
    if existing is not None and existing.status == "canceled" and snapshot.status != "canceled":
        logger.warning(
            f"Ignoring stale {snapshot.status} update for canceled subscription {snapshot.id}"
        )
        return None

    plan = resolve_plan(ctx, snapshot)
    raw_price = next((line.price_id for line in snapshot.lines if line.price_id), None)
    record = SubscriptionRecord(
        id=snapshot.id,
        user_id=account.id,
        status=snapshot.status,
        price_id=plan.price_id if plan else raw_price,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        canceled_at=snapshot.canceled_at,
        cancel_at_period_end=snapshot.cancel_at_period_end,
    )
    status = map_status(snapshot.status)

    def compute(current: UserAccount) -> Optional[LedgerMutation]:
        if not _follows(current, snapshot.id, status):
            logger.info(
                f"Account {current.id} follows subscription {current.subscription_id}, "
                f"only recording {snapshot.id} ({snapshot.status})"
            )
            return None if record == existing else LedgerMutation(subscription=record)

        if status is SubscriptionStatus.CANCELED:
            tier = None
        else:
            tier = plan.key if plan else current.subscription_tier

        transactions = []
        if previous_plan is not None and snapshot.status == "active":
            top_up = _upgrade_top_up(ctx, current, snapshot.id, previous_plan, plan)
            if top_up is not None:
                transactions.append(top_up)

        unchanged = (
            not transactions
            and record == existing
            and current.subscription_status is status
            and current.subscription_tier == tier
            and current.subscription_id == snapshot.id
        )
        if unchanged:
            return None

        return LedgerMutation(
            transactions=transactions,
            subscription=record,
            status=status,
            tier=tier,
            subscription_id=snapshot.id,
        )

    result = ctx.store.apply(account.id, compute, ctx.claim)
    logger.info(
        f"Subscription {snapshot.id} for {account.id}: {snapshot.status} "
        f"(tier={result.account.subscription_tier})"
    )
    for tx in result.transactions:
        logger.info(f"Granted {tx.amount} upgrade credits to {account.id} for {snapshot.id}")
        emit_metric("CreditsGranted", tx.amount, dimensions={"Source": "upgrade", "Plan": plan.key})
    return result


def _upgrade_top_up(
    ctx: HandlerContext,
    account: UserAccount,
    subscription_id: str,
    previous: PlanDefinition,
    plan: Optional[PlanDefinition],
) -> Optional[CreditTransaction]:
    """Tier difference for an upgrade, granted once per subscription and target price.

    Downgrades grant nothing; existing credits are kept until the next renewal.
    The grant is capped by the new plan's rollover limit and never expires
    anything, whatever the plan's expiration mode.
    """
    if plan is None or plan.key == previous.key:
        return None
    difference = plan.credits_per_cycle - previous.credits_per_cycle
    if difference <= 0:
        logger.info(f"Subscription {subscription_id} moved from {previous.name} to {plan.name}, no top-up")
        return None

    result = calculate_balance_with_expiration(
        account.total_balance, difference, ExpirationMode.NEVER, plan.max_rollover
    )
    delta = credits_to_grant(account.total_balance, result)
    if delta <= 0:
        logger.info(
            f"Skipping upgrade credits for {account.id}: balance {account.total_balance} "
            f"already at rollover limit {plan.max_rollover}"
        )
        return None

    description = f"Plan upgrade - {previous.name} to {plan.name} - {delta} credits (tier difference)"
    if delta < difference:
        description += f" (capped from {difference} due to rollover limit of {plan.max_rollover})"

    tx = CreditTransaction.create(
        user_id=account.id,
        amount=delta,
        type=TransactionType.SUBSCRIPTION,
        pool=CreditPool.SUBSCRIPTION,
        reference_id=upgrade_reference(subscription_id),
        description=description,
        key_suffix=plan.price_id,
    )
    if any(prior.key == tx.key for prior in ctx.store.find_transaction_group(account.id, tx.reference_id)):
        logger.info(f"Upgrade credits for {subscription_id} to {plan.name} already granted to {account.id}")
        return None
    return tx


def upgrade_reference(subscription_id: str) -> str:
    return f"upgrade_{subscription_id}"


def handle_subscription_changed(ctx: HandlerContext, event: SubscriptionEvent) -> Optional[LedgerWrite]:
    previous_plan = None
    if event.previous_price_id:
        logger.info(f"Subscription {event.snapshot.id} changed price from {event.previous_price_id}")
        try:
            previous_plan = ctx.catalog.resolve_plan(event.previous_price_id)
        except UnknownPriceIdError as e:
            # Still apply the new state, only the top-up is lost
            logger.error(f"Cannot resolve previous price for subscription {event.snapshot.id}: {e}")
    return apply_subscription_snapshot(ctx, event.snapshot, previous_plan=previous_plan)


def handle_subscription_deleted(ctx: HandlerContext, event: SubscriptionEvent) -> LedgerWrite:
    """Cancel the subscription record; clear the account's status and tier if it follows it."""
    snapshot = event.snapshot
    account = ctx.store.get_user_by_customer_id(snapshot.customer_id)
    existing = ctx.store.get_subscription(snapshot.id)
    canceled_at = snapshot.canceled_at or (existing.canceled_at if existing else None) or int(time.time())

    if existing is not None:
        record = replace(existing, status="canceled", canceled_at=canceled_at)
    else:
        raw_price = next((line.price_id for line in snapshot.lines if line.price_id), None)
        record = SubscriptionRecord(
            id=snapshot.id,
            user_id=account.id,
            status="canceled",
            price_id=raw_price,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            canceled_at=canceled_at,
            cancel_at_period_end=snapshot.cancel_at_period_end,
        )

    def compute(current: UserAccount) -> LedgerMutation:
        if current.subscription_id not in (None, snapshot.id):
            logger.info(f"Account {current.id} moved to {current.subscription_id}, keeping its status")
            return LedgerMutation(subscription=record)
        return LedgerMutation(
            subscription=record,
            status=SubscriptionStatus.CANCELED,
            tier=None,
            subscription_id=snapshot.id,
        )

    result = ctx.store.apply(account.id, compute, ctx.claim)
    logger.info(f"Subscription {snapshot.id} canceled for {account.id}")
    return result


def mark_past_due(ctx: HandlerContext, customer_id: Optional[str], subscription_id: str) -> Optional[LedgerWrite]:
    """Failed renewal payment: account and subscription record go to past_due together."""
    account = ctx.store.get_user_by_customer_id(customer_id)
    existing = ctx.store.get_subscription(subscription_id)
    if existing is not None and existing.status == "canceled":
        logger.info(f"Payment failed for canceled subscription {subscription_id}, nothing to update")
        return None

    record = replace(existing, status="past_due") if existing else None

    def compute(current: UserAccount) -> Optional[LedgerMutation]:
        if current.subscription_id not in (None, subscription_id):
            logger.info(f"Account {current.id} follows {current.subscription_id}, ignoring failure for {subscription_id}")
            return None
        if current.subscription_status is SubscriptionStatus.PAST_DUE and record == existing:
            return None
        return LedgerMutation(
            subscription=record,
            status=SubscriptionStatus.PAST_DUE,
            subscription_id=subscription_id,
        )

    result = ctx.store.apply(account.id, compute, ctx.claim)
    logger.warning(f"Payment failed for {account.id}, subscription {subscription_id} is past_due")
    return result
