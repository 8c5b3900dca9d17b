"""
Completed checkout sessions.

Payment-mode sessions buy a credit pack: money has moved, so a pack we
cannot resolve is an error the router retries. Subscription-mode sessions
bootstrap the first cycle's credits ahead of the invoice event; this is
best-effort and keyed on the same invoice reference, so the invoice event
later finds the grant and does nothing.
"""

import logging
from typing import Optional

from ledger.context import HandlerContext
from ledger.errors import InvalidEventError, ProfileNotFoundError
from ledger.events import CheckoutEvent
from ledger.invoices import credit_subscription_cycle, invoice_reference
from ledger.lifecycle import apply_subscription_snapshot
from ledger.line_items import select_price_id
from ledger.metrics import emit_metric
from ledger.models import CreditPool, CreditTransaction, TransactionType, UserAccount

logger = logging.getLogger(__name__)


def handle_checkout_completed(ctx: HandlerContext, session: CheckoutEvent) -> Optional[CreditTransaction]:
    if session.mode == "payment":
        return grant_pack_purchase(ctx, session)
    if session.mode == "subscription":
        return bootstrap_subscription_credits(ctx, session)
    logger.info(f"Ignoring checkout session {session.session_id} in mode {session.mode}")
    return None


def _find_account(ctx: HandlerContext, session: CheckoutEvent) -> UserAccount:
    if session.customer_id:
        try:
            return ctx.store.get_user_by_customer_id(session.customer_id)
        except ProfileNotFoundError:
            if not session.user_id:
                raise
            logger.info(f"Customer {session.customer_id} not linked yet, using user {session.user_id}")
    if session.user_id:
        return ctx.store.get_user(session.user_id)
    raise ProfileNotFoundError("checkout_session", session.session_id)


def grant_pack_purchase(ctx: HandlerContext, session: CheckoutEvent) -> Optional[CreditTransaction]:
    if session.price_id:
        pack = ctx.catalog.resolve_pack(session.price_id)
        credits, label = pack.credits, pack.name
    elif session.credits and session.credits > 0:
        credits, label = session.credits, f"{session.credits} credits"
    else:
        raise InvalidEventError(
            "checkout.session.completed",
            f"session {session.session_id} has neither a pack price nor a credit amount",
        )

    account = _find_account(ctx, session)
    if session.payment_intent_id:
        reference_id = f"pi_{session.payment_intent_id}"
    else:
        reference_id = f"session_{session.session_id}"

    tx = CreditTransaction.create(
        user_id=account.id,
        amount=credits,
        type=TransactionType.PURCHASE,
        pool=CreditPool.PURCHASED,
        reference_id=reference_id,
        description=f"Credit purchase - {label}",
    )
    balance = ctx.store.append_transaction(tx, ctx.claim)
    if balance is None:
        logger.info(f"Purchase {reference_id} already credited to {account.id}")
        return None

    logger.info(f"Added {credits} purchased credits to {account.id} ({reference_id}), balance {balance}")
    emit_metric("CreditsGranted", credits, dimensions={"Source": "purchase"})
    return tx


def bootstrap_subscription_credits(ctx: HandlerContext, session: CheckoutEvent) -> Optional[CreditTransaction]:
    if not session.subscription_id or not session.invoice_id:
        logger.info(f"Checkout session {session.session_id} has no subscription invoice, leaving credits to the invoice event")
        return None
    if ctx.gateway is None:
        return None

    snapshot = ctx.gateway.get_subscription(session.subscription_id)
    if snapshot is None:
        logger.info(f"Subscription {session.subscription_id} unavailable, leaving credits to the invoice event")
        return None

    plan = ctx.catalog.resolve_plan(select_price_id(snapshot.lines))
    account = _find_account(ctx, session)
    apply_subscription_snapshot(ctx, snapshot, account)
    return credit_subscription_cycle(ctx, account.id, plan, invoice_reference(session.invoice_id))
