"""
Refund clawback.

A refund is traced back to the grant it paid for by trying the reference
ids grants have been recorded under, in priority order. The reversal is
bounded by what was granted under that reference minus what earlier
clawbacks already took back, and is scaled for partial refunds.

Stripe reports refunds cumulatively (amount_refunded grows with each
partial refund), so the clawback key carries the cumulative target: the
same refund state always maps to the same key, and a larger refund maps to
a new one that only takes the difference.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ledger.context import HandlerContext
from ledger.errors import InsufficientCorrelationError
from ledger.events import RefundEvent
from ledger.metrics import emit_metric
from ledger.models import (
    GRANT_TYPES,
    CreditPool,
    CreditTransaction,
    TransactionType,
    UserAccount,
)
from ledger.store import LedgerMutation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClawbackResult:
    reference_id: str
    amount: int  # credits removed, positive
    pools: tuple = ()
    transactions: list = field(default_factory=list)


def candidate_references(refund: RefundEvent) -> list[str]:
    candidates = []
    if refund.invoice_id:
        candidates.append(f"invoice_{refund.invoice_id}")
    if refund.payment_intent_id:
        candidates.append(f"pi_{refund.payment_intent_id}")
    if refund.session_id:
        candidates.append(f"session_{refund.session_id}")
    if refund.source == "charge":
        candidates.append(f"session_{refund.source_id}")
    return list(dict.fromkeys(candidates))


def reversal_target(granted: int, amount: Optional[int], amount_refunded: Optional[int]) -> int:
    """Cumulative credits to take back for a refund of `amount_refunded` out of `amount`.

    Unknown amounts and full refunds reverse the whole grant.
    """
    if granted <= 0:
        return 0
    if amount is None or amount_refunded is None or amount <= 0 or amount_refunded >= amount:
        return granted
    if amount_refunded <= 0:
        return 0
    return granted * amount_refunded // amount


def plan_reversal(
    group: list[CreditTransaction],
    account: UserAccount,
    reference_id: str,
    refund: RefundEvent,
) -> list[CreditTransaction]:
    """Clawback transactions for one reference, debiting each pool at most what it was granted.

    Clawback rows are the one type that may repeat under a (user, reference,
    type) pair: partial refunds and two-pool reversals each add a row. Their
    keys carry the cumulative target and the pool, so a redelivered refund
    still lands on an existing key and is recorded once.
    """
    granted = {pool: 0 for pool in CreditPool}
    reversed_ = {pool: 0 for pool in CreditPool}
    for tx in group:
        if tx.type in GRANT_TYPES and tx.amount > 0:
            granted[tx.pool] += tx.amount
        elif tx.type is TransactionType.CLAWBACK:
            reversed_[tx.pool] -= tx.amount

    target = reversal_target(sum(granted.values()), refund.amount, refund.amount_refunded)
    remaining = target - sum(reversed_.values())
    if remaining <= 0:
        return []

    transactions = []
    for pool in (CreditPool.SUBSCRIPTION, CreditPool.PURCHASED):
        outstanding = granted[pool] - reversed_[pool]
        planned = min(remaining, outstanding)
        if planned <= 0:
            continue
        remaining -= planned

        # Credits already spent cannot be taken back; never push a pool below zero
        debit = min(planned, max(account.balance(pool), 0))
        if debit <= 0:
            logger.warning(f"{pool.value} pool of {account.id} is empty, cannot reverse {planned} credits for {reference_id}")
            continue

        description = f"Refund clawback for {reference_id} ({refund.source} {refund.source_id})"
        if debit < planned:
            description += f", limited to available balance ({planned - debit} credits already used)"
        transactions.append(
            CreditTransaction.create(
                user_id=account.id,
                amount=-debit,
                type=TransactionType.CLAWBACK,
                pool=pool,
                reference_id=reference_id,
                description=description,
                key_suffix=f"{target}#{pool.value}",
            )
        )
    return transactions


def handle_refund(ctx: HandlerContext, refund: RefundEvent) -> ClawbackResult:
    """Reverse the credits a refunded payment granted.

    Raises InsufficientCorrelationError when the refund matches no grant;
    the router acknowledges it so the provider's refund flow is never blocked.
    """
    candidates = candidate_references(refund)
    if not refund.customer_id:
        logger.warning(f"Refund on {refund.source} {refund.source_id} has no customer")
        emit_metric("UncorrelatedRefund", dimensions={"Source": refund.source})
        raise InsufficientCorrelationError(candidates)

    account = ctx.store.get_user_by_customer_id(refund.customer_id)

    for reference_id in candidates:
        group = ctx.store.find_transaction_group(account.id, reference_id)
        if any(tx.type in GRANT_TYPES and tx.amount > 0 for tx in group):
            return reverse_grant(ctx, account.id, reference_id, refund)

    logger.warning(
        f"Refund on {refund.source} {refund.source_id} for {account.id} matches no credit grant, "
        f"tried {candidates}"
    )
    emit_metric("UncorrelatedRefund", dimensions={"Source": refund.source})
    raise InsufficientCorrelationError(candidates)


def reverse_grant(ctx: HandlerContext, user_id: str, reference_id: str, refund: RefundEvent) -> ClawbackResult:
    def compute(current: UserAccount) -> Optional[LedgerMutation]:
        group = ctx.store.find_transaction_group(user_id, reference_id)
        transactions = plan_reversal(group, current, reference_id, refund)
        return LedgerMutation(transactions=transactions) if transactions else None

    write = ctx.store.apply(user_id, compute, ctx.claim)
    amount = -sum(tx.amount for tx in write.transactions)
    pools = tuple(tx.pool for tx in write.transactions)

    if not amount:
        logger.info(f"Nothing left to claw back for {reference_id} ({user_id})")
        return ClawbackResult(reference_id=reference_id, amount=0)

    logger.info(
        f"Clawed back {amount} credits from {user_id} for {reference_id} "
        f"(pools: {', '.join(pool.value for pool in pools)})"
    )
    emit_metric("CreditsClawedBack", amount, dimensions={"Source": refund.source})
    return ClawbackResult(
        reference_id=reference_id,
        amount=amount,
        pools=pools,
        transactions=write.transactions,
    )
