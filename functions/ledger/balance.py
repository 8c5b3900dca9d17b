"""Credit balance arithmetic for cycle grants. No I/O."""

from typing import Optional, Union

from ledger.models import BalanceResult, ExpirationMode


def calculate_balance_with_expiration(
    current_balance: int,
    new_credits: int,
    expiration_mode: Union[ExpirationMode, str],
    max_rollover: Optional[int] = None,
) -> BalanceResult:
    """Compute the balance after a cycle grant and how much of the prior balance expires.

    In ``never`` mode credits accrue up to ``max_rollover`` and the excess is
    dropped. In ``end_of_cycle`` and ``rolling_window`` mode the whole prior
    balance expires and is replaced by the (capped) grant. A ``max_rollover``
    of None means uncapped. Negative balances are taken as-is.

    Safe to call from plan-change previews: it reads nothing and writes nothing.
    """
    mode = ExpirationMode(expiration_mode)

    if mode is ExpirationMode.NEVER:
        new_balance = current_balance + new_credits
        if max_rollover is not None:
            new_balance = min(new_balance, max_rollover)
        return BalanceResult(new_balance=new_balance, expired_amount=0)

    new_balance = new_credits if max_rollover is None else min(new_credits, max_rollover)
    return BalanceResult(new_balance=new_balance, expired_amount=current_balance)


def credits_to_grant(current_balance: int, result: BalanceResult) -> int:
    """Delta to write as a grant transaction; zero or negative means nothing to grant."""
    return result.new_balance - (0 if result.expired_amount > 0 else current_balance)
