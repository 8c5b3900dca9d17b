"""Pick the price that applies to a multi-line invoice."""

from typing import Iterable

from ledger.errors import NoResolvablePriceError
from ledger.models import InvoiceLine


def select_price_id(lines: Iterable[InvoiceLine]) -> str:
    """Return the price id of the line that determines the plan.

    Priority: the first subscription line, then the first positive proration
    line (upgrade invoices where the subscription line still shows the old
    plan, or is missing), then any line with a price.
    """
    lines = list(lines)
    priced = [line for line in lines if line.price_id]

    for line in priced:
        if line.line_type == "subscription":
            return line.price_id

    for line in priced:
        if line.proration and line.amount > 0:
            return line.price_id

    if priced:
        return priced[0].price_id

    raise NoResolvablePriceError(len(lines))
