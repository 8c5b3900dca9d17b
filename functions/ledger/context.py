"""Collaborators passed to every event handler."""

from dataclasses import dataclass
from typing import Optional

from ledger.catalog import PriceCatalog
from ledger.gateway import PaymentGateway
from ledger.models import EventClaim
from ledger.store import LedgerStore


@dataclass
class HandlerContext:
    store: LedgerStore
    catalog: PriceCatalog
    gateway: Optional[PaymentGateway] = None
    claim: Optional[EventClaim] = None
