"""
Webhook event router.

Claims each event id, decodes the payload, dispatches to its handler and
turns whatever happened into one of three outcomes:

    ACK        processed, duplicate, ignored, or an error that must not block
               the provider (untraceable refund, bad price on a best-effort path)
    RETRYABLE  claim released; the scheduler should redeliver
    TERMINAL   recorded as failed; alert, do not redeliver
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from botocore.exceptions import ClientError

from ledger import checkout, clawback, invoices, lifecycle
from ledger.catalog import PriceCatalog, get_catalog
from ledger.context import HandlerContext
from ledger.errors import BillingError, ErrorKind, InvalidEventError
from ledger.events import decode_event, ref_id
from ledger.gateway import PaymentGateway
from ledger.idempotency import IdempotencyStore
from ledger.metrics import emit_webhook_outcome
from ledger.models import EventClaim
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    ACK = "ack"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class HandleResult:
    outcome: Outcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    reason: str = "processed"
    duplicate: bool = False

    @property
    def acknowledged(self) -> bool:
        return self.outcome is Outcome.ACK

    @property
    def retryable(self) -> bool:
        return self.outcome is Outcome.RETRYABLE

    def to_dict(self) -> dict:
        return {
            "acknowledged": self.acknowledged,
            "outcome": self.outcome.value,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "reason": self.reason,
            "duplicate": self.duplicate,
        }


@dataclass(frozen=True)
class Route:
    handler: Callable[[HandlerContext, Any], Any]
    # Whether a failed price lookup means credits a customer paid for are missing
    money_moving: Union[bool, Callable[[Any], bool]]

    def is_money_moving(self, payload: Any) -> bool:
        if callable(self.money_moving):
            return self.money_moving(payload)
        return self.money_moving


_invoice_paid = Route(invoices.handle_invoice_paid, money_moving=True)
_subscription_changed = Route(lifecycle.handle_subscription_changed, money_moving=False)
_refund = Route(clawback.handle_refund, money_moving=True)

ROUTES: dict[str, Route] = {
    "invoice.payment_succeeded": _invoice_paid,
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": Route(invoices.handle_invoice_payment_failed, money_moving=False),
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": Route(lifecycle.handle_subscription_deleted, money_moving=False),
    "charge.refunded": _refund,
    "invoice.payment_refunded": _refund,
    "checkout.session.completed": Route(
        checkout.handle_checkout_completed,
        money_moving=lambda session: session.mode == "payment",
    ),
}


class WebhookRouter:
    def __init__(
        self,
        store: LedgerStore,
        idempotency: IdempotencyStore,
        gateway: Optional[PaymentGateway] = None,
        catalog: Optional[PriceCatalog] = None,
        routes: Optional[dict[str, Route]] = None,
    ):
        self.store = store
        self.idempotency = idempotency
        self.gateway = gateway
        self.catalog = catalog or get_catalog()
        self.routes = ROUTES if routes is None else routes

    def handle(self, event: Mapping) -> HandleResult:
        event_id = event.get("id") if isinstance(event, Mapping) else None
        event_type = event.get("type") if isinstance(event, Mapping) else None
        data = event.get("data") if isinstance(event, Mapping) else None

        if not event_id or not event_type or not isinstance(data, Mapping):
            logger.error(f"Rejecting malformed event (id={event_id}, type={event_type})")
            return self._result(Outcome.TERMINAL, event_id, event_type, "malformed_event")

        route = self.routes.get(event_type)
        if route is None:
            logger.info(f"Unhandled event type: {event_type}")
            return self._result(Outcome.ACK, event_id, event_type, "ignored")

        logger.info(f"Processing billing event: {event_type} (id={event_id})")

        obj = data.get("object")
        customer_id = ref_id(obj.get("customer")) if isinstance(obj, Mapping) else None
        try:
            claim = self.idempotency.claim(event_id, event_type, customer_id)
        except (BillingError, ClientError) as e:
            logger.error(f"Could not claim event {event_id}: {e}")
            return self._result(Outcome.RETRYABLE, event_id, event_type, "claim_failed")

        if claim is None:
            logger.info(f"Skipping duplicate event {event_id}")
            return self._result(Outcome.ACK, event_id, event_type, "duplicate", duplicate=True)

        try:
            payload = decode_event(event_type, data)
        except InvalidEventError as e:
            logger.error(f"Invalid {event_type} payload in {event_id}: {e}")
            self.idempotency.mark_failed(claim, str(e))
            return self._result(Outcome.TERMINAL, event_id, event_type, e.code)

        ctx = HandlerContext(store=self.store, catalog=self.catalog, gateway=self.gateway, claim=claim)
        try:
            route.handler(ctx, payload)
        except BillingError as e:
            return self._classify(claim, e, route.is_money_moving(payload))
        except ClientError as e:
            # DynamoDB errors are transient - release claim so a redelivery can re-process
            self.idempotency.release(claim)
            logger.error(f"Transient error handling {event_type}: {e}")
            return self._result(Outcome.RETRYABLE, event_id, event_type, "store_error")
        except Exception as e:
            self.idempotency.release(claim)
            logger.error(f"Unexpected error handling {event_type} ({event_id}): {e}", exc_info=True)
            return self._result(Outcome.RETRYABLE, event_id, event_type, "unexpected_error")

        return self._complete(claim, "processed")

    def _classify(self, claim: EventClaim, error: BillingError, money_moving: bool) -> HandleResult:
        event_id, event_type = claim.event_id, claim.event_type

        if error.kind is ErrorKind.NON_FATAL:
            logger.warning(f"{event_type} ({event_id}) needs manual reconciliation: {error}")
            return self._complete(claim, error.code)

        if error.kind is ErrorKind.VALIDATION and not money_moving:
            logger.warning(f"Skipping best-effort {event_type} ({event_id}): {error}")
            return self._complete(claim, error.code)

        if error.kind in (ErrorKind.VALIDATION, ErrorKind.RETRYABLE):
            self.idempotency.release(claim)
            logger.error(f"Retryable {error.code} handling {event_type} ({event_id}): {error}")
            return self._result(Outcome.RETRYABLE, event_id, event_type, error.code)

        self.idempotency.mark_failed(claim, str(error))
        logger.error(f"Terminal {error.code} handling {event_type} ({event_id}): {error}")
        return self._result(Outcome.TERMINAL, event_id, event_type, error.code)

    def _complete(self, claim: EventClaim, reason: str) -> HandleResult:
        try:
            self.idempotency.mark_completed(claim, reason)
        except ClientError as e:
            # Ledger writes are keyed by reference, so reprocessing is harmless
            logger.error(f"Failed to mark event {claim.event_id} completed: {e}")
            self.idempotency.release(claim)
            return self._result(Outcome.RETRYABLE, claim.event_id, claim.event_type, "completion_failed")
        return self._result(Outcome.ACK, claim.event_id, claim.event_type, reason)

    def _result(
        self,
        outcome: Outcome,
        event_id: Optional[str],
        event_type: Optional[str],
        reason: str,
        duplicate: bool = False,
    ) -> HandleResult:
        emit_webhook_outcome(outcome.value, event_type or "unknown")
        return HandleResult(
            outcome=outcome,
            event_id=event_id,
            event_type=event_type,
            reason=reason,
            duplicate=duplicate,
        )
