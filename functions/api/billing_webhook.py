"""
Billing Event Endpoint

Receives verified Stripe events, either directly or through Stripe's Amazon
EventBridge destination ({"detail": <event>}), and applies them to the
credit ledger. Signature verification happens upstream.

Retryable failures return 500 so the delivery is retried. Terminal failures
return 200 with processed=false: redelivering them cannot help, and the
ERROR log line is what gets alerted on.
"""

import logging
from typing import Optional

from ledger.catalog import get_catalog
from ledger.gateway import StripeGateway
from ledger.idempotency import IdempotencyStore
from ledger.logging_utils import configure_structured_logging, set_request_id
from ledger.response_utils import error_response, json_response
from ledger.router import Outcome, WebhookRouter
from ledger.store import DynamoLedgerStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_router: Optional[WebhookRouter] = None


def get_router() -> WebhookRouter:
    """Router wired to DynamoDB and Stripe, built once per container."""
    global _router
    if _router is None:
        _router = WebhookRouter(
            store=DynamoLedgerStore(),
            idempotency=IdempotencyStore(),
            gateway=StripeGateway(),
            catalog=get_catalog(),
        )
    return _router


def reset_router() -> None:
    global _router
    _router = None


def handle_event(event: dict) -> dict:
    """Apply one verified billing event; returns {"acknowledged": bool, ...}."""
    return get_router().handle(event).to_dict()


def handler(event, context):
    """
    Lambda handler for verified billing events.

    Handles:
    - invoice.payment_succeeded / invoice.paid: cycle credit grants
    - invoice.payment_failed: past_due
    - customer.subscription.*: status and tier
    - charge.refunded / invoice.payment_refunded: clawback
    - checkout.session.completed: credit packs, first-cycle bootstrap
    """
    configure_structured_logging()
    set_request_id(event)

    detail = event.get("detail")
    billing_event = detail if isinstance(detail, dict) else event

    result = get_router().handle(billing_event)

    if result.outcome is Outcome.RETRYABLE:
        return error_response(
            500,
            "temporary_error",
            "Temporary error, please retry",
            details={"reason": result.reason},
        )

    return json_response(
        200,
        {
            "received": True,
            "processed": result.outcome is Outcome.ACK,
            "duplicate": result.duplicate,
            "reason": result.reason,
        },
    )
