"""
Decode Stripe event payloads into typed events.

Each handled event type has exactly one decoder; payloads that lack a
field the handler cannot work without raise InvalidEventError here rather
than deep inside a handler. Stripe sends references either as bare ids or
as expanded objects, and newer API versions moved some fields (invoice
subscription, line prices, subscription periods), so both shapes are read.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from ledger.errors import InvalidEventError
from ledger.models import InvoiceLine, SubscriptionSnapshot


@dataclass(frozen=True)
class InvoiceEvent:
    invoice_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    lines: tuple
    payment_intent_id: Optional[str] = None
    amount_paid: int = 0
    amount_refunded: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionEvent:
    snapshot: SubscriptionSnapshot
    previous_price_id: Optional[str] = None


@dataclass(frozen=True)
class RefundEvent:
    source: str  # "charge" or "invoice"
    source_id: str
    customer_id: Optional[str]
    invoice_id: Optional[str]
    payment_intent_id: Optional[str]
    session_id: Optional[str]
    amount: Optional[int]  # total charged, None if unknown
    amount_refunded: Optional[int]  # cumulative, None means full refund


@dataclass(frozen=True)
class CheckoutEvent:
    session_id: str
    mode: str
    customer_id: Optional[str]
    user_id: Optional[str]
    subscription_id: Optional[str]
    invoice_id: Optional[str]
    payment_intent_id: Optional[str]
    price_id: Optional[str]
    credits: Optional[int]


def ref_id(value: Any) -> Optional[str]:
    """Normalize an expandable Stripe reference to its id."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    # Expanded objects: plain dicts from webhooks, StripeObjects from the API
    if hasattr(value, "get"):
        return value.get("id")
    return None


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _require(obj: Mapping, key: str, event_type: str) -> Any:
    value = obj.get(key)
    if value in (None, ""):
        raise InvalidEventError(event_type, f"missing {key}")
    return value


def _line_price(line: Mapping) -> Optional[str]:
    price = ref_id(line.get("price"))
    if price:
        return price
    pricing = line.get("pricing") or {}
    price = ref_id((pricing.get("price_details") or {}).get("price"))
    if price:
        return price
    return ref_id(line.get("plan"))


def decode_invoice_line(line: Mapping) -> InvoiceLine:
    parent = line.get("parent") or {}
    details = parent.get("subscription_item_details") or parent.get("invoice_item_details") or {}
    proration = bool(line.get("proration") or details.get("proration"))
    line_type = line.get("type")
    if line_type is None and parent.get("type") == "subscription_item_details":
        line_type = "subscription"
    return InvoiceLine(
        price_id=_line_price(line),
        line_type="subscription" if line_type == "subscription" else "other",
        proration=proration,
        amount=int(line.get("amount") or 0),
    )


def decode_invoice(obj: Mapping, event_type: str) -> InvoiceEvent:
    invoice_id = _require(obj, "id", event_type)
    subscription_id = ref_id(obj.get("subscription"))
    if not subscription_id:
        details = (obj.get("parent") or {}).get("subscription_details") or {}
        subscription_id = ref_id(details.get("subscription"))

    lines = tuple(
        decode_invoice_line(line) for line in (obj.get("lines") or {}).get("data") or []
    )
    return InvoiceEvent(
        invoice_id=invoice_id,
        customer_id=ref_id(obj.get("customer")),
        subscription_id=subscription_id,
        lines=lines,
        payment_intent_id=ref_id(obj.get("payment_intent")),
        amount_paid=int(obj.get("amount_paid") or 0),
        amount_refunded=_int(obj.get("amount_refunded")),
    )


def decode_subscription_snapshot(obj: Mapping, event_type: str = "subscription") -> SubscriptionSnapshot:
    subscription_id = _require(obj, "id", event_type)
    status = _require(obj, "status", event_type)
    items = (obj.get("items") or {}).get("data") or []
    lines = tuple(
        InvoiceLine(price_id=_line_price(item), line_type="subscription") for item in items
    )

    period_start = obj.get("current_period_start")
    period_end = obj.get("current_period_end")
    if period_start is None and items:
        # Newer API versions report periods per item
        period_start = items[0].get("current_period_start")
        period_end = items[0].get("current_period_end")

    return SubscriptionSnapshot(
        id=subscription_id,
        customer_id=ref_id(obj.get("customer")),
        status=status,
        lines=lines,
        current_period_start=_int(period_start),
        current_period_end=_int(period_end),
        canceled_at=_int(obj.get("canceled_at")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
    )


def decode_subscription(obj: Mapping, event_type: str, previous: Mapping) -> SubscriptionEvent:
    snapshot = decode_subscription_snapshot(obj, event_type)
    previous_price = None
    previous_items = (previous.get("items") or {}).get("data") or []
    if previous_items:
        previous_price = _line_price(previous_items[0])
    return SubscriptionEvent(snapshot=snapshot, previous_price_id=previous_price)


def decode_charge_refund(obj: Mapping, event_type: str) -> RefundEvent:
    metadata = obj.get("metadata") or {}
    return RefundEvent(
        source="charge",
        source_id=_require(obj, "id", event_type),
        customer_id=ref_id(obj.get("customer")),
        invoice_id=ref_id(obj.get("invoice")),
        payment_intent_id=ref_id(obj.get("payment_intent")),
        session_id=metadata.get("checkout_session_id"),
        amount=_int(obj.get("amount")),
        amount_refunded=_int(obj.get("amount_refunded")),
    )


def decode_invoice_refund(obj: Mapping, event_type: str) -> RefundEvent:
    invoice = decode_invoice(obj, event_type)
    return RefundEvent(
        source="invoice",
        source_id=invoice.invoice_id,
        customer_id=invoice.customer_id,
        invoice_id=invoice.invoice_id,
        payment_intent_id=invoice.payment_intent_id,
        session_id=None,
        amount=invoice.amount_paid or None,
        amount_refunded=invoice.amount_refunded,
    )


def decode_checkout(obj: Mapping, event_type: str) -> CheckoutEvent:
    metadata = obj.get("metadata") or {}
    credits = metadata.get("credits")
    try:
        credits = int(credits) if credits not in (None, "") else None
    except (TypeError, ValueError):
        raise InvalidEventError(event_type, f"metadata.credits is not an integer: {credits!r}")

    return CheckoutEvent(
        session_id=_require(obj, "id", event_type),
        mode=obj.get("mode") or "payment",
        customer_id=ref_id(obj.get("customer")),
        user_id=metadata.get("user_id") or obj.get("client_reference_id"),
        subscription_id=ref_id(obj.get("subscription")),
        invoice_id=ref_id(obj.get("invoice")),
        payment_intent_id=ref_id(obj.get("payment_intent")),
        price_id=metadata.get("price_id"),
        credits=credits,
    )


Decoder = Callable[[Mapping, str, Mapping], Any]

DECODERS: dict[str, Decoder] = {
    "invoice.payment_succeeded": lambda obj, t, prev: decode_invoice(obj, t),
    "invoice.paid": lambda obj, t, prev: decode_invoice(obj, t),
    "invoice.payment_failed": lambda obj, t, prev: decode_invoice(obj, t),
    "customer.subscription.created": decode_subscription,
    "customer.subscription.updated": decode_subscription,
    "customer.subscription.deleted": decode_subscription,
    "charge.refunded": lambda obj, t, prev: decode_charge_refund(obj, t),
    "invoice.payment_refunded": lambda obj, t, prev: decode_invoice_refund(obj, t),
    "checkout.session.completed": lambda obj, t, prev: decode_checkout(obj, t),
}


def decode_event(event_type: str, data: Mapping) -> Any:
    """Decode ``event["data"]`` for a handled type. Caller checks the type is known."""
    obj = data.get("object")
    if not isinstance(obj, Mapping):
        raise InvalidEventError(event_type, "data.object is missing")
    previous = data.get("previous_attributes") or {}
    try:
        return DECODERS[event_type](obj, event_type, previous)
    except (TypeError, ValueError, AttributeError) as e:
        raise InvalidEventError(event_type, f"malformed payload: {e}") from e
