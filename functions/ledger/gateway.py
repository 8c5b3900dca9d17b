"""Read-only access to authoritative subscription state at Stripe."""

import json
import logging
import time
from typing import Optional, Protocol

import stripe

from ledger.aws_clients import get_secretsmanager
from ledger.constants import STRIPE_CACHE_TTL, STRIPE_SECRET_ARN, STRIPE_TIMEOUT_SECONDS
from ledger.events import decode_subscription_snapshot
from ledger.errors import InvalidEventError
from ledger.logging_utils import log_external_call
from ledger.models import SubscriptionSnapshot

logger = logging.getLogger(__name__)

# Cached Stripe API key with TTL
_stripe_api_key_cache = None
_stripe_api_key_cache_time = 0.0


def get_stripe_api_key(secret_arn: Optional[str] = STRIPE_SECRET_ARN) -> Optional[str]:
    """Retrieve Stripe API key from Secrets Manager (cached with TTL)."""
    global _stripe_api_key_cache, _stripe_api_key_cache_time

    if _stripe_api_key_cache and (time.time() - _stripe_api_key_cache_time) < STRIPE_CACHE_TTL:
        return _stripe_api_key_cache

    if not secret_arn:
        return None

    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
        secret_value = response.get("SecretString", "")
        try:
            secret_json = json.loads(secret_value)
            api_key = secret_json.get("key") or secret_value
        except json.JSONDecodeError:
            api_key = secret_value

        _stripe_api_key_cache = api_key
        _stripe_api_key_cache_time = time.time()
        return api_key
    except Exception as e:
        logger.error(f"Failed to retrieve Stripe API key: {e}")
        return None


def reset_stripe_api_key_cache() -> None:
    global _stripe_api_key_cache, _stripe_api_key_cache_time
    _stripe_api_key_cache = None
    _stripe_api_key_cache_time = 0.0


class PaymentGateway(Protocol):
    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        """Current subscription state, or None when it cannot be fetched."""
        ...


class StripeGateway:
    """PaymentGateway backed by the Stripe API.

    Calls are bounded by `timeout` and never retried here: the lookup is
    opportunistic and a failure only means crediting proceeds without it.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: float = STRIPE_TIMEOUT_SECONDS, client=None):
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            api_key = self._api_key or get_stripe_api_key()
            if not api_key:
                return None
            self._client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
                max_network_retries=0,
            )
        return self._client

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionSnapshot]:
        client = self._get_client()
        if client is None:
            logger.warning("Stripe API key not configured, skipping subscription lookup")
            return None

        start = time.time()
        try:
            subscription = client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            latency_ms = (time.time() - start) * 1000
            log_external_call(logger, "stripe", "subscriptions.retrieve", False, latency_ms, str(e))
            return None

        latency_ms = (time.time() - start) * 1000
        log_external_call(logger, "stripe", "subscriptions.retrieve", True, latency_ms)

        # StripeObject stopped being a dict subclass; decode the plain payload
        try:
            payload = subscription.to_dict() if hasattr(subscription, "to_dict") else subscription
            return decode_subscription_snapshot(payload, "subscriptions.retrieve")
        except InvalidEventError as e:
            logger.warning(f"Unusable subscription {subscription_id} from Stripe: {e}")
            return None
        except (AttributeError, TypeError, ValueError) as e:
            log_external_call(logger, "stripe", "subscriptions.retrieve", False, latency_ms, f"decode failed: {e}")
            return None
