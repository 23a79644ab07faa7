"""
Payment gateway client.

Thin wrapper over the ``stripe`` library. Amounts cross this boundary in
major units (Decimal dollars) and are converted to cents here. Stripe
exceptions never escape: they are re-raised as ``GatewayError``.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from itertools import islice
from typing import Any, Dict, Iterator, List, Optional

import stripe

from order_service import config
from order_service.errors import GatewayError

logger = logging.getLogger(__name__)

stripe.api_key = config.STRIPE_SECRET_KEY

CENT = Decimal("0.01")


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def object_id(ref) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if ref is None or isinstance(ref, str):
        return ref
    return getattr(ref, "id", None)


def metadata_of(obj) -> Dict[str, Any]:
    """Metadata of a Stripe object, or of a plain dict from a webhook payload."""
    if isinstance(obj, dict):
        metadata = obj.get("metadata")
    else:
        metadata = getattr(obj, "metadata", None)
    if not metadata:
        return {}
    if hasattr(metadata, "to_dict"):
        return metadata.to_dict()
    return dict(metadata)


class StripeGateway:
    """Every method is one gateway round trip."""

    def __init__(self, currency: str = config.CURRENCY):
        self.currency = currency

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise GatewayError(operation, getattr(e, "user_message", None) or str(e), getattr(e, "code", None))

    def create_payment_intent(
        self,
        amount: Decimal,
        capture_method: str = "manual",
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ):
        return self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=to_cents(amount),
            currency=self.currency,
            capture_method=capture_method,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )

    def confirm_payment_intent(self, payment_intent_id: str, payment_method: Optional[str] = None):
        params = {"payment_method": payment_method} if payment_method else {}
        return self._call("confirm", stripe.PaymentIntent.confirm, payment_intent_id, **params)

    def capture_payment_intent(self, payment_intent_id: str, idempotency_key: Optional[str] = None):
        return self._call(
            "capture", stripe.PaymentIntent.capture, payment_intent_id, idempotency_key=idempotency_key
        )

    def cancel_payment_intent(self, payment_intent_id: str):
        return self._call("cancel", stripe.PaymentIntent.cancel, payment_intent_id)

    def retrieve_payment_intent(self, payment_intent_id: str):
        return self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id)

    def retrieve_charge(self, charge_id: str):
        return self._call("retrieve_charge", stripe.Charge.retrieve, charge_id)

    def list_charges(self, payment_intent_id: str, limit: int = 10) -> List[Any]:
        charges = self._call("list_charges", stripe.Charge.list, payment_intent=payment_intent_id, limit=limit)
        return list(charges.data)

    def _paged(self, operation: str, list_fn, max_results: int) -> Iterator[Any]:
        # Later pages are fetched lazily, so errors can surface mid-iteration
        try:
            yield from islice(list_fn(limit=100).auto_paging_iter(), max_results)
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise GatewayError(operation, str(e), getattr(e, "code", None))

    def iter_recent_charges(self, max_results: int = config.GATEWAY_SEARCH_LIMIT) -> Iterator[Any]:
        return self._paged("list_charges", stripe.Charge.list, max_results)

    def iter_recent_payment_intents(self, max_results: int = config.GATEWAY_SEARCH_LIMIT) -> Iterator[Any]:
        return self._paged("list_payment_intents", stripe.PaymentIntent.list, max_results)

    def refund(
        self,
        charge_id: str,
        amount: Decimal,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ):
        params = {"charge": charge_id, "amount": to_cents(amount), "metadata": metadata or {}}
        if reason:
            params["reason"] = reason
        return self._call("refund", stripe.Refund.create, idempotency_key=idempotency_key, **params)

    def construct_event(self, payload: bytes, signature: str):
        # Signature errors are the caller's concern (400, not 502)
        return stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)


_gateway = StripeGateway()


def get_gateway() -> StripeGateway:
    """FastAPI dependency; overridden in tests."""
    return _gateway
