"""
Payment reconciliation engine.

Maps an order to its gateway payment intent and charge, and drives capture
and refund calls against them. Orders created before a payment intent was
attached are resolved by searching gateway history, first by metadata and
then, as a last resort, by amount and creation time. Heuristic matches are
logged so they can be audited.

Refunds hold the order row lock from the remaining-amount computation until
the Refund row is committed, so two concurrent refunds cannot both see a
stale remaining amount.
"""
import calendar
import json
import logging
import re
from decimal import Decimal
from typing import List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from order_service import config, models, orders
from order_service.errors import (
    AlreadyFullyRefunded,
    NoSuccessfulCharge,
    NotFoundError,
    PaymentIntentNotFound,
    PaymentNotSucceeded,
    ValidationError,
)
from order_service.gateway import CENT, StripeGateway, from_cents, metadata_of, object_id, to_cents
from order_service.status import OrderStatus

logger = logging.getLogger(__name__)

PAYMENT_METHOD_PREFIX = "stripe_payment_intent:"
_PAYMENT_METHOD_PATTERN = re.compile(r"stripe_payment_intent:(pi_[A-Za-z0-9_]+)")

# Refund statuses that count against the order total
COUNTED_REFUND_STATUSES = ("succeeded", "pending")

_TRANSACTION_STATUS = {
    "succeeded": "completed",
    "pending": "pending",
    "requires_action": "pending",
    "failed": "failed",
    "canceled": "cancelled",
}


def payment_method_descriptor(payment_intent_id: str) -> str:
    return f"{PAYMENT_METHOD_PREFIX}{payment_intent_id}"


def parse_payment_method(payment_method: Optional[str]) -> Optional[str]:
    """Extract ``pi_...`` from a ``stripe_payment_intent:<id>`` descriptor."""
    if not payment_method:
        return None
    match = _PAYMENT_METHOD_PATTERN.search(payment_method)
    return match.group(1) if match else None


def order_ids_from_metadata(metadata: dict) -> Set[str]:
    """Order ids named by gateway metadata: ``orderId`` or a JSON ``orderIds`` list."""
    ids = set()
    if metadata.get("orderId"):
        ids.add(metadata["orderId"])
    raw = metadata.get("orderIds")
    if raw:
        try:
            parsed = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            logger.warning(f"Ignoring malformed orderIds metadata: {raw!r}")
            parsed = []
        if isinstance(parsed, str):
            parsed = [parsed]
        ids.update(str(order_id) for order_id in parsed or [])
    return ids


def _epoch(value) -> int:
    return calendar.timegm(value.timetuple())


def _attached_elsewhere(db: Session, order: models.Order, payment_intent_id: str) -> bool:
    return db.query(models.Order.id).filter(
        models.Order.payment_intent_id == payment_intent_id,
        models.Order.id != order.id,
    ).first() is not None


def _search_gateway(db: Session, order: models.Order, gateway: StripeGateway) -> Tuple[Optional[str], Optional[str]]:
    """
    Look for the order's payment intent in recent gateway history.

    Returns:
        (payment intent id, how it was found) or (None, None)
    """
    order_cents = to_cents(order.total_amount)
    created = _epoch(order.created_at)
    window = config.HEURISTIC_MATCH_WINDOW_SECONDS
    candidates = []

    def consider(payment_intent_id, amount, created_at, metadata):
        if not payment_intent_id or amount != order_cents or created_at is None:
            return
        # paid for some other order
        if order_ids_from_metadata(metadata):
            return
        delta = abs(created_at - created)
        if delta <= window:
            candidates.append((delta, payment_intent_id))

    for charge in gateway.iter_recent_charges():
        payment_intent_id = object_id(charge.payment_intent)
        if not payment_intent_id:
            continue
        metadata = metadata_of(charge)
        if order.id in order_ids_from_metadata(metadata):
            return payment_intent_id, "charge metadata"
        if charge.status == "succeeded":
            consider(payment_intent_id, charge.amount, charge.created, metadata)

    for intent in gateway.iter_recent_payment_intents():
        metadata = metadata_of(intent)
        if order.id in order_ids_from_metadata(metadata):
            return intent.id, "payment intent metadata"
        consider(intent.id, intent.amount, intent.created, metadata)

    for delta, payment_intent_id in sorted(candidates):
        if _attached_elsewhere(db, order, payment_intent_id):
            continue
        logger.warning(
            f"Order {order.id} resolved to {payment_intent_id} by heuristic match "
            f"(amount {order.total_amount}, {delta}s from order creation, {len(candidates)} candidate(s))"
        )
        return payment_intent_id, "heuristic match"

    return None, None


def resolve_payment_intent(
    db: Session,
    order: models.Order,
    gateway: StripeGateway,
    search: bool = True,
) -> Optional[str]:
    """
    Find the gateway payment intent for an order.

    A recorded ``payment_intent_id`` is trusted as is. Otherwise the payment
    method descriptor is parsed, then gateway history is searched. Whatever
    is found is written back onto the order (flushed, not committed).

    Returns:
        Payment intent id, or None when there is nothing to reconcile
    """
    if order.payment_intent_id:
        return order.payment_intent_id

    payment_intent_id = parse_payment_method(order.payment_method)
    source = "payment method"
    if not payment_intent_id and search:
        payment_intent_id, source = _search_gateway(db, order, gateway)

    if not payment_intent_id:
        logger.info(f"No payment intent found for order {order.id}")
        return None

    logger.info(f"Order {order.id} linked to payment intent {payment_intent_id} via {source}")
    orders.attach_payment_intent(db, order, payment_intent_id)
    return payment_intent_id


def resolve_charge(gateway: StripeGateway, payment_intent):
    """
    Pick the succeeded charge of a payment intent.

    Prefers ``latest_charge``; falls back to the first succeeded charge in
    the intent's charge list.

    Raises:
        NoSuccessfulCharge: no charge on the intent has succeeded
    """
    latest = payment_intent.latest_charge
    if latest is not None:
        charge = gateway.retrieve_charge(latest) if isinstance(latest, str) else latest
        if charge.status == "succeeded":
            return charge

    for charge in gateway.list_charges(payment_intent.id):
        if charge.status == "succeeded":
            return charge

    raise NoSuccessfulCharge(payment_intent.id)


def refunded_total(db: Session, order_id: str, statuses=("succeeded",)) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(models.Refund.amount), 0))
        .filter(models.Refund.order_id == order_id, models.Refund.status.in_(statuses))
        .scalar()
    )
    return Decimal(str(total)).quantize(CENT)


def remaining_amount(db: Session, order: models.Order) -> Decimal:
    """Order total minus refunds that succeeded or are still pending at the gateway."""
    return (Decimal(str(order.total_amount)) - refunded_total(db, order.id, COUNTED_REFUND_STATUSES)).quantize(CENT)


def get_refunds(db: Session, order_id: str) -> List[models.Refund]:
    return (
        db.query(models.Refund)
        .filter(models.Refund.order_id == order_id)
        .order_by(models.Refund.created_at.desc())
        .all()
    )


def refund_order(
    db: Session,
    order_id: str,
    gateway: StripeGateway,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    item_ids: Optional[List[str]] = None,
    actor_id: Optional[str] = None,
) -> models.Refund:
    """
    Refund an order, fully or partially, against its succeeded charge.

    The amount defaults to, and is clamped to, the remaining unrefunded
    amount. The Refund row is only written after the gateway accepted the
    refund.

    Raises:
        NotFoundError: unknown order
        PaymentIntentNotFound: no payment intent could be resolved
        AlreadyFullyRefunded: remaining amount is at most one cent
        PaymentNotSucceeded: the payment intent is not in ``succeeded``
        NoSuccessfulCharge: the intent has no succeeded charge
        GatewayError: the gateway rejected a call
    """
    try:
        order = orders.get_order_or_404(db, order_id, lock=True)

        payment_intent_id = resolve_payment_intent(db, order, gateway)
        if not payment_intent_id:
            raise PaymentIntentNotFound(order.id)

        remaining = remaining_amount(db, order)
        if remaining <= CENT:
            raise AlreadyFullyRefunded(order.id)

        refund_amount = remaining
        if amount is not None:
            refund_amount = min(Decimal(str(amount)).quantize(CENT), remaining)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")

        payment_intent = gateway.retrieve_payment_intent(payment_intent_id)
        if payment_intent.status != "succeeded":
            raise PaymentNotSucceeded(payment_intent_id, payment_intent.status)

        charge = resolve_charge(gateway, payment_intent)

        metadata = {"orderId": order.id, "refundedBy": actor_id or "system"}
        if item_ids:
            metadata["itemIds"] = json.dumps(item_ids)

        attempt = db.query(models.Refund).filter(models.Refund.order_id == order.id).count()
        gateway_refund = gateway.refund(
            charge.id,
            refund_amount,
            reason=reason,
            metadata=metadata,
            idempotency_key=f"refund-{order.id}-{attempt}-{to_cents(refund_amount)}",
        )

        refund = models.Refund(
            id=models.new_id(),
            order_id=order.id,
            payment_intent_id=payment_intent_id,
            refund_id=gateway_refund.id,
            amount=refund_amount,
            currency=gateway.currency,
            status=gateway_refund.status,
            reason=reason,
            item_ids=item_ids,
            refunded_by=actor_id,
        )
        db.add(refund)
        db.add(models.StoreTransaction(
            id=models.new_id(),
            store_id=order.store_id,
            transaction_type="refund",
            amount=-refund_amount,
            currency=gateway.currency,
            status=_TRANSACTION_STATUS.get(gateway_refund.status, "pending"),
            description=f"Refund for order {order.id}",
            order_id=order.id,
            payment_method=order.payment_method,
            created_by=actor_id,
            details={"refundId": gateway_refund.id, "paymentIntentId": payment_intent_id, "reason": reason},
        ))
        orders.log_order_event(
            db,
            order_id=order.id,
            event_type="refunded",
            description=f"Refund of {refund_amount} {gateway.currency.upper()} ({gateway_refund.status})",
            new_value=str(refund_amount),
            user_id=actor_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(refund)
    logger.info(
        f"Refunded {refund_amount} on order {order_id} (payment intent {payment_intent_id}, "
        f"refund {refund.refund_id}, status {refund.status}, actor {actor_id})"
    )
    return refund


def capture_order(
    db: Session,
    order: models.Order,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
):
    """
    Capture a manual-capture authorization for an order.

    Only an intent in ``requires_capture`` is captured; an already succeeded
    intent is left alone and any other status is logged. Commits the payment
    ledger entry and any payment intent resolved along the way.

    Returns:
        The captured (or current) payment intent, or None if none was found
    """
    payment_intent_id = resolve_payment_intent(db, order, gateway)
    if not payment_intent_id:
        db.commit()
        return None

    payment_intent = gateway.retrieve_payment_intent(payment_intent_id)
    if payment_intent.status == "succeeded":
        logger.info(f"Payment intent {payment_intent_id} for order {order.id} already captured")
        db.commit()
        return payment_intent
    if payment_intent.status != "requires_capture":
        logger.warning(
            f"Payment intent {payment_intent_id} for order {order.id} is not capturable "
            f"(status {payment_intent.status}); delivery recorded without capture"
        )
        db.commit()
        return payment_intent

    captured = gateway.capture_payment_intent(payment_intent_id, idempotency_key=f"capture-{order.id}")
    amount_received = getattr(captured, "amount_received", None)
    amount = from_cents(amount_received) if amount_received else Decimal(str(order.total_amount))
    db.add(models.StoreTransaction(
        id=models.new_id(),
        store_id=order.store_id,
        transaction_type="payment",
        amount=amount,
        currency=gateway.currency,
        status="completed",
        description=f"Payment captured for order {order.id}",
        order_id=order.id,
        payment_method=order.payment_method,
        created_by=actor_id,
        details={"paymentIntentId": payment_intent_id},
    ))
    orders.log_order_event(
        db,
        order_id=order.id,
        event_type="payment_captured",
        description=f"Captured {amount} {gateway.currency.upper()}",
        new_value=str(amount),
        user_id=actor_id,
    )
    db.commit()
    logger.info(f"Captured {amount} for order {order.id} (payment intent {payment_intent_id}, actor {actor_id})")
    return captured


def release_authorization(db: Session, order: models.Order, gateway: StripeGateway) -> bool:
    """
    Cancel an uncaptured authorization so the hold on the customer's card is released.

    Returns:
        True if an authorization was cancelled, False if there was none to release
    """
    payment_intent_id = resolve_payment_intent(db, order, gateway, search=False)
    db.commit()
    if not payment_intent_id:
        return False

    payment_intent = gateway.retrieve_payment_intent(payment_intent_id)
    if payment_intent.status != "requires_capture":
        return False

    gateway.cancel_payment_intent(payment_intent_id)
    logger.info(f"Released authorization {payment_intent_id} for cancelled order {order.id}")
    return True


def create_payment_intent(
    db: Session,
    order_id: str,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
):
    """
    Authorize payment for a pending order with a manual-capture intent.

    Idempotent per order: an order that already has an intent gets that
    intent back.
    """
    try:
        order = orders.get_order_or_404(db, order_id, lock=True)
        if order.payment_intent_id:
            payment_intent = gateway.retrieve_payment_intent(order.payment_intent_id)
            db.commit()
            return payment_intent
        if order.status != OrderStatus.PENDING.value:
            raise ValidationError(f"Cannot create a payment intent for an order that is {order.status}")

        payment_intent = gateway.create_payment_intent(
            order.total_amount,
            capture_method="manual",
            metadata={"orderId": order.id, "storeId": order.store_id},
            idempotency_key=f"order-{order.id}",
        )
        orders.attach_payment_intent(db, order, payment_intent.id)
        order.payment_method = payment_method_descriptor(payment_intent.id)
        orders.log_order_event(
            db,
            order_id=order.id,
            event_type="payment_intent_created",
            description=f"Payment intent {payment_intent.id} created",
            new_value=payment_intent.id,
            user_id=actor_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Created payment intent {payment_intent.id} for order {order_id}")
    return payment_intent


def record_payment_authorized(db: Session, payment_intent_id: str, metadata: dict) -> List[str]:
    """
    Attach a confirmed payment intent to the orders named in its metadata
    and move pending ones to processing.

    Returns:
        Ids of the orders that moved to processing
    """
    order_ids = sorted(order_ids_from_metadata(metadata))
    advanced = []
    try:
        for order_id in order_ids:
            order = orders.get_order(db, order_id, lock=True)
            if order is None:
                logger.warning(f"Webhook names unknown order {order_id} (payment intent {payment_intent_id})")
                continue
            if not order.payment_intent_id:
                orders.attach_payment_intent(db, order, payment_intent_id)
            if order.status == OrderStatus.PENDING.value:
                orders.update_order_status(db, order.id, OrderStatus.PROCESSING, commit=False)
                advanced.append(order.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return advanced


def update_refund_status(db: Session, gateway_refund_id: str, status: str) -> models.Refund:
    """Correct a Refund row's status from the gateway, and its ledger entry with it."""
    refund = db.query(models.Refund).filter(models.Refund.refund_id == gateway_refund_id).first()
    if refund is None:
        raise NotFoundError("Refund", gateway_refund_id)
    if refund.status == status:
        return refund

    previous = refund.status
    refund.status = status
    transactions = (
        db.query(models.StoreTransaction)
        .filter(
            models.StoreTransaction.order_id == refund.order_id,
            models.StoreTransaction.transaction_type == "refund",
        )
        .all()
    )
    for transaction in transactions:
        if (transaction.details or {}).get("refundId") == gateway_refund_id:
            transaction.status = _TRANSACTION_STATUS.get(status, "pending")
    db.commit()
    db.refresh(refund)
    logger.info(f"Refund {gateway_refund_id} on order {refund.order_id} status {previous} -> {status}")
    return refund
