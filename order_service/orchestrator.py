"""
Refund/capture orchestrator.

Reacts to committed order status transitions:

    delivered  -> capture a manual-capture authorization
    cancelled  -> release the authorization, or refund what was collected
    returned   -> refund the remaining amount

The status change is always committed first. Gateway side effects run
afterwards and their failures are logged for manual reconciliation, never
raised, so the caller always sees the outcome of the transition itself.
"""
import logging
from decimal import Decimal
from typing import List, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from order_service import inventory, models, orders, reconciliation
from order_service.errors import (
    AlreadyFullyRefunded,
    OrderServiceError,
    PaymentIntentNotFound,
    PaymentNotSucceeded,
)
from order_service.gateway import StripeGateway
from order_service.status import OrderStatus, parse_status

logger = logging.getLogger(__name__)

AUTO_REFUND_REASON = "requested_by_customer"


class PaymentOutcome(NamedTuple):
    """What the orchestrator did at the gateway after a transition."""
    action: str  # none | captured | capture_failed | authorization_released | refunded | refund_failed
    refund: Optional[models.Refund] = None
    message: Optional[str] = None


NO_ACTION = PaymentOutcome("none")


def try_refund(
    db: Session,
    order: models.Order,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
    amount: Optional[Decimal] = None,
    item_ids: Optional[List[str]] = None,
    reason: str = AUTO_REFUND_REASON,
) -> PaymentOutcome:
    """Best-effort refund; every failure is logged and reported in the outcome."""
    try:
        refund = reconciliation.refund_order(
            db,
            order.id,
            gateway,
            amount=amount,
            reason=reason,
            item_ids=item_ids,
            actor_id=actor_id,
        )
    except (PaymentIntentNotFound, AlreadyFullyRefunded) as e:
        logger.info(f"Nothing to refund for order {order.id}: {e.message}")
        return PaymentOutcome("none", message=e.message)
    except PaymentNotSucceeded as e:
        log = logger.info if e.can_cancel else logger.warning
        log(
            f"Order {order.id} not refunded: payment intent {e.payment_intent_id} "
            f"is {e.payment_status} (actor {actor_id})"
        )
        return PaymentOutcome("none" if e.can_cancel else "refund_failed", message=e.message)
    except OrderServiceError as e:
        logger.error(
            f"Automatic refund failed for order {order.id} "
            f"(payment intent {order.payment_intent_id}, actor {actor_id}): {e.message}. "
            f"Manual reconciliation required."
        )
        return PaymentOutcome("refund_failed", message=e.message)
    except Exception as e:
        db.rollback()
        logger.exception(
            f"Automatic refund crashed for order {order.id} "
            f"(payment intent {order.payment_intent_id}, actor {actor_id}). "
            f"Manual reconciliation required."
        )
        return PaymentOutcome("refund_failed", message=str(e))

    return PaymentOutcome("refunded", refund=refund)


def capture_on_delivery(
    db: Session,
    order: models.Order,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
) -> PaymentOutcome:
    try:
        payment_intent = reconciliation.capture_order(db, order, gateway, actor_id=actor_id)
    except OrderServiceError as e:
        db.rollback()
        logger.error(
            f"Capture failed for delivered order {order.id} "
            f"(payment intent {order.payment_intent_id}, actor {actor_id}): {e.message}"
        )
        return PaymentOutcome("capture_failed", message=e.message)

    if payment_intent is not None and payment_intent.status == "succeeded":
        return PaymentOutcome("captured")
    return NO_ACTION


def settle_cancellation(
    db: Session,
    order: models.Order,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
) -> PaymentOutcome:
    """Release an uncaptured hold, otherwise refund whatever was collected."""
    try:
        if reconciliation.release_authorization(db, order, gateway):
            return PaymentOutcome("authorization_released")
    except OrderServiceError as e:
        db.rollback()
        logger.error(
            f"Could not release authorization for cancelled order {order.id} "
            f"(payment intent {order.payment_intent_id}, actor {actor_id}): {e.message}"
        )
        return PaymentOutcome("refund_failed", message=e.message)

    return try_refund(db, order, gateway, actor_id=actor_id)


def on_transition(
    db: Session,
    order: models.Order,
    previous: OrderStatus,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
    refund_amount: Optional[Decimal] = None,
    item_ids: Optional[List[str]] = None,
) -> PaymentOutcome:
    """
    Run the gateway side effect for a transition that has already been committed.

    ``refund_amount`` and ``item_ids`` only apply to ``returned``; without an
    amount the whole remaining balance is refunded.
    """
    status = OrderStatus(order.status)
    logger.debug(f"Order {order.id} transitioned {previous.value} -> {status.value}")

    if status is OrderStatus.DELIVERED:
        return capture_on_delivery(db, order, gateway, actor_id)
    if status is OrderStatus.CANCELLED:
        return settle_cancellation(db, order, gateway, actor_id)
    if status is OrderStatus.RETURNED:
        return try_refund(db, order, gateway, actor_id=actor_id, amount=refund_amount, item_ids=item_ids)
    return NO_ACTION


def cancel_order(
    db: Session,
    order_id: str,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
) -> Tuple[models.Order, PaymentOutcome]:
    """
    Cancel an order and give its reserved stock back.

    The status change and the compensating stock operations commit together;
    the payment is settled afterwards.

    Raises:
        IllegalCancellation: the order is past processing
    """
    try:
        order, previous = orders.update_order_status(db, order_id, OrderStatus.CANCELLED, actor_id=actor_id, commit=False)
        inventory.reverse_order_stock(db, order.id, performed_by=actor_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    outcome = on_transition(db, order, previous, gateway, actor_id)
    db.refresh(order)
    return order, outcome


def transition_order(
    db: Session,
    order_id: str,
    new_status,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
    tracking_number: Optional[str] = None,
    refund_amount: Optional[Decimal] = None,
    item_ids: Optional[List[str]] = None,
) -> Tuple[models.Order, PaymentOutcome]:
    """Apply a status change, then react to it."""
    target = parse_status(new_status)
    if target is OrderStatus.CANCELLED:
        return cancel_order(db, order_id, gateway, actor_id)

    order, previous = orders.update_order_status(
        db, order_id, target, actor_id=actor_id, tracking_number=tracking_number
    )
    outcome = on_transition(
        db, order, previous, gateway, actor_id, refund_amount=refund_amount, item_ids=item_ids
    )
    db.refresh(order)
    return order, outcome
