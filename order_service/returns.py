"""
Return requests.

A return targets a single order item. The first return on a delivered order
moves it to ``return_processing``; once every item has been received the
order moves to ``returned`` and the remaining amount is refunded. Items
received earlier are refunded individually.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from order_service import inventory, models, orchestrator, orders, schemas
from order_service.errors import NotFoundError, ValidationError
from order_service.gateway import StripeGateway
from order_service.orchestrator import PaymentOutcome
from order_service.status import OrderStatus, ReturnStatus, validate_return_transition

logger = logging.getLogger(__name__)

_RETURNABLE_ORDER_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.RETURN_PROCESSING.value)
_SETTLED_RETURN_STATUSES = (ReturnStatus.RECEIVED.value, ReturnStatus.REFUNDED.value)


def get_return(db: Session, return_id: str, lock: bool = False) -> models.OrderReturn:
    query = db.query(models.OrderReturn).filter(models.OrderReturn.id == return_id)
    if lock:
        query = query.with_for_update().populate_existing()
    order_return = query.first()
    if order_return is None:
        raise NotFoundError("Return", return_id)
    return order_return


def get_returns_for_order(db: Session, order_id: str) -> List[models.OrderReturn]:
    return (
        db.query(models.OrderReturn)
        .filter(models.OrderReturn.order_id == order_id)
        .order_by(models.OrderReturn.requested_at.asc())
        .all()
    )


def create_return(
    db: Session,
    data: schemas.ReturnCreate,
    user_id: Optional[str] = None,
) -> models.OrderReturn:
    """
    Open a return request for one item of a delivered order.

    Raises:
        NotFoundError: unknown order or item
        ValidationError: order not delivered, item not returnable, or already returned
    """
    try:
        order = orders.get_order_or_404(db, data.order_id, lock=True)
        if order.status not in _RETURNABLE_ORDER_STATUSES:
            raise ValidationError(f"Only delivered orders can be returned (order is {order.status})")

        item = next((i for i in order.items if i.id == data.order_item_id), None)
        if item is None:
            raise NotFoundError("Order item", data.order_item_id)
        if not item.is_returnable:
            raise ValidationError("This item is not eligible for return")

        existing = (
            db.query(models.OrderReturn)
            .filter(
                models.OrderReturn.order_item_id == item.id,
                models.OrderReturn.status != ReturnStatus.REJECTED.value,
            )
            .first()
        )
        if existing is not None:
            raise ValidationError("A return has already been requested for this item")

        order_return = models.OrderReturn(
            id=models.new_id(),
            order_id=order.id,
            order_item_id=item.id,
            user_id=user_id,
            reason=data.reason,
            status=ReturnStatus.PENDING.value,
            condition=data.condition,
            is_disposed=data.is_disposed,
        )
        db.add(order_return)

        if order.status == OrderStatus.DELIVERED.value:
            orders.update_order_status(db, order.id, OrderStatus.RETURN_PROCESSING, actor_id=user_id, commit=False)
        orders.log_order_event(
            db,
            order_id=order.id,
            event_type="return_requested",
            description=f"Return requested for {item.product_name}",
            new_value=order_return.id,
            user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order_return)
    logger.info(f"Return {order_return.id} requested for item {item.id} of order {order.id}")
    return order_return


def _all_items_received(db: Session, order: models.Order) -> bool:
    settled = {
        order_item_id
        for (order_item_id,) in db.query(models.OrderReturn.order_item_id).filter(
            models.OrderReturn.order_id == order.id,
            models.OrderReturn.status.in_(_SETTLED_RETURN_STATUSES),
        )
    }
    return all(item.id in settled for item in order.items if item.is_returnable)


def _settle_received(
    db: Session,
    order_return: models.OrderReturn,
    update: schemas.ReturnStatusUpdate,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
) -> PaymentOutcome:
    order = orders.get_order_or_404(db, order_return.order_id)
    item = db.get(models.OrderItem, order_return.order_item_id)

    if _all_items_received(db, order) and order.status == OrderStatus.RETURN_PROCESSING.value:
        amount = update.refund_amount
        if amount is None and not all(i.is_returnable for i in order.items):
            amount = item.subtotal
        _, outcome = orchestrator.transition_order(
            db,
            order.id,
            OrderStatus.RETURNED,
            gateway,
            actor_id=actor_id,
            refund_amount=amount,
            item_ids=[item.id] if amount is not None else None,
        )
    else:
        outcome = orchestrator.try_refund(
            db,
            order,
            gateway,
            actor_id=actor_id,
            amount=update.refund_amount or item.subtotal,
            item_ids=[item.id],
        )

    if outcome.refund is not None:
        order_return.status = ReturnStatus.REFUNDED.value
        order_return.refund_amount = outcome.refund.amount
        order_return.processed_at = models.utcnow()
        db.commit()
    return outcome


def update_return_status(
    db: Session,
    return_id: str,
    update: schemas.ReturnStatusUpdate,
    gateway: StripeGateway,
    actor_id: Optional[str] = None,
) -> Tuple[models.OrderReturn, PaymentOutcome]:
    """
    Move a return through pending -> approved -> received -> refunded.

    Receiving an item restocks it unless it was disposed, then triggers the
    refund. Stock and status commit together before the gateway is called.

    Raises:
        NotFoundError: unknown return
        InvalidTransition: status not reachable
        ValidationError: received without a condition for a non-disposed item
    """
    try:
        order_return = get_return(db, return_id, lock=True)
        target = validate_return_transition(order_return.status, update.status)
        previous = order_return.status

        if update.return_tracking_number is not None:
            order_return.return_tracking_number = update.return_tracking_number or None

        if target is ReturnStatus.RECEIVED:
            condition = update.condition or order_return.condition
            disposed = update.is_disposed or order_return.is_disposed
            if not disposed and not condition:
                raise ValidationError("Condition is required for received items unless the item is disposed")
            order_return.condition = condition
            order_return.is_disposed = disposed
            if not disposed:
                item = db.get(models.OrderItem, order_return.order_item_id)
                inventory.restock_return(db, order_return, item, performed_by=actor_id)

        if target is ReturnStatus.REFUNDED and update.refund_amount is not None:
            order_return.refund_amount = update.refund_amount

        order_return.status = target.value
        if target is not ReturnStatus.APPROVED:
            order_return.processed_at = models.utcnow()

        orders.log_order_event(
            db,
            order_id=order_return.order_id,
            event_type="return_status_changed",
            description=f"Return {order_return.id} status changed from '{previous}' to '{target.value}'",
            old_value=previous,
            new_value=target.value,
            user_id=actor_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Return {return_id} status {previous} -> {target.value}")

    outcome = orchestrator.NO_ACTION
    if target is ReturnStatus.RECEIVED:
        outcome = _settle_received(db, order_return, update, gateway, actor_id)
    db.refresh(order_return)
    return order_return, outcome
