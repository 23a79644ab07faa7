"""
Order persistence operations.

``update_order_status`` is the only way an order's status changes. It does
not trigger captures, refunds or stock moves; see ``orchestrator``.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from order_service import inventory, models, schemas
from order_service.errors import NotFoundError, ValidationError
from order_service.gateway import CENT
from order_service.status import OrderStatus, validate_transition

logger = logging.getLogger(__name__)


def get_order(db: Session, order_id: str, lock: bool = False) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve
        lock: Take a row lock (SELECT ... FOR UPDATE) until the transaction ends

    Returns:
        Order object or None if not found
    """
    query = db.query(models.Order).filter(models.Order.id == order_id)
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def get_order_or_404(db: Session, order_id: str, lock: bool = False) -> models.Order:
    order = get_order(db, order_id, lock=lock)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """
    Add an order event to the timeline. Written in the caller's transaction.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    db.add(models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    ))


def get_order_timeline(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def compute_total(items: List[schemas.OrderItemCreate]) -> Decimal:
    return sum(
        (Decimal(str(item.price)) * item.quantity for item in items),
        Decimal("0"),
    ).quantize(CENT)


def create_order(db: Session, order: schemas.OrderCreate, user_id: Optional[str] = None) -> models.Order:
    """
    Add a new pending order and its items to the session.

    The total is computed from the supplied line prices and never recomputed.
    Nothing is committed and the payment gateway is not contacted.

    Raises:
        ValidationError: no items, or neither a user nor a guest email
    """
    if not order.items:
        raise ValidationError("Order must contain at least one item")
    if not user_id and not order.guest_email:
        raise ValidationError("Guest orders require a guestEmail")

    db_order = models.Order(
        id=models.new_id(),
        user_id=user_id,
        guest_email=None if user_id else order.guest_email,
        store_id=order.store_id,
        store_name=order.store_name,
        total_amount=compute_total(order.items),
        status=OrderStatus.PENDING.value,
        shipping_address=order.shipping_address.model_dump(),
        payment_method=order.payment_method,
    )
    for position, item in enumerate(order.items):
        price = Decimal(str(item.price)).quantize(CENT)
        db_order.items.append(models.OrderItem(
            id=models.new_id(),
            position=position,
            product_id=item.product_id,
            product_name=item.product_name,
            product_image=item.product_image,
            price=price,
            quantity=item.quantity,
            subtotal=(price * item.quantity).quantize(CENT),
            is_returnable=item.is_returnable,
        ))

    db.add(db_order)
    db.flush()
    log_order_event(
        db,
        order_id=db_order.id,
        event_type="created",
        description=f"Order created with status '{db_order.status}'",
        new_value=db_order.status,
        user_id=user_id,
    )
    return db_order


def checkout_order(
    db: Session,
    order: schemas.OrderCreate,
    user_id: Optional[str] = None,
) -> models.Order:
    """
    Create an order and reserve its stock in one transaction.

    Each line item writes an ``out`` stock operation tagged with the order id,
    so a later cancellation can be compensated exactly.
    """
    try:
        db_order = create_order(db, order, user_id=user_id)
        inventory.reserve_order_stock(db, db_order, performed_by=user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    logger.info(f"Order {db_order.id} created for store {db_order.store_id}: total {db_order.total_amount}")
    return db_order


def update_order_status(
    db: Session,
    order_id: str,
    new_status,
    actor_id: Optional[str] = None,
    tracking_number: Optional[str] = None,
    commit: bool = True,
) -> Tuple[models.Order, OrderStatus]:
    """
    Move an order to ``new_status`` if the transition table allows it.

    The order row is locked for the rest of the transaction. Pass
    ``commit=False`` to bundle further writes (e.g. stock reversal) into the
    same commit.

    Returns:
        (updated order, previous status)

    Raises:
        NotFoundError: unknown order
        InvalidTransition / IllegalCancellation: transition not allowed
    """
    db_order = get_order_or_404(db, order_id, lock=True)
    previous = OrderStatus(db_order.status)
    target = validate_transition(previous, new_status)

    db_order.status = target.value
    now = models.utcnow()
    if target is OrderStatus.SHIPPED:
        db_order.shipped_at = now
    elif target is OrderStatus.DELIVERED:
        db_order.delivered_at = now
    if tracking_number is not None:
        db_order.tracking_number = tracking_number or None

    log_order_event(
        db,
        order_id=order_id,
        event_type="status_changed",
        description=f"Status changed from '{previous.value}' to '{target.value}'",
        old_value=previous.value,
        new_value=target.value,
        user_id=actor_id,
    )

    if commit:
        db.commit()
        db.refresh(db_order)
    else:
        db.flush()

    logger.info(f"Order {order_id} status {previous.value} -> {target.value}")
    return db_order, previous


def attach_payment_intent(db: Session, db_order: models.Order, payment_intent_id: str) -> None:
    """Record the gateway payment intent on the order (flushed, not committed)."""
    if db_order.payment_intent_id == payment_intent_id:
        return
    db_order.payment_intent_id = payment_intent_id
    db.flush()
