"""
Inventory adjuster.

Stock counters only change through ``apply_stock_operation``, which reads the
product under a row lock and writes the new counter and an immutable
StockOperation row in the caller's transaction. History is never edited;
reversals are compensating ``in`` operations.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from order_service import models, schemas
from order_service.errors import InsufficientStock, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STOCK_IN = "in"
STOCK_OUT = "out"


def apply_stock_operation(
    db: Session,
    product_id: str,
    type: str,
    quantity,
    reason: Optional[str] = None,
    order_id: Optional[str] = None,
    return_id: Optional[str] = None,
    performed_by: Optional[str] = None,
) -> models.StockOperation:
    """
    Apply a signed stock change and record it. Flushes, does not commit.

    Raises:
        ValidationError: unknown type, or quantity not a positive integer
        NotFoundError: unknown product
        InsufficientStock: an ``out`` would drive stock negative
    """
    if type not in (STOCK_IN, STOCK_OUT):
        raise ValidationError(f"Invalid stock operation type '{type}'. Must be 'in' or 'out'")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Invalid quantity: must be a positive integer")

    product = (
        db.query(models.Product)
        .filter(models.Product.id == product_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if product is None:
        raise NotFoundError("Product", product_id)

    previous_quantity = product.stock_quantity or 0
    if type == STOCK_OUT:
        if previous_quantity < quantity:
            raise InsufficientStock(product_id, previous_quantity, quantity)
        new_quantity = previous_quantity - quantity
    else:
        new_quantity = previous_quantity + quantity

    product.stock_quantity = new_quantity
    operation = models.StockOperation(
        id=models.new_id(),
        product_id=product_id,
        type=type,
        quantity=quantity,
        reason=reason,
        performed_by=performed_by,
        order_id=order_id,
        return_id=return_id,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
    )
    db.add(operation)
    db.flush()

    logger.info(
        f"Stock-{type} {quantity} of product {product_id}: {previous_quantity} -> {new_quantity}"
        + (f" (order {order_id})" if order_id else "")
    )
    return operation


def create_stock_operation(
    db: Session,
    data: schemas.StockOperationCreate,
    performed_by: Optional[str] = None,
) -> models.StockOperation:
    """Standalone stock operation in its own transaction (manual staff adjustment)."""
    try:
        operation = apply_stock_operation(
            db,
            product_id=data.product_id,
            type=data.type,
            quantity=data.quantity,
            reason=data.reason,
            order_id=data.order_id,
            performed_by=performed_by,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(operation)
    return operation


def reserve_order_stock(
    db: Session,
    order: models.Order,
    performed_by: Optional[str] = None,
) -> List[models.StockOperation]:
    """Take each line item out of stock, tagged with the order id."""
    quantities: Dict[str, int] = defaultdict(int)
    for item in order.items:
        quantities[item.product_id] += item.quantity

    # Fixed lock order so concurrent checkouts cannot deadlock
    return [
        apply_stock_operation(
            db,
            product_id=product_id,
            type=STOCK_OUT,
            quantity=quantity,
            reason=f"Order {order.id} checkout",
            order_id=order.id,
            performed_by=performed_by,
        )
        for product_id, quantity in sorted(quantities.items())
    ]


def outstanding_order_stock(db: Session, order_id: str) -> Dict[str, int]:
    """
    Net quantity per product still taken out for an order.

    ``out`` operations tagged with the order minus compensating ``in``
    operations for the same order (return restocks excluded).
    """
    rows = (
        db.query(
            models.StockOperation.product_id,
            models.StockOperation.type,
            func.sum(models.StockOperation.quantity),
        )
        .filter(
            models.StockOperation.order_id == order_id,
            models.StockOperation.return_id.is_(None),
        )
        .group_by(models.StockOperation.product_id, models.StockOperation.type)
        .all()
    )

    net: Dict[str, int] = defaultdict(int)
    for product_id, op_type, total in rows:
        net[product_id] += int(total) if op_type == STOCK_OUT else -int(total)
    return {product_id: qty for product_id, qty in net.items() if qty > 0}


def reverse_order_stock(
    db: Session,
    order_id: str,
    performed_by: Optional[str] = None,
) -> List[models.StockOperation]:
    """
    Compensate every outstanding ``out`` for a cancelled order.

    Safe to call twice: already-compensated quantities are not restored again.
    """
    operations = [
        apply_stock_operation(
            db,
            product_id=product_id,
            type=STOCK_IN,
            quantity=quantity,
            reason=f"Order {order_id} cancelled - stock restored",
            order_id=order_id,
            performed_by=performed_by,
        )
        for product_id, quantity in sorted(outstanding_order_stock(db, order_id).items())
    ]
    if operations:
        logger.info(f"Restored stock for cancelled order {order_id}: {len(operations)} product(s)")
    return operations


def restock_return(
    db: Session,
    order_return: models.OrderReturn,
    item: models.OrderItem,
    performed_by: Optional[str] = None,
) -> models.StockOperation:
    """Put a resalable returned item back into stock, tagged with the return id."""
    return apply_stock_operation(
        db,
        product_id=item.product_id,
        type=STOCK_IN,
        quantity=item.quantity,
        reason=f"Return {order_return.id} received - condition: {order_return.condition}",
        order_id=order_return.order_id,
        return_id=order_return.id,
        performed_by=performed_by,
    )


def get_stock_operations(
    db: Session,
    order_id: Optional[str] = None,
    product_id: Optional[str] = None,
    type: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.StockOperation]:
    query = db.query(models.StockOperation)
    if order_id:
        query = query.filter(models.StockOperation.order_id == order_id)
    if product_id:
        query = query.filter(models.StockOperation.product_id == product_id)
    if type:
        query = query.filter(models.StockOperation.type == type)
    return query.order_by(models.StockOperation.created_at.desc()).offset(skip).limit(limit).all()
