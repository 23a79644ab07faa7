from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from order_service import inventory, orchestrator, orders, reconciliation, returns, schemas
from order_service.auth import CurrentUser, ensure_order_access, get_current_user, get_optional_user, require_staff
from order_service.database import get_db
from order_service.gateway import StripeGateway, get_gateway
from order_service.orchestrator import PaymentOutcome
from order_service.responses import success

orders_router = APIRouter(prefix="/orders", tags=["orders"])
refunds_router = APIRouter(prefix="/refunds", tags=["refunds"])
returns_router = APIRouter(prefix="/returns", tags=["returns"])
stock_router = APIRouter(prefix="/stock-operations", tags=["stock"])


def dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(by_alias=True)


def payment_summary(outcome: PaymentOutcome) -> dict:
    summary = {"action": outcome.action}
    if outcome.refund is not None:
        summary["refund"] = dump(schemas.Refund, outcome.refund)
    if outcome.message:
        summary["message"] = outcome.message
    return summary


@orders_router.post("")
def create_order(
    order: schemas.OrderCreate,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    db_order = orders.checkout_order(db, order, user_id=user.id if user else None)
    return success(dump(schemas.Order, db_order), "Order created successfully", status_code=201)


@orders_router.get("/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    db_order = orders.get_order_or_404(db, order_id)
    ensure_order_access(db_order, user)
    return success(dump(schemas.Order, db_order))


@orders_router.get("/{order_id}/timeline")
def get_order_timeline(order_id: str, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    db_order = orders.get_order_or_404(db, order_id)
    ensure_order_access(db_order, user)
    events = orders.get_order_timeline(db, order_id)
    return success([dump(schemas.OrderEvent, e) for e in events])


@orders_router.post("/{order_id}/cancel")
def cancel_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    ensure_order_access(orders.get_order_or_404(db, order_id), user)
    db_order, outcome = orchestrator.cancel_order(db, order_id, gateway, actor_id=user.id)
    return success(
        dump(schemas.Order, db_order),
        "Order cancelled successfully",
        payment=payment_summary(outcome),
    )


@orders_router.put("/{order_id}/status")
def update_order_status(
    order_id: str,
    update: schemas.OrderStatusUpdate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    db_order, outcome = orchestrator.transition_order(
        db, order_id, update.status, gateway, actor_id=user.id, tracking_number=update.tracking_number
    )
    return success(
        dump(schemas.Order, db_order),
        f"Order status updated to {db_order.status}",
        payment=payment_summary(outcome),
    )


@orders_router.post("/{order_id}/payment-intent")
def create_payment_intent(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    ensure_order_access(orders.get_order_or_404(db, order_id), user)
    intent = reconciliation.create_payment_intent(db, order_id, gateway, actor_id=user.id)
    payload = schemas.PaymentIntent(
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        status=intent.status,
    )
    return success(payload.model_dump(by_alias=True))


@refunds_router.post("/{order_id}")
def create_refund(
    order_id: str,
    refund: Optional[schemas.RefundCreate] = None,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    refund = refund or schemas.RefundCreate()
    db_refund = reconciliation.refund_order(
        db,
        order_id,
        gateway,
        amount=refund.amount,
        reason=refund.reason,
        item_ids=refund.item_ids,
        actor_id=user.id,
    )
    return success(dump(schemas.Refund, db_refund), "Refund processed successfully", status_code=201)


@refunds_router.get("/order/{order_id}")
def list_refunds(order_id: str, user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    orders.get_order_or_404(db, order_id)
    refunds = reconciliation.get_refunds(db, order_id)
    return success({
        "refunds": [dump(schemas.Refund, r) for r in refunds],
        "totalRefunded": reconciliation.refunded_total(db, order_id),
    })


@returns_router.post("")
def create_return(
    order_return: schemas.ReturnCreate,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_order_access(orders.get_order_or_404(db, order_return.order_id), user)
    db_return = returns.create_return(db, order_return, user_id=user.id)
    return success(dump(schemas.OrderReturn, db_return), "Return requested successfully", status_code=201)


@returns_router.get("/order/{order_id}")
def list_returns(order_id: str, user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    orders.get_order_or_404(db, order_id)
    return success([dump(schemas.OrderReturn, r) for r in returns.get_returns_for_order(db, order_id)])


@returns_router.get("/{return_id}")
def get_return(return_id: str, user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    return success(dump(schemas.OrderReturn, returns.get_return(db, return_id)))


@returns_router.put("/{return_id}/status")
def update_return_status(
    return_id: str,
    update: schemas.ReturnStatusUpdate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    db_return, outcome = returns.update_return_status(db, return_id, update, gateway, actor_id=user.id)
    return success(
        dump(schemas.OrderReturn, db_return),
        f"Return status updated to {db_return.status}",
        payment=payment_summary(outcome),
    )


@stock_router.post("")
def create_stock_operation(
    operation: schemas.StockOperationCreate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    db_operation = inventory.create_stock_operation(db, operation, performed_by=user.id)
    return success(dump(schemas.StockOperation, db_operation), "Stock updated successfully", status_code=201)


@stock_router.get("")
def list_stock_operations(
    order_id: Optional[str] = Query(None, alias="orderId"),
    product_id: Optional[str] = Query(None, alias="productId"),
    type: Optional[str] = Query(None),
    skip: int = 0,
    limit: int = 100,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    operations = inventory.get_stock_operations(
        db, order_id=order_id, product_id=product_id, type=type, skip=skip, limit=limit
    )
    return success([dump(schemas.StockOperation, o) for o in operations])
