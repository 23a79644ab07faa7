"""
Order lifecycle state machine.

Every order status is a member of ``OrderStatus`` and every legal move is an
entry in ``ORDER_TRANSITIONS``. The table covers every member, so a new status
cannot be added without deciding where it may go.

Side effects (capture, refund, stock) are not triggered here. Callers observe
the transition and decide ordering themselves.
"""
from enum import Enum
from typing import Dict, FrozenSet, Union

from order_service.errors import IllegalCancellation, InvalidTransition, ValidationError


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURN_PROCESSING = "return_processing"
    RETURNED = "returned"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_PROCESSING}),
    OrderStatus.RETURN_PROCESSING: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

if set(ORDER_TRANSITIONS) != set(OrderStatus):
    raise RuntimeError("Order transition table must cover every status")

TERMINAL_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    """Coerce a raw status string, rejecting unknown values."""
    try:
        return OrderStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationError(f"Invalid status '{value}'. Must be one of: {allowed}")


def can_transition(current: Union[str, OrderStatus], new: Union[str, OrderStatus]) -> bool:
    return parse_status(new) in ORDER_TRANSITIONS[parse_status(current)]


def validate_transition(current: Union[str, OrderStatus], new: Union[str, OrderStatus]) -> OrderStatus:
    """
    Check that ``new`` is reachable from ``current``.

    Returns:
        The target status as an ``OrderStatus``

    Raises:
        IllegalCancellation: cancelling outside pending/processing
        InvalidTransition: any other move not in the table
    """
    current_status = parse_status(current)
    new_status = parse_status(new)

    if new_status is OrderStatus.CANCELLED and current_status not in CANCELLABLE_STATUSES:
        raise IllegalCancellation(current_status.value)

    if new_status not in ORDER_TRANSITIONS[current_status]:
        raise InvalidTransition(current_status.value, new_status.value)

    return new_status


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECEIVED = "received"
    REFUNDED = "refunded"


RETURN_TRANSITIONS: Dict[ReturnStatus, FrozenSet[ReturnStatus]] = {
    ReturnStatus.PENDING: frozenset({ReturnStatus.APPROVED, ReturnStatus.REJECTED}),
    ReturnStatus.APPROVED: frozenset({ReturnStatus.RECEIVED, ReturnStatus.REJECTED}),
    ReturnStatus.RECEIVED: frozenset({ReturnStatus.REFUNDED}),
    ReturnStatus.REJECTED: frozenset(),
    ReturnStatus.REFUNDED: frozenset(),
}

if set(RETURN_TRANSITIONS) != set(ReturnStatus):
    raise RuntimeError("Return transition table must cover every status")

OPEN_RETURN_STATUSES = frozenset({ReturnStatus.PENDING, ReturnStatus.APPROVED})


def validate_return_transition(current: Union[str, ReturnStatus], new: Union[str, ReturnStatus]) -> ReturnStatus:
    current_status = ReturnStatus(current)
    try:
        new_status = ReturnStatus(new)
    except ValueError:
        raise ValidationError(f"Invalid return status '{new}'")

    if new_status not in RETURN_TRANSITIONS[current_status]:
        raise InvalidTransition(current_status.value, new_status.value, subject="return")
    return new_status
