import pytest

from order_service import orders
from order_service.errors import IllegalCancellation, InvalidTransition, ValidationError
from order_service.status import (
    ORDER_TRANSITIONS,
    OrderStatus,
    RETURN_TRANSITIONS,
    ReturnStatus,
    TERMINAL_STATUSES,
    can_transition,
    validate_return_transition,
    validate_transition,
)


@pytest.mark.parametrize("current, new", [
    ("pending", "processing"),
    ("processing", "shipped"),
    ("shipped", "delivered"),
    ("delivered", "return_processing"),
    ("return_processing", "returned"),
    ("pending", "cancelled"),
    ("processing", "cancelled"),
])
def test_legal_transitions(current, new):
    assert validate_transition(current, new) is OrderStatus(new)
    assert can_transition(current, new)


@pytest.mark.parametrize("current, new", [
    ("pending", "shipped"),
    ("pending", "delivered"),
    ("processing", "pending"),
    ("shipped", "processing"),
    ("delivered", "returned"),
    ("returned", "return_processing"),
])
def test_illegal_transitions(current, new):
    with pytest.raises(InvalidTransition) as exc:
        validate_transition(current, new)
    assert exc.value.to_dict() == {"currentStatus": current, "requestedStatus": new}


@pytest.mark.parametrize("current", ["shipped", "delivered", "cancelled", "returned", "return_processing"])
def test_cancel_after_processing_is_illegal_cancellation(current):
    with pytest.raises(IllegalCancellation):
        validate_transition(current, "cancelled")


def test_terminal_states_have_no_exits():
    assert TERMINAL_STATUSES == {OrderStatus.CANCELLED, OrderStatus.RETURNED}
    for status in TERMINAL_STATUSES:
        for target in OrderStatus:
            assert not can_transition(status, target)


def test_every_status_has_a_table_entry():
    assert set(ORDER_TRANSITIONS) == set(OrderStatus)
    assert set(RETURN_TRANSITIONS) == set(ReturnStatus)


def test_unknown_status_is_validation_error():
    with pytest.raises(ValidationError):
        validate_transition("pending", "teleported")


def test_return_transitions():
    assert validate_return_transition("pending", "approved") is ReturnStatus.APPROVED
    assert validate_return_transition("approved", "received") is ReturnStatus.RECEIVED
    assert validate_return_transition("received", "refunded") is ReturnStatus.REFUNDED
    with pytest.raises(InvalidTransition):
        validate_return_transition("pending", "received")
    with pytest.raises(InvalidTransition):
        validate_return_transition("rejected", "approved")


@pytest.mark.parametrize("status", ["pending", "processing"])
def test_update_order_status_cancels_open_orders(db, make_order, status):
    order = make_order()
    order.status = status
    db.commit()

    updated, previous = orders.update_order_status(db, order.id, "cancelled", actor_id="user-1")

    assert updated.status == "cancelled"
    assert previous.value == status


@pytest.mark.parametrize("status", ["shipped", "delivered", "cancelled", "returned"])
def test_update_order_status_refuses_late_cancellation(db, make_order, status):
    order = make_order()
    order.status = status
    db.commit()

    with pytest.raises(IllegalCancellation):
        orders.update_order_status(db, order.id, "cancelled")

    db.rollback()
    assert orders.get_order(db, order.id).status == status


def test_update_order_status_sets_timestamps_and_timeline(db, make_order):
    order = make_order()
    for status in ("processing", "shipped", "delivered"):
        order, _ = orders.update_order_status(db, order.id, status, actor_id="staff-1", tracking_number="TRK1" if status == "shipped" else None)

    assert order.shipped_at is not None
    assert order.delivered_at is not None
    assert order.tracking_number == "TRK1"

    events = orders.get_order_timeline(db, order.id)
    assert [e.event_type for e in events] == ["created", "status_changed", "status_changed", "status_changed"]
    assert events[-1].old_value == "shipped"
    assert events[-1].new_value == "delivered"
