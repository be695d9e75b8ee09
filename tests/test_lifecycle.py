from datetime import datetime, timedelta, timezone

import pytest

from orderdesk_dispatch.errors import AlreadyTerminalError, ConflictError, ValidationError
from orderdesk_dispatch.lifecycle import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    LifecycleStateMachine,
    allowed_next_statuses,
    is_terminal,
)
from orderdesk_dispatch.schemas import Order, OrderStatus

NOW = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _assigned_order(status: OrderStatus = OrderStatus.PROCESSING, *, started_seconds_ago: int = 330) -> Order:
    started = NOW - timedelta(seconds=started_seconds_ago)
    return Order(
        id="o1",
        order_number="ORD-1",
        status=status,
        assigned_user_id="w1",
        assigned_user_name="Worker One",
        assigned_at=started,
        started_at=started,
    )


def test_every_status_has_a_transition_entry() -> None:
    assert set(TRANSITIONS) == set(OrderStatus)
    for status in TERMINAL_STATUSES:
        assert allowed_next_statuses(status) == frozenset()


def test_terminal_statuses() -> None:
    assert is_terminal(OrderStatus.DELIVERED)
    assert is_terminal(OrderStatus.CANCELLED)
    assert is_terminal(OrderStatus.REFUNDED)
    assert not is_terminal(OrderStatus.COMPLETED)
    assert not is_terminal(OrderStatus.PROCESSING)


def test_delivered_records_completion_and_elapsed_time() -> None:
    order = _assigned_order()

    plan = LifecycleStateMachine().plan(order, OrderStatus.DELIVERED, now=NOW)
    delivered = plan.apply(order)

    assert plan.completed_at == NOW
    assert plan.estimated_completion_time == 330
    assert plan.released_worker_id == "w1"
    assert plan.needs_record_write
    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.completed_at == NOW
    assert delivered.estimated_completion_time == 330
    assert delivered.processing_time is None
    # Delivered orders keep who worked on them.
    assert delivered.assigned_user_id == "w1"
    assert delivered.started_at == order.started_at


def test_delivered_without_start_time_is_rejected() -> None:
    order = Order(id="o1", status=OrderStatus.PROCESSING)

    with pytest.raises(ValidationError):
        LifecycleStateMachine().plan(order, OrderStatus.DELIVERED, now=NOW)


def test_delivered_order_refuses_further_changes() -> None:
    delivered = _assigned_order(OrderStatus.DELIVERED)
    machine = LifecycleStateMachine()

    with pytest.raises(AlreadyTerminalError) as excinfo:
        machine.plan(delivered, OrderStatus.REFUNDED, now=NOW)
    assert excinfo.value.operation == "status-update"

    with pytest.raises(AlreadyTerminalError):
        machine.ensure_mutable(delivered, operation="assign")


def test_same_status_is_a_conflict() -> None:
    with pytest.raises(ConflictError):
        LifecycleStateMachine().plan(_assigned_order(), OrderStatus.PROCESSING, now=NOW)


def test_cancel_clears_assignment_and_releases_worker() -> None:
    order = _assigned_order()

    plan = LifecycleStateMachine().plan(order, OrderStatus.CANCELLED, now=NOW)
    cancelled = plan.apply(order)

    assert plan.released_worker_id == "w1"
    assert plan.clears_assignment
    assert plan.completed_at is None
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.assigned_user_id is None
    assert cancelled.assigned_at is None
    assert cancelled.started_at is None


def test_non_terminal_move_keeps_assignment() -> None:
    order = _assigned_order()

    plan = LifecycleStateMachine().plan(order, OrderStatus.SHIPPED, now=NOW)

    assert plan.released_worker_id is None
    assert not plan.needs_record_write
    assert plan.apply(order).assigned_user_id == "w1"


def test_move_between_terminal_statuses_releases_nothing() -> None:
    cancelled = Order(id="o1", status=OrderStatus.CANCELLED)

    plan = LifecycleStateMachine().plan(cancelled, OrderStatus.REFUNDED, now=NOW)

    assert plan.released_worker_id is None
    assert plan.apply(cancelled).status == OrderStatus.REFUNDED


def test_strict_mode_enforces_transition_table() -> None:
    pending = Order(id="o1", status=OrderStatus.PENDING, started_at=NOW)
    machine = LifecycleStateMachine(strict=True)

    with pytest.raises(ConflictError):
        machine.plan(pending, OrderStatus.DELIVERED, now=NOW)
    assert machine.plan(pending, OrderStatus.PROCESSING, now=NOW).to_status == OrderStatus.PROCESSING


def test_permissive_mode_allows_moves_outside_table() -> None:
    pending = Order(id="o1", status=OrderStatus.PENDING, started_at=NOW - timedelta(seconds=5))

    plan = LifecycleStateMachine().plan(pending, OrderStatus.DELIVERED, now=NOW)

    assert plan.estimated_completion_time == 5
