import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from orderdesk_dispatch.capacity import (
    WorkerCapacityTracker,
    active_counts_from_orders,
    can_assign,
    effective_cap,
)
from orderdesk_dispatch.errors import CapacityExceededError, NotFoundError
from orderdesk_dispatch.schemas import Order, OrderStatus, Worker

NOW = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def _tracker(*workers: Worker) -> WorkerCapacityTracker:
    return WorkerCapacityTracker(workers, default_cap=5, clock=lambda: NOW)


def test_missing_cap_falls_back_to_default() -> None:
    worker = Worker(id="w1", name="Worker One", active_order_count=4)

    assert effective_cap(worker) == 5
    assert can_assign(worker)
    assert not can_assign(worker.model_copy(update={"active_order_count": 5}))


def test_inactive_worker_cannot_take_orders() -> None:
    tracker = _tracker(Worker(id="w1", name="Worker One", is_active=False))

    assert not tracker.can_assign("w1")
    with pytest.raises(CapacityExceededError):
        tracker.try_reserve("w1")


def test_reserve_until_cap_then_refuse() -> None:
    tracker = _tracker(Worker(id="w1", name="Worker One", max_concurrent_orders=2, active_order_count=1))

    before, after = tracker.try_reserve("w1", operation="assign")

    assert before.active_order_count == 1
    assert after.active_order_count == 2
    assert after.last_active == NOW
    with pytest.raises(CapacityExceededError) as excinfo:
        tracker.try_reserve("w1", operation="assign")
    assert "maximum concurrent orders (2)" in excinfo.value.user_message
    assert tracker.get("w1").active_order_count == 2


def test_unknown_worker_is_not_found() -> None:
    tracker = _tracker()

    with pytest.raises(NotFoundError):
        tracker.try_reserve("ghost")
    with pytest.raises(NotFoundError):
        tracker.get("ghost")
    assert "ghost" not in tracker


def test_release_never_goes_below_zero() -> None:
    tracker = _tracker(Worker(id="w1", name="Worker One", active_order_count=0))

    _, after = tracker.release("w1")

    assert after.active_order_count == 0


def test_concurrent_reservations_never_exceed_cap() -> None:
    tracker = _tracker(Worker(id="w1", name="Worker One", max_concurrent_orders=3))
    barrier = threading.Barrier(20)

    def _attempt() -> bool:
        barrier.wait()
        try:
            tracker.try_reserve("w1")
        except CapacityExceededError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=20) as pool:
        results = list(pool.map(lambda _: _attempt(), range(20)))

    assert results.count(True) == 3
    assert tracker.get("w1").active_order_count == 3


def test_adjust_is_relative_to_current_count() -> None:
    tracker = _tracker(Worker(id="w1", name="Worker One", active_order_count=1))
    tracker.try_reserve("w1")
    tracker.try_reserve("w1")

    tracker.adjust("w1", -1)

    assert tracker.get("w1").active_order_count == 2
    assert tracker.adjust("ghost", -1) is None


def test_reconcile_counts_from_open_assigned_orders() -> None:
    tracker = _tracker(
        Worker(id="w1", name="Worker One", active_order_count=4),
        Worker(id="w2", name="Worker Two", active_order_count=1),
        Worker(id="w3", name="Worker Three", active_order_count=0),
    )
    orders = [
        Order(id="o1", status=OrderStatus.PROCESSING, assigned_user_id="w1"),
        Order(id="o2", status=OrderStatus.SHIPPED, assigned_user_id="w1"),
        Order(id="o3", status=OrderStatus.DELIVERED, assigned_user_id="w1"),
        Order(id="o4", status=OrderStatus.PROCESSING, assigned_user_id="w2"),
        Order(id="o5", status=OrderStatus.PENDING),
    ]

    assert active_counts_from_orders(orders) == {"w1": 2, "w2": 1}
    assert tracker.reconcile_counts(orders) == {"w1": 2}
    assert tracker.get("w1").active_order_count == 2
    assert tracker.get("w3").active_order_count == 0


def test_replace_roster_drops_previous_workers() -> None:
    tracker = _tracker(Worker(id="w1", name="Worker One"))

    tracker.replace_roster([Worker(id="w2", name="Worker Two")])

    assert [worker.id for worker in tracker.list_workers()] == ["w2"]
