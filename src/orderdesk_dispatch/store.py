from __future__ import annotations

import math
import threading
from collections import Counter
from collections.abc import Iterable

from orderdesk_dispatch.errors import NotFoundError, RemoteReadFailedError, RemoteWriteFailedError
from orderdesk_dispatch.schemas import (
    Order,
    OrderFilter,
    OrderPage,
    OrderStatsPerUser,
    OrderStatusWrite,
    Pagination,
    StatusCount,
    Worker,
)


class InMemoryOrderStore:
    """In-process implementation of the remote order service contract.

    Backs local runs of the console and the test suite. Every write is
    recorded in ``write_calls``; operations named in ``failing_operations``
    raise the same errors the HTTP backend raises.
    """

    def __init__(
        self,
        orders: Iterable[Order] = (),
        workers: Iterable[Worker] = (),
        *,
        page_size: int = 20,
        current_worker_id: str | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {order.id: order for order in orders}
        self._workers: dict[str, Worker] = {worker.id: worker for worker in workers}
        self._page_size = page_size
        self.current_worker_id = current_worker_id
        self.write_calls: list[tuple[str, str]] = []
        self.read_calls: list[tuple[str, OrderFilter | str | None]] = []
        self.failing_operations: set[str] = set()

    def get_orders(self, order_filter: OrderFilter) -> OrderPage:
        self._maybe_fail_read("get_orders")
        with self._lock:
            self.read_calls.append(("get_orders", order_filter))
            matches = [order for order in self._orders.values() if self._matches(order, order_filter)]
        return self._paginate(matches, order_filter.page)

    def get_assigned_orders(self, order_filter: OrderFilter) -> OrderPage:
        self._maybe_fail_read("get_assigned_orders")
        with self._lock:
            self.read_calls.append(("get_assigned_orders", order_filter))
            matches = [
                order
                for order in self._orders.values()
                if order.assigned_user_id
                and (self.current_worker_id is None or order.assigned_user_id == self.current_worker_id)
                and self._matches(order, order_filter)
            ]
        return self._paginate(matches, order_filter.page)

    def get_order_stats_per_assigned_user(self, worker_id: str | None = None) -> OrderStatsPerUser:
        self._maybe_fail_read("get_order_stats_per_assigned_user")
        with self._lock:
            self.read_calls.append(("get_order_stats_per_assigned_user", worker_id))
            orders = list(self._orders.values())
        scoped = [order for order in orders if worker_id is None or order.assigned_user_id == worker_id]
        counts = Counter(order.status for order in scoped)
        return OrderStatsPerUser(
            status_counts=[StatusCount(status=status, count=count) for status, count in counts.items()],
            assigned_to_user=len([order for order in scoped if order.assigned_user_id]),
            all_orders=len(orders),
        )

    def update_order(self, order: Order) -> Order:
        with self._lock:
            self._record_write("update_order", order.id)
            if order.id not in self._orders:
                raise NotFoundError(f"order {order.id} not found", operation="update_order")
            self._orders[order.id] = order
            return order

    def update_order_status(self, write: OrderStatusWrite) -> None:
        with self._lock:
            self._record_write("update_order_status", write.order_id)
            current = self._orders.get(write.order_id)
            if current is None:
                raise NotFoundError(f"order {write.order_id} not found", operation="update_order_status")
            self._orders[write.order_id] = current.model_copy(update={"status": write.status})

    def update_user(self, worker: Worker) -> Worker:
        with self._lock:
            self._record_write("update_user", worker.id)
            if worker.id not in self._workers:
                raise NotFoundError(f"worker {worker.id} not found", operation="update_user")
            self._workers[worker.id] = worker
            return worker

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    def get_worker(self, worker_id: str) -> Worker:
        with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError(f"worker {worker_id} not found")
        return worker

    def list_workers(self) -> list[Worker]:
        with self._lock:
            return list(self._workers.values())

    def put_order(self, order: Order) -> None:
        with self._lock:
            self._orders[order.id] = order

    def put_worker(self, worker: Worker) -> None:
        with self._lock:
            self._workers[worker.id] = worker

    def _record_write(self, operation: str, target_id: str) -> None:
        self.write_calls.append((operation, target_id))
        if operation in self.failing_operations:
            raise RemoteWriteFailedError("service unavailable", operation=operation)

    def _maybe_fail_read(self, operation: str) -> None:
        if operation in self.failing_operations:
            raise RemoteReadFailedError("service unavailable", operation=operation)

    @staticmethod
    def _matches(order: Order, order_filter: OrderFilter) -> bool:
        if order_filter.status is not None and order.status != order_filter.status:
            return False
        if order_filter.search_term:
            needle = order_filter.search_term.lower()
            haystack = " ".join(filter(None, [order.id, order.order_number, order.assigned_user_name]))
            return needle in haystack.lower()
        return True

    def _paginate(self, orders: list[Order], page: int) -> OrderPage:
        total_items = len(orders)
        total_pages = max(1, math.ceil(total_items / self._page_size))
        start = (page - 1) * self._page_size
        return OrderPage(
            data=orders[start : start + self._page_size],
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                total_items=total_items,
                page_size=self._page_size,
            ),
        )
