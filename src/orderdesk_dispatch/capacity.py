from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime

from orderdesk_dispatch.config import DEFAULT_MAX_CONCURRENT_ORDERS
from orderdesk_dispatch.errors import CapacityExceededError, NotFoundError
from orderdesk_dispatch.lifecycle import is_terminal
from orderdesk_dispatch.schemas import Order, Worker
from orderdesk_dispatch.timer import utc_now

logger = logging.getLogger("orderdesk_dispatch.capacity")


def effective_cap(worker: Worker, default_cap: int = DEFAULT_MAX_CONCURRENT_ORDERS) -> int:
    return worker.max_concurrent_orders or default_cap


def can_assign(worker: Worker, default_cap: int = DEFAULT_MAX_CONCURRENT_ORDERS) -> bool:
    return worker.is_active and worker.active_order_count < effective_cap(worker, default_cap)


def active_counts_from_orders(orders: Iterable[Order]) -> Counter[str]:
    counts: Counter[str] = Counter()
    for order in orders:
        if order.assigned_user_id and not is_terminal(order.status):
            counts[order.assigned_user_id] += 1
    return counts


class WorkerCapacityTracker:
    """Process-local worker roster with a serialized compare-and-reserve.

    The check against ``max_concurrent_orders`` and the increment happen under
    one lock, so two concurrent dispatch attempts cannot both take the last
    slot of a worker.
    """

    def __init__(
        self,
        workers: Iterable[Worker] = (),
        *,
        default_cap: int = DEFAULT_MAX_CONCURRENT_ORDERS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._default_cap = default_cap
        self._clock = clock
        self._lock = threading.RLock()
        self._workers: dict[str, Worker] = {worker.id: worker for worker in workers}

    @property
    def default_cap(self) -> int:
        return self._default_cap

    def get(self, worker_id: str) -> Worker:
        with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError(f"worker {worker_id} not found")
        return worker

    def __contains__(self, worker_id: object) -> bool:
        with self._lock:
            return worker_id in self._workers

    def list_workers(self) -> list[Worker]:
        with self._lock:
            return list(self._workers.values())

    def replace_roster(self, workers: Iterable[Worker]) -> None:
        with self._lock:
            self._workers = {worker.id: worker for worker in workers}

    def can_assign(self, worker_id: str) -> bool:
        with self._lock:
            worker = self._workers.get(worker_id)
            return worker is not None and can_assign(worker, self._default_cap)

    def try_reserve(self, worker_id: str, *, operation: str = "assign") -> tuple[Worker, Worker]:
        """Take one slot for ``worker_id``; returns ``(before, after)``."""
        with self._lock:
            before = self._workers.get(worker_id)
            if before is None:
                raise NotFoundError(f"worker {worker_id} not found", operation=operation)
            if not before.is_active:
                raise CapacityExceededError(f"{before.name or before.id} is not active", operation=operation)
            cap = effective_cap(before, self._default_cap)
            if before.active_order_count >= cap:
                raise CapacityExceededError(
                    f"{before.name or before.id} has reached maximum concurrent orders ({cap})",
                    operation=operation,
                )
            after = before.model_copy(
                update={"active_order_count": before.active_order_count + 1, "last_active": self._clock()}
            )
            self._workers[worker_id] = after
        logger.debug("reserved slot for worker %s (%s/%s)", worker_id, after.active_order_count, cap)
        return before, after

    def release(self, worker_id: str) -> tuple[Worker, Worker]:
        """Give back one slot, floored at zero; returns ``(before, after)``."""
        with self._lock:
            before = self._workers.get(worker_id)
            if before is None:
                raise NotFoundError(f"worker {worker_id} not found")
            after = before.model_copy(
                update={
                    "active_order_count": max(0, before.active_order_count - 1),
                    "last_active": self._clock(),
                }
            )
            self._workers[worker_id] = after
        logger.debug("released slot for worker %s (%s left)", worker_id, after.active_order_count)
        return before, after

    def adjust(self, worker_id: str, delta: int) -> Worker | None:
        """Undo a reservation or release by applying ``delta`` to the count.

        Applied relative to the current value so concurrent operations on the
        same worker are preserved.
        """
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                return None
            adjusted = worker.model_copy(
                update={"active_order_count": max(0, worker.active_order_count + delta)}
            )
            self._workers[worker_id] = adjusted
            return adjusted

    def reconcile_counts(self, orders: Iterable[Order]) -> dict[str, int]:
        """Reset every known worker's count from the given order set.

        Returns the workers whose stored count disagreed, mapped to the
        corrected value.
        """
        counts = active_counts_from_orders(orders)
        corrected: dict[str, int] = {}
        with self._lock:
            for worker_id, worker in list(self._workers.items()):
                expected = counts.get(worker_id, 0)
                if worker.active_order_count != expected:
                    corrected[worker_id] = expected
                    self._workers[worker_id] = worker.model_copy(update={"active_order_count": expected})
        if corrected:
            logger.info("corrected active order counts for %d worker(s)", len(corrected))
        return corrected
