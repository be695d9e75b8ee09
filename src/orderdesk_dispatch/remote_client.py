from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel

from orderdesk_dispatch.config import DispatchSettings
from orderdesk_dispatch.errors import NotFoundError, RemoteReadFailedError, RemoteWriteFailedError
from orderdesk_dispatch.redaction import redact_sensitive_text
from orderdesk_dispatch.schemas import (
    Order,
    OrderFilter,
    OrderPage,
    OrderStatsPerUser,
    OrderStatusWrite,
    Worker,
)

logger = logging.getLogger("orderdesk_dispatch.remote_client")

ModelT = TypeVar("ModelT", bound=BaseModel)


class OrderBackend(Protocol):
    """Request/response contract of the remote order service."""

    def get_orders(self, order_filter: OrderFilter) -> OrderPage: ...

    def get_assigned_orders(self, order_filter: OrderFilter) -> OrderPage: ...

    def get_order_stats_per_assigned_user(self, worker_id: str | None = None) -> OrderStatsPerUser: ...

    def update_order(self, order: Order) -> Order: ...

    def update_order_status(self, write: OrderStatusWrite) -> None: ...

    def update_user(self, worker: Worker) -> Worker: ...


@dataclass(frozen=True)
class _Route:
    method: str
    path: str


_ROUTES: dict[str, _Route] = {
    "get_orders": _Route(method="GET", path="/organization/order/get-all"),
    "get_assigned_orders": _Route(method="GET", path="/organization/order/get-all-assigned-orders"),
    "get_order_stats_per_assigned_user": _Route(method="GET", path="/organization/order/orders-stats-per-user"),
    "update_order": _Route(method="POST", path="/organization/order/update-order"),
    "update_order_status": _Route(method="POST", path="/organization/order/update-order-status"),
    "update_user": _Route(method="POST", path="/user/update-user"),
}


class HttpOrderBackend:
    def __init__(self, base_url: str, *, token: str | None = None, timeout: float = 5.0) -> None:
        if not base_url:
            raise ValueError("remote order service url not configured")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> "HttpOrderBackend":
        return cls(
            settings.api_base_url or "",
            token=settings.api_token,
            timeout=settings.http_timeout_seconds,
        )

    def get_orders(self, order_filter: OrderFilter) -> OrderPage:
        params = {
            "search": order_filter.search_term or "",
            "page": order_filter.page,
            "status": order_filter.status.value if order_filter.status is not None else "",
        }
        return self._read("get_orders", params=params, model=OrderPage)

    def get_assigned_orders(self, order_filter: OrderFilter) -> OrderPage:
        params = {
            "page": order_filter.page,
            "status": order_filter.status.value if order_filter.status is not None else "",
        }
        return self._read("get_assigned_orders", params=params, model=OrderPage)

    def get_order_stats_per_assigned_user(self, worker_id: str | None = None) -> OrderStatsPerUser:
        return self._read(
            "get_order_stats_per_assigned_user",
            params={"assignedUserId": worker_id or ""},
            model=OrderStatsPerUser,
        )

    def update_order(self, order: Order) -> Order:
        return self._write("update_order", order.to_wire(), model=Order) or order

    def update_order_status(self, write: OrderStatusWrite) -> None:
        self._write("update_order_status", write.to_wire())

    def update_user(self, worker: Worker) -> Worker:
        return self._write("update_user", worker.to_wire(), model=Worker) or worker

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _read(self, operation: str, *, params: dict[str, Any], model: type[ModelT]) -> ModelT:
        route = _ROUTES[operation]
        try:
            response = httpx.request(
                route.method,
                f"{self._base_url}{route.path}",
                params=params,
                headers=self._headers(),
                timeout=self._timeout,
            )
            response.raise_for_status()
            return model.model_validate(_unwrap(response.json()))
        except (httpx.HTTPError, ValueError) as exc:
            sanitized_error = redact_sensitive_text(str(exc))
            logger.warning("remote read %s failed: %s", operation, sanitized_error)
            raise RemoteReadFailedError(sanitized_error, operation=operation) from exc

    def _write(
        self,
        operation: str,
        body: dict[str, Any],
        *,
        model: type[ModelT] | None = None,
    ) -> ModelT | None:
        route = _ROUTES[operation]
        try:
            response = httpx.request(
                route.method,
                f"{self._base_url}{route.path}",
                json=body,
                headers=self._headers(),
                timeout=self._timeout,
            )
            if response.status_code == 404:
                raise NotFoundError(f"{operation} target not found", operation=operation)
            response.raise_for_status()
            payload = response.json() if response.content else None
            data = payload.get("data") if isinstance(payload, dict) else None
            if model is None or not data:
                return None
            return model.model_validate(data)
        except (httpx.HTTPError, ValueError) as exc:
            sanitized_error = redact_sensitive_text(str(exc))
            logger.warning("remote write %s failed: %s", operation, sanitized_error)
            raise RemoteWriteFailedError(sanitized_error, operation=operation) from exc


def _unwrap(payload: Any) -> Any:
    # The service answers with {"data": ..., "message": ...}; a bare page is
    # {"data": [...], "pagination": ...} and is returned as is.
    if isinstance(payload, dict) and "data" in payload and "pagination" not in payload:
        return payload["data"]
    return payload
