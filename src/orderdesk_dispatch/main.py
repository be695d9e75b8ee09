from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from orderdesk_dispatch.config import DispatchSettings
from orderdesk_dispatch.console import DispatchConsole
from orderdesk_dispatch.errors import (
    ConflictError,
    DispatchError,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    RemoteReadFailedError,
    RemoteWriteFailedError,
    ValidationError,
)
from orderdesk_dispatch.logs import configure_logging
from orderdesk_dispatch.poller import PollScope
from orderdesk_dispatch.schemas import (
    ActorRequest,
    AssignRequest,
    Order,
    OrderStatsPerUser,
    OrderViewRead,
    PollerFilterRequest,
    ProcessingTimeRead,
    StatusUpdateRequest,
    Worker,
)

settings = DispatchSettings.from_env()
configure_logging(settings.log_level)

console = DispatchConsole.from_settings(settings)


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    console.shutdown()


app = FastAPI(title="orderdesk dispatch", version="0.1.0", lifespan=_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: DispatchError) -> HTTPException:
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail=exc.user_message)
    if isinstance(exc, NotAuthenticatedError):
        return HTTPException(status_code=401, detail=exc.user_message)
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.user_message)
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=exc.user_message)
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=exc.user_message)
    if isinstance(exc, (RemoteWriteFailedError, RemoteReadFailedError)):
        return HTTPException(status_code=502, detail=exc.user_message)
    return HTTPException(status_code=500, detail=exc.user_message)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/orders", response_model=OrderViewRead)
def list_orders() -> OrderViewRead:
    return console.read_view()


@app.post("/orders/refresh", response_model=OrderViewRead)
def refresh_orders() -> OrderViewRead:
    try:
        console.poller.poll_once()
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return console.read_view()


@app.post("/orders/load-more", response_model=OrderViewRead)
def load_more_orders() -> OrderViewRead:
    try:
        console.poller.load_more()
    except DispatchError as exc:
        raise _http_error(exc) from exc
    return console.read_view()


@app.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str) -> Order:
    try:
        return console.get_order(order_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@app.get("/orders/{order_id}/processing-time", response_model=ProcessingTimeRead)
def get_processing_time(order_id: str) -> ProcessingTimeRead:
    try:
        return console.processing_time(order_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@app.post("/orders/{order_id}/assign", response_model=Order)
def assign_order(order_id: str, payload: AssignRequest) -> Order:
    try:
        return console.assign(order_id, payload.worker_id, payload.actor)
    except DispatchError as exc:
        raise _http_error(exc) from exc


@app.post("/orders/{order_id}/assign-self", response_model=Order)
def assign_order_to_self(order_id: str, payload: ActorRequest) -> Order:
    try:
        return console.assign_to_self(order_id, payload.actor)
    except DispatchError as exc:
        raise _http_error(exc) from exc


@app.post("/orders/{order_id}/unassign", response_model=Order)
def unassign_order(order_id: str, payload: ActorRequest) -> Order:
    try:
        return console.unassign(order_id, payload.actor)
    except DispatchError as exc:
        raise _http_error(exc) from exc


@app.post("/orders/{order_id}/status", response_model=Order)
def update_order_status(order_id: str, payload: StatusUpdateRequest) -> Order:
    try:
        return console.update_status(order_id, payload.status, payload.actor)
    except DispatchError as exc:
        raise _http_error(exc) from exc


@app.put("/workers", response_model=list[Worker])
def replace_workers(payload: list[Worker]) -> list[Worker]:
    return console.register_workers(payload)


@app.get("/workers/{worker_id}", response_model=Worker)
def get_worker(worker_id: str) -> Worker:
    try:
        return console.tracker.get(worker_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc


@app.put("/poller/filter")
def set_poller_filter(payload: PollerFilterRequest) -> dict[str, int | str | None]:
    scope = PollScope(tab=payload.tab, worker_id=payload.worker_id, search_term=payload.search_term)
    generation = console.set_scope(scope)
    return {"tab": scope.tab.value, "worker_id": scope.worker_id, "generation": generation}


@app.post("/poller/start")
def start_poller() -> dict[str, bool]:
    console.start()
    return {"running": console.poller.running}


@app.post("/poller/stop")
def stop_poller() -> dict[str, bool]:
    console.poller.stop()
    return {"running": console.poller.running}


@app.get("/stats/assigned", response_model=OrderStatsPerUser)
def get_assigned_stats() -> OrderStatsPerUser:
    stats = console.view.stats
    if stats is None:
        raise HTTPException(status_code=404, detail="no statistics polled yet")
    return stats
