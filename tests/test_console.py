from datetime import datetime, timedelta, timezone

import pytest

from orderdesk_dispatch.config import DispatchSettings
from orderdesk_dispatch.console import DispatchConsole
from orderdesk_dispatch.errors import NotFoundError
from orderdesk_dispatch.remote_client import HttpOrderBackend
from orderdesk_dispatch.schemas import ActingIdentity, Order, OrderStatus, Permission, PermissionKey, Role, Worker
from orderdesk_dispatch.store import InMemoryOrderStore

START = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


class _FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _actor() -> ActingIdentity:
    return ActingIdentity(
        id="w1",
        name="Worker One",
        roles=[Role(name="dispatcher", permissions=[Permission(key=key.value) for key in PermissionKey])],
    )


def _console(clock: _FakeClock) -> DispatchConsole:
    workers = [Worker(id="w1", name="Worker One")]
    store = InMemoryOrderStore([Order(id="o1", order_number="ORD-1")], workers)
    console = DispatchConsole(store, workers=workers, clock=clock)
    console.poller.poll_once()
    return console


def test_from_settings_picks_backend() -> None:
    local = DispatchConsole.from_settings(DispatchSettings())
    remote = DispatchConsole.from_settings(DispatchSettings(api_base_url="http://orders.test"))

    assert isinstance(local.backend, InMemoryOrderStore)
    assert isinstance(remote.backend, HttpOrderBackend)


def test_assigned_order_gets_a_running_clock() -> None:
    clock = _FakeClock(START)
    console = _console(clock)

    console.assign_to_self("o1", _actor())
    clock.now = START + timedelta(seconds=65)
    timing = console.processing_time("o1")

    try:
        assert timing.running
        assert timing.order_id == "o1"
    finally:
        console.shutdown()


def test_delivery_freezes_the_clock() -> None:
    clock = _FakeClock(START)
    console = _console(clock)
    console.assign("o1", "w1", _actor())

    clock.now = START + timedelta(seconds=125)
    console.update_status("o1", OrderStatus.DELIVERED, _actor())
    clock.now = START + timedelta(hours=2)
    timing = console.processing_time("o1")

    try:
        assert timing.seconds == 125
        assert timing.display == "2m 5s"
        assert not timing.running
    finally:
        console.shutdown()


def test_unassign_drops_the_clock() -> None:
    clock = _FakeClock(START)
    console = _console(clock)
    console.assign("o1", "w1", _actor())

    console.unassign("o1", _actor())
    timing = console.processing_time("o1")

    assert timing.seconds == 0
    assert timing.display == "0s"
    assert not timing.running


def test_unknown_order_is_not_found() -> None:
    console = _console(_FakeClock(START))

    with pytest.raises(NotFoundError):
        console.get_order("missing")


def test_read_view_reports_pending_changes() -> None:
    clock = _FakeClock(START)
    console = _console(clock)
    console.assign("o1", "w1", _actor())

    snapshot = console.read_view()

    try:
        assert snapshot.pending_deltas == 1
        assert snapshot.orders[0].assigned_user_id == "w1"
    finally:
        console.shutdown()
