import threading

import pytest

from ridehub.errors import (
    AlreadyAssigned,
    InsufficientBalance,
    InvalidState,
    NotFound,
    OrderUnavailable,
    TransactionConflict,
    Unauthenticated,
    Unauthorized,
)
from ridehub.models import OrderStatus, User, UserRole
from ridehub.orders import OrderLedger
from ridehub.seats import SeatLedger

PICKUP = {"placeName": "Tsim Sha Tsui", "latitude": 22.29, "longitude": 114.17}
DROPOFF = {"placeName": "Guangzhou East", "latitude": 23.15, "longitude": 113.32}


@pytest.fixture
def ledger(store):
    return OrderLedger(store)


def _points(store, user_id):
    return store.read(lambda s: s.get(User, user_id)).points


def test_accept_debits_fee_and_assigns_driver(ledger, store, add_user):
    passenger = add_user()
    driver = add_user(UserRole.DRIVER, points=100)
    order = ledger.create(passenger, PICKUP, DROPOFF, price=630, platform_fee=51)

    accepted = ledger.accept(driver, order.id)

    assert accepted.status == OrderStatus.ACCEPTED
    assert accepted.driver_id == driver.user_id
    assert _points(store, driver.user_id) == 49


def test_accept_with_insufficient_balance_changes_nothing(ledger, store, add_user):
    passenger = add_user()
    driver = add_user(UserRole.DRIVER, points=20)
    order = ledger.create(passenger, PICKUP, DROPOFF, price=630, platform_fee=51)

    with pytest.raises(InsufficientBalance):
        ledger.accept(driver, order.id)

    fresh = ledger.get(passenger, order.id)
    assert fresh.status == OrderStatus.PENDING
    assert fresh.driver_id is None
    assert _points(store, driver.user_id) == 20


def test_second_driver_gets_order_unavailable(ledger, store, add_user):
    passenger = add_user()
    first = add_user(UserRole.DRIVER, points=100, name="first")
    second = add_user(UserRole.DRIVER, points=100, name="second")
    order = ledger.create(passenger, PICKUP, DROPOFF, price=600, platform_fee=48)

    ledger.accept(first, order.id)
    with pytest.raises(OrderUnavailable):
        ledger.accept(second, order.id)
    assert _points(store, second.user_id) == 100


def test_only_drivers_accept(ledger, add_user):
    passenger = add_user()
    order = ledger.create(passenger, PICKUP, DROPOFF, price=600, platform_fee=48)
    with pytest.raises(Unauthorized):
        ledger.accept(passenger, order.id)
    with pytest.raises(Unauthenticated):
        ledger.accept(None, order.id)


def test_trip_lifecycle(ledger, store, add_user):
    passenger = add_user()
    driver = add_user(UserRole.DRIVER, points=60)
    order = ledger.create(passenger, PICKUP, DROPOFF, price=600, platform_fee=48)
    ledger.accept(driver, order.id)

    with pytest.raises(Unauthorized):
        ledger.start(passenger, order.id)
    started = ledger.start(driver, order.id)
    assert started.status == OrderStatus.ON_THE_WAY

    done = ledger.complete(order.id, driver)
    assert done.status == OrderStatus.COMPLETED
    assert done.completed_at is not None
    # completing moves no points
    assert _points(store, driver.user_id) == 12
    assert ledger.complete(order.id).status == OrderStatus.COMPLETED


def test_complete_requires_a_driver(ledger, add_user):
    order = ledger.create(add_user(), PICKUP, DROPOFF, price=600, platform_fee=48)
    with pytest.raises(InvalidState):
        ledger.complete(order.id)


def test_cancel_rules(ledger, add_user):
    passenger = add_user(name="p")
    other = add_user(name="o")
    driver = add_user(UserRole.DRIVER, points=100)

    order = ledger.create(passenger, PICKUP, DROPOFF, price=600, platform_fee=48)
    with pytest.raises(Unauthorized):
        ledger.cancel(other, order.id)
    assert ledger.cancel(passenger, order.id).status == OrderStatus.CANCELLED
    with pytest.raises(InvalidState):
        ledger.cancel(passenger, order.id)

    taken = ledger.create(passenger, PICKUP, DROPOFF, price=600, platform_fee=48)
    ledger.accept(driver, taken.id)
    with pytest.raises(AlreadyAssigned):
        ledger.cancel(passenger, taken.id)


def test_cancelling_carpool_order_frees_seats(ledger, store, add_user, super_admin):
    seats = SeatLedger(store)
    route = seats.create_route(super_admin, PICKUP, DROPOFF, "2026-12-01", price_per_seat=200)
    rider = add_user()
    order = seats.join(rider, route.id, 3)

    ledger.cancel(rider, order.id)
    assert seats.get_route(route.id).occupied_seats == 0


def test_visibility(ledger, add_user, super_admin):
    alice = add_user(name="alice")
    bob = add_user(name="bob")
    mine = ledger.create(alice, PICKUP, DROPOFF, price=600, platform_fee=48)
    ledger.cancel(alice, mine.id)
    open_order = ledger.create(bob, PICKUP, DROPOFF, price=600, platform_fee=48)

    assert [o.id for o in ledger.visible_to(None)] == [open_order.id]
    assert {o.id for o in ledger.visible_to(alice)} == {mine.id, open_order.id}
    assert {o.id for o in ledger.visible_to(super_admin)} == {mine.id, open_order.id}


def test_single_order_reads_follow_visibility(ledger, add_user, super_admin):
    alice = add_user(name="alice")
    driver = add_user(UserRole.DRIVER, points=100, name="driver")
    stranger = add_user(name="stranger")
    order = ledger.create(alice, PICKUP, DROPOFF, price=600, platform_fee=48)

    assert ledger.get(None, order.id).id == order.id
    ledger.accept(driver, order.id)

    for caller in (alice, driver, super_admin):
        assert ledger.get(caller, order.id).pickup == PICKUP
    for caller in (None, stranger):
        with pytest.raises(NotFound):
            ledger.get(caller, order.id)


def test_racing_drivers_exactly_one_wins(file_store, add_file_user):
    ledger = OrderLedger(file_store)
    passenger = add_file_user(name="p")
    drivers = [add_file_user(UserRole.DRIVER, points=100, name=f"d{i}") for i in range(4)]
    order = ledger.create(passenger, PICKUP, DROPOFF, price=600, platform_fee=48)

    outcomes = {}
    start = threading.Barrier(len(drivers))

    def grab(driver):
        start.wait()
        try:
            ledger.accept(driver, order.id)
            outcomes[driver.user_id] = "won"
        except (OrderUnavailable, TransactionConflict) as exc:
            outcomes[driver.user_id] = type(exc).__name__

    threads = [threading.Thread(target=grab, args=(d,)) for d in drivers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [uid for uid, outcome in outcomes.items() if outcome == "won"]
    assert len(winners) == 1
    assert ledger.get(passenger, order.id).driver_id == winners[0]
    for d in drivers:
        expected = 52 if d.user_id == winners[0] else 100
        assert _points(file_store, d.user_id) == expected
