"""
Seat ledger for official (shared) routes.

Joining and leaving only move the route's occupied-seat counter and the
passenger's order; the route's own status is advanced by admins.
"""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List, Optional

from sqlmodel import Session, select

from .database import Store, cas_update
from .errors import (
    AlreadyAssigned,
    CapacityExceeded,
    InvalidAmount,
    InvalidState,
    NotFound,
    Unauthorized,
    UserNotFound,
)
from .identity import Identity, require, require_admin
from .models import (
    TERMINAL_ORDER_STATUSES,
    OfficialRoute,
    OfficialRouteStatus,
    Order,
    OrderStatus,
    OrderType,
    User,
    UserRole,
    utcnow,
)

logger = logging.getLogger(__name__)

RS = OfficialRouteStatus

ROUTE_TRANSITIONS: Dict[OfficialRouteStatus, FrozenSet[OfficialRouteStatus]] = {
    RS.COLLECTING: frozenset({RS.CONFIRMED, RS.CANCELLED}),
    RS.CONFIRMED: frozenset({RS.DISPATCHING, RS.CANCELLED}),
    RS.DISPATCHING: frozenset({RS.ACTIVE, RS.CANCELLED}),
    RS.ACTIVE: frozenset({RS.COMPLETED, RS.CANCELLED}),
}

JOINABLE = frozenset({RS.COLLECTING, RS.CONFIRMED})


def load_route(session: Session, route_id: str) -> OfficialRoute:
    route = session.exec(
        select(OfficialRoute).where(OfficialRoute.id == route_id).with_for_update()
    ).first()
    if not route:
        raise NotFound("Route not found")
    return route


def load_order(session: Session, order_id: str) -> Order:
    order = session.exec(select(Order).where(Order.id == order_id).with_for_update()).first()
    if not order:
        raise NotFound("Order not found")
    return order


def release_seats(session: Session, order: Order) -> None:
    """Cancel ``order`` and hand its seats back to its route, if any."""
    if order.official_route_id:
        route = load_route(session, order.official_route_id)
        remaining = route.occupied_seats - order.passengers_count
        if remaining < 0:
            raise InvalidState(f"route {route.id} seat counter would go negative")
        cas_update(session, route, occupied_seats=remaining)
    cas_update(session, order, status=OrderStatus.CANCELLED, updated_at=utcnow())


class SeatLedger:
    def __init__(self, store: Store) -> None:
        self.store = store

    def create_route(
        self,
        identity: Optional[Identity],
        pickup: dict,
        dropoff: dict,
        date: str,
        price_per_seat: int,
        total_seats: int = 6,
        charter_price: int = 0,
        admin_note: Optional[str] = None,
    ) -> OfficialRoute:
        require_admin(identity)
        if total_seats < 1:
            raise InvalidAmount("a route needs at least one seat")
        if price_per_seat < 0 or charter_price < 0:
            raise InvalidAmount("prices cannot be negative")

        def unit(session: Session) -> OfficialRoute:
            route = OfficialRoute(
                pickup=pickup,
                dropoff=dropoff,
                date=date,
                total_seats=total_seats,
                price_per_seat=price_per_seat,
                charter_price=charter_price,
                admin_note=admin_note,
            )
            session.add(route)
            return route

        route = self.store.run_transaction(unit)
        logger.info("route %s created (%d seats)", route.id, route.total_seats)
        return route

    def join(self, identity: Optional[Identity], route_id: str, pax_count: int) -> Order:
        identity = require(identity)
        if pax_count < 1:
            raise InvalidAmount("at least one passenger")

        def unit(session: Session) -> Order:
            route = load_route(session, route_id)
            if route.status not in JOINABLE:
                raise InvalidState(f"route is {route.status.value}")
            if route.occupied_seats + pax_count > route.total_seats:
                free = route.total_seats - route.occupied_seats
                raise CapacityExceeded(f"only {free} seat(s) left")
            cas_update(session, route, occupied_seats=route.occupied_seats + pax_count)
            order = Order(
                passenger_id=identity.user_id,
                official_route_id=route.id,
                type=OrderType.CARPOOL,
                pickup=route.pickup,
                dropoff=route.dropoff,
                status=OrderStatus.WAITING_FOR_DRIVER,
                price=route.price_per_seat * pax_count,
                platform_fee=0,
                passengers_count=pax_count,
                date=route.date,
                is_official=True,
            )
            session.add(order)
            return order

        order = self.store.run_transaction(unit)
        logger.info("user %s joined route %s with %d pax (order %s)", identity.user_id, route_id, pax_count, order.id)
        return order

    def leave(self, identity: Optional[Identity], order_id: str) -> Order:
        identity = require(identity)

        def unit(session: Session) -> Order:
            order = load_order(session, order_id)
            if order.passenger_id != identity.user_id and not identity.is_admin:
                raise Unauthorized("not your booking")
            if order.status in TERMINAL_ORDER_STATUSES:
                raise InvalidState("trip already finished")
            if order.driver_id:
                raise AlreadyAssigned("driver already assigned, contact support to cancel")
            release_seats(session, order)
            return order

        order = self.store.run_transaction(unit)
        logger.info("order %s left route %s", order.id, order.official_route_id)
        return order

    def advance(
        self,
        identity: Optional[Identity],
        route_id: str,
        status: OfficialRouteStatus,
        driver_id: Optional[str] = None,
    ) -> OfficialRoute:
        require_admin(identity)

        def unit(session: Session) -> OfficialRoute:
            route = load_route(session, route_id)
            if status not in ROUTE_TRANSITIONS.get(route.status, frozenset()):
                raise InvalidState(f"cannot move route from {route.status.value} to {status.value}")
            values = {"status": status}
            assigned = driver_id or route.driver_id
            if driver_id:
                driver = session.get(User, driver_id)
                if not driver or driver.role != UserRole.DRIVER:
                    raise UserNotFound("Driver not found")
                values["driver_id"] = driver_id

            orders = self._route_orders(session, route.id)
            now = utcnow()
            if status == RS.ACTIVE:
                if not assigned:
                    raise InvalidState("assign a driver before activating the route")
                for order in orders:
                    if order.status == OrderStatus.WAITING_FOR_DRIVER:
                        cas_update(session, order, status=OrderStatus.ACCEPTED, driver_id=assigned, updated_at=now)
            elif status == RS.COMPLETED:
                for order in orders:
                    if order.status in (OrderStatus.ACCEPTED, OrderStatus.ON_THE_WAY):
                        cas_update(session, order, status=OrderStatus.COMPLETED, completed_at=now, updated_at=now)
            elif status == RS.CANCELLED:
                for order in orders:
                    if order.status not in TERMINAL_ORDER_STATUSES:
                        cas_update(session, order, status=OrderStatus.CANCELLED, driver_id=None, updated_at=now)
                values["occupied_seats"] = 0
            cas_update(session, route, **values)
            return route

        route = self.store.run_transaction(unit)
        logger.info("route %s -> %s", route.id, route.status.value)
        return route

    @staticmethod
    def _route_orders(session: Session, route_id: str) -> List[Order]:
        return list(session.exec(select(Order).where(Order.official_route_id == route_id)).all())

    def get_route(self, route_id: str) -> OfficialRoute:
        return self.store.read(lambda s: load_route(s, route_id))

    def list_routes(self, statuses: Optional[List[OfficialRouteStatus]] = None) -> List[OfficialRoute]:
        def query(session: Session) -> List[OfficialRoute]:
            stmt = select(OfficialRoute)
            if statuses:
                stmt = stmt.where(OfficialRoute.status.in_(statuses))
            return list(session.exec(stmt.order_by(OfficialRoute.created_at)).all())

        return self.store.read(query)
