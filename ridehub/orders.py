from __future__ import annotations

import logging
from typing import List, Optional

from sqlmodel import Session, or_, select

from .database import Store, cas_update
from .errors import (
    AlreadyAssigned,
    InsufficientBalance,
    InvalidAmount,
    InvalidState,
    NotFound,
    OrderUnavailable,
    Unauthorized,
    UserNotFound,
)
from .identity import Identity, require, require_role
from .models import (
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderStatus,
    OrderType,
    User,
    UserRole,
    utcnow,
)
from .seats import load_order, release_seats

logger = logging.getLogger(__name__)


def can_see(identity: Optional[Identity], order: Order) -> bool:
    if order.status == OrderStatus.PENDING:
        return True
    if identity is None:
        return False
    return identity.is_admin or identity.user_id in (order.passenger_id, order.driver_id)


class OrderLedger:
    """Order lifecycle: create, accept (against the driver's points), start,
    complete and cancel."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def create(
        self,
        identity: Optional[Identity],
        pickup: dict,
        dropoff: dict,
        price: int,
        platform_fee: int,
        passengers_count: int = 1,
        date: str = "",
        order_type: OrderType = OrderType.CHARTER,
        notes: Optional[str] = None,
    ) -> Order:
        identity = require(identity)
        if passengers_count < 1:
            raise InvalidAmount("at least one passenger")
        if price < 0 or platform_fee < 0:
            raise InvalidAmount("price and fee cannot be negative")

        def unit(session: Session) -> Order:
            order = Order(
                passenger_id=identity.user_id,
                type=order_type,
                pickup=pickup,
                dropoff=dropoff,
                status=OrderStatus.PENDING,
                price=price,
                platform_fee=platform_fee,
                passengers_count=passengers_count,
                date=date,
                notes=notes,
            )
            session.add(order)
            return order

        order = self.store.run_transaction(unit)
        logger.info("order %s created by %s (price %d)", order.id, identity.user_id, order.price)
        return order

    def accept(self, identity: Optional[Identity], order_id: str) -> Order:
        """Claim a PENDING order and pay its platform fee in one unit.

        Of two drivers racing for the same order exactly one wins; the other
        gets OrderUnavailable.
        """
        identity = require_role(identity, UserRole.DRIVER)

        def unit(session: Session) -> Order:
            order = session.exec(select(Order).where(Order.id == order_id).with_for_update()).first()
            if not order or order.status != OrderStatus.PENDING:
                raise OrderUnavailable("order already taken or no longer available")
            driver = session.exec(select(User).where(User.id == identity.user_id).with_for_update()).first()
            if not driver:
                raise UserNotFound("Driver not found")
            fee = order.platform_fee or 0
            if driver.points < fee:
                raise InsufficientBalance(f"need {fee} points, have {driver.points}")
            now = utcnow()
            cas_update(session, order, status=OrderStatus.ACCEPTED, driver_id=driver.id, updated_at=now)
            cas_update(session, driver, points=driver.points - fee, updated_at=now)
            return order

        order = self.store.run_transaction(unit)
        logger.info("order %s accepted by driver %s (fee %d)", order.id, identity.user_id, order.platform_fee)
        return order

    def start(self, identity: Optional[Identity], order_id: str) -> Order:
        identity = require(identity)

        def unit(session: Session) -> Order:
            order = load_order(session, order_id)
            if order.driver_id != identity.user_id:
                raise Unauthorized("only the assigned driver can start this trip")
            if order.status != OrderStatus.ACCEPTED:
                raise InvalidState(f"order is {order.status.value}")
            cas_update(session, order, status=OrderStatus.ON_THE_WAY, updated_at=utcnow())
            return order

        return self.store.run_transaction(unit)

    def complete(self, order_id: str, identity: Optional[Identity] = None) -> Order:
        """Finish a trip. No balance moves; the fee was paid on accept.

        With an ``identity`` only the assigned driver or an admin may do it.
        """

        def unit(session: Session) -> Order:
            order = load_order(session, order_id)
            if identity is not None and order.driver_id != identity.user_id and not identity.is_admin:
                raise Unauthorized("only the assigned driver can complete this trip")
            if order.status == OrderStatus.COMPLETED:
                return order
            if order.status not in (OrderStatus.ACCEPTED, OrderStatus.ON_THE_WAY):
                raise InvalidState(f"cannot complete a {order.status.value} order")
            now = utcnow()
            cas_update(session, order, status=OrderStatus.COMPLETED, completed_at=now, updated_at=now)
            return order

        order = self.store.run_transaction(unit)
        logger.info("order %s completed", order.id)
        return order

    def cancel(self, identity: Optional[Identity], order_id: str) -> Order:
        identity = require(identity)

        def unit(session: Session) -> Order:
            order = load_order(session, order_id)
            if order.passenger_id != identity.user_id and not identity.is_admin:
                raise Unauthorized("not your order")
            if order.status in TERMINAL_ORDER_STATUSES:
                raise InvalidState("order already finished")
            if order.driver_id:
                raise AlreadyAssigned("driver already assigned, contact support to cancel")
            release_seats(session, order)
            return order

        order = self.store.run_transaction(unit)
        logger.info("order %s cancelled", order.id)
        return order

    def get(self, identity: Optional[Identity], order_id: str) -> Order:
        """One order, if the caller may see it; hidden orders read as missing."""
        order = self.store.read(lambda s: load_order(s, order_id))
        if not can_see(identity, order):
            raise NotFound("Order not found")
        return order

    def visible_to(self, identity: Optional[Identity], limit: int = 100) -> List[Order]:
        """Pending orders for everyone, plus the caller's own and assigned ones."""

        def query(session: Session) -> List[Order]:
            stmt = select(Order)
            if identity is None:
                stmt = stmt.where(Order.status == OrderStatus.PENDING)
            elif not identity.is_admin:
                stmt = stmt.where(or_(
                    Order.passenger_id == identity.user_id,
                    Order.driver_id == identity.user_id,
                    Order.status == OrderStatus.PENDING,
                ))
            return list(session.exec(stmt.order_by(Order.created_at.desc()).limit(limit)).all())

        return self.store.read(query)
