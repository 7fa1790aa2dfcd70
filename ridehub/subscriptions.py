"""
Live query subscriptions.

A subscription is plain data: which table, which filters, what order and
how many rows. One manager turns descriptors into queries and re-runs the
affected ones after every commit, handing each callback the full result set.
"""
from __future__ import annotations

import logging
import operator
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, and_, or_, select

from .identity import Identity
from .models import (
    Conversation,
    DriverDocument,
    Message,
    OfficialRoute,
    OfficialRouteStatus,
    Order,
    OrderStatus,
    Ticket,
    Treasury,
    User,
    Voucher,
    VoucherStatus,
    WalletLog,
)

logger = logging.getLogger(__name__)

COLLECTIONS: Dict[str, type] = {
    model.__tablename__: model
    for model in (
        User, Order, OfficialRoute, WalletLog, Voucher, Treasury,
        Conversation, Message, Ticket, DriverDocument,
    )
}

_OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

Callback = Callable[[List[SQLModel]], None]


@dataclass(frozen=True)
class Filter:
    field: str
    op: str = "=="
    value: Any = None


@dataclass(frozen=True)
class SubscriptionDescriptor:
    """``filters`` are ANDed; ``any_of`` is one ORed group ANDed onto them."""

    collection: str
    filters: Tuple[Filter, ...] = ()
    any_of: Tuple[Filter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None


def _column(model: type, name: str):
    try:
        return getattr(model, name)
    except AttributeError:
        raise ValueError(f"{model.__tablename__} has no field {name!r}") from None


def _clause(model: type, f: Filter):
    column = _column(model, f.field)
    if f.op == "in":
        return column.in_(list(f.value))
    if f.op not in _OPS:
        raise ValueError(f"unsupported operator {f.op!r}")
    return _OPS[f.op](column, f.value)


def build_query(descriptor: SubscriptionDescriptor):
    model = COLLECTIONS.get(descriptor.collection)
    if model is None:
        raise ValueError(f"unknown collection {descriptor.collection!r}")
    stmt = select(model)
    clauses = [_clause(model, f) for f in descriptor.filters]
    if descriptor.any_of:
        clauses.append(or_(*[_clause(model, f) for f in descriptor.any_of]))
    if clauses:
        stmt = stmt.where(and_(*clauses))
    if descriptor.order_by:
        column = _column(model, descriptor.order_by)
        stmt = stmt.order_by(column.desc() if descriptor.descending else column)
    if descriptor.limit:
        stmt = stmt.limit(descriptor.limit)
    return stmt


class SubscriptionManager:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lock = threading.RLock()
        self._subs: Dict[object, Tuple[SubscriptionDescriptor, Callback]] = {}

    def snapshot(self, descriptor: SubscriptionDescriptor) -> List[SQLModel]:
        stmt = build_query(descriptor)
        with Session(self.engine, expire_on_commit=False) as session:
            return list(session.exec(stmt).all())

    def subscribe(self, descriptor: SubscriptionDescriptor, callback: Callback) -> Callable[[], None]:
        """Register ``callback`` and deliver the current result set at once.

        Returns a callable that cancels the subscription.
        """
        build_query(descriptor)
        token = object()
        with self._lock:
            self._subs[token] = (descriptor, callback)
        self._deliver(descriptor, callback)

        def unsubscribe() -> None:
            with self._lock:
                self._subs.pop(token, None)

        return unsubscribe

    def publish(self, collections: Iterable[str]) -> None:
        touched = set(collections)
        with self._lock:
            targets = [(d, cb) for d, cb in self._subs.values() if d.collection in touched]
        for descriptor, callback in targets:
            self._deliver(descriptor, callback)

    def active(self) -> int:
        with self._lock:
            return len(self._subs)

    def _deliver(self, descriptor: SubscriptionDescriptor, callback: Callback) -> None:
        try:
            rows = self.snapshot(descriptor)
            callback(rows)
        except Exception:
            # one broken subscriber must not fail the commit that fed it
            logger.exception("subscription on %s failed to deliver", descriptor.collection)


def feeds_for(identity: Optional[Identity]) -> Dict[str, SubscriptionDescriptor]:
    """The live feeds a client holds open, by role."""
    pending = Filter("status", "==", OrderStatus.PENDING)
    if identity is None:
        return {
            "orders": SubscriptionDescriptor(
                "orders", filters=(pending,), order_by="created_at", descending=True, limit=50
            ),
        }
    if identity.is_admin:
        return {
            "orders": SubscriptionDescriptor("orders", order_by="created_at", descending=True, limit=200),
            "messages": SubscriptionDescriptor("messages", order_by="created_at", descending=True, limit=200),
            "users": SubscriptionDescriptor("users", order_by="created_at", descending=True),
            "walletLogs": SubscriptionDescriptor("wallet_logs", order_by="created_at", descending=True, limit=100),
            "tickets": SubscriptionDescriptor("tickets", order_by="updated_at", descending=True),
            "treasury": SubscriptionDescriptor("platform_wallet"),
        }
    uid = identity.user_id
    return {
        "profile": SubscriptionDescriptor("users", filters=(Filter("id", "==", uid),)),
        "orders": SubscriptionDescriptor(
            "orders",
            any_of=(Filter("passenger_id", "==", uid), Filter("driver_id", "==", uid), pending),
            order_by="created_at",
            descending=True,
            limit=100,
        ),
        "routes": SubscriptionDescriptor(
            "official_routes",
            filters=(Filter("status", "in", (OfficialRouteStatus.COLLECTING, OfficialRouteStatus.CONFIRMED)),),
            order_by="created_at",
        ),
        "conversations": SubscriptionDescriptor(
            "conversations",
            any_of=(Filter("participant_a", "==", uid), Filter("participant_b", "==", uid)),
            order_by="updated_at",
            descending=True,
        ),
        "vouchers": SubscriptionDescriptor(
            "vouchers",
            filters=(Filter("user_id", "==", uid), Filter("status", "==", VoucherStatus.ACTIVE)),
            order_by="expiry_date",
        ),
    }
