"""
Data maintenance: ghost-account purge and retention archival.

Archival copies a batch of rows into the archive table and deletes the
originals in the same transaction, then moves on to the next batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import exists, func
from sqlmodel import Session, or_, select

from . import config
from .database import Store
from .identity import Identity, require_role
from .models import (
    TERMINAL_ORDER_STATUSES,
    ArchivedMessage,
    ArchivedOrder,
    DriverDocument,
    Message,
    Order,
    User,
    UserRole,
    Voucher,
    utcnow,
)

logger = logging.getLogger(__name__)

ORDER_BATCH = 100
MESSAGE_BATCH = 200


@dataclass
class CleanupReport:
    ghosts_deleted: int = 0
    orders_archived: int = 0
    messages_archived: int = 0


def _blank(column):
    # whitespace-only counts as empty
    return or_(column == None, func.trim(column) == "")  # noqa: E711


def _ghost_query():
    referenced = or_(
        exists().where(or_(Order.passenger_id == User.id, Order.driver_id == User.id)),
        exists().where(Voucher.user_id == User.id),
        exists().where(DriverDocument.user_id == User.id),
    )
    return select(User).where(_blank(User.name), _blank(User.phone), _blank(User.email), ~referenced)


class Maintenance:
    def __init__(self, store: Store, retention_days: int = config.DATA_RETENTION_DAYS) -> None:
        self.store = store
        self.retention_days = retention_days

    def _cutoff(self, now: Optional[datetime]) -> datetime:
        return (now or utcnow()) - timedelta(days=self.retention_days)

    def find_ghost_accounts(self) -> List[User]:
        """Users with no name, phone or email and nothing that refers to them."""
        return self.store.read(lambda s: list(s.exec(_ghost_query()).all()))

    def delete_ghost_accounts(self) -> int:
        def unit(session: Session) -> int:
            ghosts = session.exec(_ghost_query()).all()
            for user in ghosts:
                session.delete(user)
            return len(ghosts)

        count = self.store.run_transaction(unit)
        logger.info("deleted %d ghost account(s)", count)
        return count

    def archive_old_orders(self, now: Optional[datetime] = None) -> int:
        """Move finished orders past the retention window to ``archive_orders``."""
        cutoff = self._cutoff(now)

        def batch(session: Session) -> int:
            rows = session.exec(
                select(Order)
                .where(Order.status.in_(TERMINAL_ORDER_STATUSES), Order.created_at < cutoff)
                .order_by(Order.created_at)
                .limit(ORDER_BATCH)
            ).all()
            for order in rows:
                session.add(ArchivedOrder(
                    id=order.id,
                    payload=order.model_dump(mode="json"),
                    original_created_at=order.created_at,
                ))
                session.delete(order)
            return len(rows)

        return self._drain("orders", batch)

    def archive_old_messages(self, now: Optional[datetime] = None) -> int:
        cutoff = self._cutoff(now)

        def batch(session: Session) -> int:
            rows = session.exec(
                select(Message)
                .where(Message.created_at < cutoff)
                .order_by(Message.created_at)
                .limit(MESSAGE_BATCH)
            ).all()
            for msg in rows:
                session.add(ArchivedMessage(
                    id=msg.id,
                    payload=msg.model_dump(mode="json"),
                    original_created_at=msg.created_at,
                ))
                session.delete(msg)
            return len(rows)

        return self._drain("messages", batch)

    def _drain(self, what: str, batch) -> int:
        total = 0
        while True:
            moved = self.store.run_transaction(batch)
            total += moved
            if moved == 0:
                break
        logger.info("archived %d %s", total, what)
        return total

    def run_cleanup(self, identity: Optional[Identity], now: Optional[datetime] = None) -> CleanupReport:
        require_role(identity, UserRole.ADMIN_SUPER, UserRole.ADMIN_DB)
        report = CleanupReport(
            ghosts_deleted=self.delete_ghost_accounts(),
            orders_archived=self.archive_old_orders(now),
            messages_archived=self.archive_old_messages(now),
        )
        logger.info("cleanup finished: %s", report)
        return report
