"""
Point and voucher ledger.

Every operation writes exactly one balance mutation and one WalletLog row
in the same transaction, so an unlogged mutation or an orphaned log can
never be observed.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlmodel import Session, select

from .database import Store, cas_update
from .errors import InsufficientBalance, InvalidAmount, InvalidState, UserNotFound
from .identity import Identity, require, require_admin, require_role
from .models import (
    TREASURY_ID,
    Treasury,
    User,
    UserRole,
    Voucher,
    VoucherStatus,
    VoucherType,
    WalletLog,
    WalletLogType,
    utcnow,
)

logger = logging.getLogger(__name__)

PAYMENT_GATEWAY_ID = "SYSTEM"
PAYMENT_GATEWAY_NAME = "Payment Gateway"


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmount("amount must be a positive whole number of points")


def load_treasury(session: Session) -> Treasury:
    treasury = session.exec(select(Treasury).where(Treasury.id == TREASURY_ID).with_for_update()).first()
    if treasury is None:
        treasury = Treasury(id=TREASURY_ID)
        session.add(treasury)
        session.flush()
    return treasury


def load_user(session: Session, user_id: str) -> User:
    user = session.exec(select(User).where(User.id == user_id).with_for_update()).first()
    if not user:
        raise UserNotFound(f"user {user_id} not found")
    return user


class WalletLedger:
    def __init__(self, store: Store) -> None:
        self.store = store

    def treasury_balance(self) -> int:
        treasury = self.store.read(lambda s: s.get(Treasury, TREASURY_ID))
        return treasury.total_points if treasury else 0

    def mint(self, identity: Optional[Identity], amount: int) -> Optional[WalletLog]:
        """Add points to the treasury. Anyone but a super admin gets a no-op."""
        if identity is None or not identity.is_super_admin:
            logger.warning("mint of %s ignored for %s", amount, identity.user_id if identity else "anonymous")
            return None
        _check_amount(amount)

        def unit(session: Session) -> WalletLog:
            treasury = load_treasury(session)
            cas_update(session, treasury, total_points=treasury.total_points + amount, updated_at=utcnow())
            log = WalletLog(
                type=WalletLogType.MINT,
                operator_id=identity.user_id,
                operator_name=identity.name,
                amount=amount,
                note="treasury mint",
            )
            session.add(log)
            return log

        log = self.store.run_transaction(unit)
        logger.info("treasury minted %d by %s", amount, identity.user_id)
        return log

    def grant(self, identity: Optional[Identity], target_user_id: str, amount: int, note: str = "") -> WalletLog:
        identity = require_role(identity, UserRole.ADMIN_SUPER)
        _check_amount(amount)

        def unit(session: Session) -> WalletLog:
            target = load_user(session, target_user_id)
            treasury = load_treasury(session)
            if treasury.total_points < amount:
                raise InsufficientBalance(f"treasury holds {treasury.total_points} points")
            now = utcnow()
            cas_update(session, treasury, total_points=treasury.total_points - amount, updated_at=now)
            cas_update(session, target, points=target.points + amount, updated_at=now)
            log = WalletLog(
                type=WalletLogType.GRANT,
                user_id=target.id,
                user_name=target.name,
                operator_id=identity.user_id,
                operator_name=identity.name,
                amount=amount,
                note=note,
            )
            session.add(log)
            return log

        log = self.store.run_transaction(unit)
        logger.info("granted %d to %s by %s", amount, target_user_id, identity.user_id)
        return log

    def transfer(self, identity: Optional[Identity], target_user_id: str, amount: int, note: str = "") -> WalletLog:
        """Move points from the caller to ``target_user_id``.

        The caller's balance is checked inside the transaction against the
        row that gets written, so concurrent transfers cannot overdraw.
        """
        identity = require(identity)
        _check_amount(amount)
        if target_user_id == identity.user_id:
            raise InvalidState("cannot transfer to yourself")

        def unit(session: Session) -> WalletLog:
            sender = load_user(session, identity.user_id)
            target = load_user(session, target_user_id)
            if sender.points < amount:
                raise InsufficientBalance(f"balance {sender.points} is below {amount}")
            now = utcnow()
            cas_update(session, sender, points=sender.points - amount, updated_at=now)
            cas_update(session, target, points=target.points + amount, updated_at=now)
            log = WalletLog(
                type=WalletLogType.TRANSFER,
                user_id=target.id,
                user_name=target.name,
                operator_id=sender.id,
                operator_name=sender.name,
                amount=amount,
                note=note,
            )
            session.add(log)
            return log

        log = self.store.run_transaction(unit)
        logger.info("transferred %d from %s to %s", amount, identity.user_id, target_user_id)
        return log

    def purchase(self, identity: Optional[Identity], amount: int) -> WalletLog:
        """Credit points the payment gateway has already charged for."""
        identity = require(identity)
        _check_amount(amount)

        def unit(session: Session) -> WalletLog:
            user = load_user(session, identity.user_id)
            cas_update(session, user, points=user.points + amount, updated_at=utcnow())
            log = WalletLog(
                type=WalletLogType.PURCHASE,
                user_id=user.id,
                user_name=user.name,
                operator_id=PAYMENT_GATEWAY_ID,
                operator_name=PAYMENT_GATEWAY_NAME,
                amount=amount,
                note="online top-up",
            )
            session.add(log)
            return log

        log = self.store.run_transaction(unit)
        logger.info("user %s purchased %d points", identity.user_id, amount)
        return log

    def issue_voucher(
        self,
        identity: Optional[Identity],
        user_id: str,
        voucher_type: VoucherType,
        amount: int,
        title: str,
        days_valid: int = 30,
        description: Optional[str] = None,
    ) -> Voucher:
        identity = require_admin(identity)
        _check_amount(amount)
        if days_valid < 1:
            raise InvalidAmount("a voucher must be valid for at least one day")

        def unit(session: Session) -> Voucher:
            user = load_user(session, user_id)
            now = utcnow()
            voucher = Voucher(
                user_id=user.id,
                type=voucher_type,
                title=title,
                description=description,
                amount=amount,
                balance=amount,
                status=VoucherStatus.ACTIVE,
                expiry_date=now + timedelta(days=days_valid),
                issuer_id=identity.user_id,
                created_at=now,
            )
            session.add(voucher)
            session.add(WalletLog(
                type=WalletLogType.VOUCHER_ISSUE,
                user_id=user.id,
                user_name=user.name,
                operator_id=identity.user_id,
                operator_name=identity.name,
                amount=amount,
                note=f"issued {title} (voucher {voucher.id[-6:]})",
                voucher_id=voucher.id,
            ))
            return voucher

        voucher = self.store.run_transaction(unit)
        logger.info("voucher %s (%d) issued to %s", voucher.id, amount, user_id)
        return voucher

    def list_vouchers(self, user_id: str) -> List[Voucher]:
        """Active vouchers, soonest to expire first."""
        return self.store.read(lambda s: list(s.exec(
            select(Voucher)
            .where(Voucher.user_id == user_id, Voucher.status == VoucherStatus.ACTIVE)
            .order_by(Voucher.expiry_date)
        ).all()))

    def logs(self, identity: Optional[Identity], limit: int = 100) -> List[WalletLog]:
        require_admin(identity)
        return self.store.read(lambda s: list(s.exec(
            select(WalletLog).order_by(WalletLog.created_at.desc()).limit(limit)
        ).all()))
