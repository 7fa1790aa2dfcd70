import threading
from datetime import timedelta

import pytest
from sqlmodel import select

from ridehub.errors import (
    InsufficientBalance,
    InvalidAmount,
    TransactionConflict,
    Unauthorized,
    UserNotFound,
)
from ridehub.models import User, UserRole, VoucherStatus, VoucherType, WalletLog, WalletLogType
from ridehub.wallet import WalletLedger


@pytest.fixture
def wallet(store):
    return WalletLedger(store)


def _logs(store, kind=None):
    stmt = select(WalletLog)
    if kind is not None:
        stmt = stmt.where(WalletLog.type == kind)
    return store.read(lambda s: list(s.exec(stmt).all()))


def _points(store, user_id):
    return store.read(lambda s: s.get(User, user_id)).points


def test_mint_and_grants_conserve_points(wallet, store, super_admin, add_user):
    alice, bob = add_user(name="alice"), add_user(name="bob")
    wallet.mint(super_admin, 1000)
    wallet.grant(super_admin, alice.user_id, 300, "welcome")
    wallet.grant(super_admin, bob.user_id, 200, "welcome")

    assert wallet.treasury_balance() == 500
    grants = _logs(store, WalletLogType.GRANT)
    assert sum(g.amount for g in grants) == 1000 - wallet.treasury_balance()
    assert _points(store, alice.user_id) == 300
    assert grants[0].operator_id == super_admin.user_id


def test_mint_by_anyone_else_is_a_no_op(wallet, store, add_user):
    cs = add_user(UserRole.ADMIN_CS)
    assert wallet.mint(cs, 500) is None
    assert wallet.mint(None, 500) is None
    assert wallet.treasury_balance() == 0
    assert _logs(store) == []


def test_grant_to_unknown_user_aborts(wallet, store, super_admin):
    wallet.mint(super_admin, 100)
    with pytest.raises(UserNotFound):
        wallet.grant(super_admin, "nobody", 50)
    assert wallet.treasury_balance() == 100
    assert _logs(store, WalletLogType.GRANT) == []


def test_grant_cannot_overdraw_treasury(wallet, super_admin, add_user):
    user = add_user()
    wallet.mint(super_admin, 10)
    with pytest.raises(InsufficientBalance):
        wallet.grant(super_admin, user.user_id, 11)
    assert wallet.treasury_balance() == 10


def test_grant_needs_super_admin(wallet, add_user):
    with pytest.raises(Unauthorized):
        wallet.grant(add_user(UserRole.ADMIN_CS), add_user().user_id, 10)


def test_amounts_must_be_positive(wallet, super_admin, add_user):
    with pytest.raises(InvalidAmount):
        wallet.mint(super_admin, 0)
    with pytest.raises(InvalidAmount):
        wallet.purchase(add_user(), -5)


def test_transfer_moves_points_and_logs(wallet, store, add_user):
    sender = add_user(points=100, name="sender")
    target = add_user(name="target")
    log = wallet.transfer(sender, target.user_id, 40, "thanks")

    assert log.type == WalletLogType.TRANSFER
    assert log.operator_id == sender.user_id
    assert log.user_id == target.user_id
    assert _points(store, sender.user_id) == 60
    assert _points(store, target.user_id) == 40


def test_transfer_checks_balance(wallet, store, add_user):
    sender = add_user(points=10, name="sender")
    target = add_user(name="target")
    with pytest.raises(InsufficientBalance):
        wallet.transfer(sender, target.user_id, 11)
    assert _points(store, sender.user_id) == 10
    assert _logs(store) == []


def test_purchase_credits_caller(wallet, store, add_user):
    buyer = add_user()
    log = wallet.purchase(buyer, 250)
    assert log.operator_id == "SYSTEM"
    assert log.operator_name == "Payment Gateway"
    assert _points(store, buyer.user_id) == 250


def test_voucher_issue(wallet, store, super_admin, add_user):
    driver = add_user(UserRole.DRIVER)
    voucher = wallet.issue_voucher(super_admin, driver.user_id, VoucherType.DRIVER_FEE, 50, "Fee waiver", days_valid=7)

    assert voucher.balance == voucher.amount == 50
    assert voucher.status == VoucherStatus.ACTIVE
    assert voucher.expiry_date - voucher.created_at == timedelta(days=7)
    logs = _logs(store, WalletLogType.VOUCHER_ISSUE)
    assert [x.voucher_id for x in logs] == [voucher.id]


def test_vouchers_listed_soonest_expiry_first(wallet, super_admin, add_user):
    user = add_user()
    late = wallet.issue_voucher(super_admin, user.user_id, VoucherType.RIDE_DISCOUNT, 20, "Later", days_valid=30)
    soon = wallet.issue_voucher(super_admin, user.user_id, VoucherType.RIDE_DISCOUNT, 10, "Soon", days_valid=3)
    assert [v.id for v in wallet.list_vouchers(user.user_id)] == [soon.id, late.id]


def test_voucher_for_unknown_user(wallet, store, super_admin):
    with pytest.raises(UserNotFound):
        wallet.issue_voucher(super_admin, "ghost", VoucherType.RIDE_DISCOUNT, 10, "x")
    assert _logs(store) == []


def test_concurrent_transfers_never_overdraw(file_store, add_file_user):
    wallet = WalletLedger(file_store)
    sender = add_file_user(points=100, name="sender")
    targets = [add_file_user(name=f"t{i}") for i in range(5)]

    results = []
    lock = threading.Lock()
    start = threading.Barrier(len(targets))

    def send(target):
        start.wait()
        try:
            wallet.transfer(sender, target.user_id, 30)
            outcome = "ok"
        except (InsufficientBalance, TransactionConflict) as exc:
            outcome = type(exc).__name__
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=send, args=(t,)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    sent = results.count("ok")
    assert sent <= 3
    assert _points(file_store, sender.user_id) == 100 - 30 * sent
    received = sum(_points(file_store, t.user_id) for t in targets)
    assert received == 30 * sent
    assert len(_logs(file_store, WalletLogType.TRANSFER)) == sent
