import datetime as dt

import pytest

from storefront import locking, products
from storefront.clock import as_utc
from storefront.errors import LockConflict, NotFound, NotLocked, NotLockHolder
from storefront.models import ActivityLog

from conftest import ADMIN, T0, stock_of

A = {"id": "admin-a", "userName": "Admin A", "role": "admin"}
B = {"id": "admin-b", "userName": "Admin B", "role": "admin"}


def test_acquire_sets_lease(db, make_product):
    product = make_product()

    locked = locking.acquire(db, product.id, "admin-a", "Admin A", now=T0)
    db.commit()

    assert locked.is_locked
    assert locked.locked_by == "admin-a"
    assert locking.is_lock_active(locked, T0 + dt.timedelta(minutes=4))
    assert not locking.is_lock_active(locked, T0 + dt.timedelta(minutes=6))


def test_acquire_is_idempotent_and_refreshes_for_holder(db, make_product):
    product = make_product()
    locking.acquire(db, product.id, "admin-a", "Admin A", now=T0)
    db.commit()

    later = T0 + dt.timedelta(minutes=2)
    again = locking.acquire(db, product.id, "admin-a", "Admin A", now=later)
    db.commit()

    assert again.locked_by == "admin-a"
    assert as_utc(again.lock_expiry) == later + locking.DEFAULT_LOCK_TTL


def test_second_holder_gets_conflict_with_holder_details(db, make_product):
    product = make_product()
    locking.acquire(db, product.id, "admin-a", "Admin A", now=T0)
    db.commit()

    with pytest.raises(LockConflict) as exc:
        locking.acquire(db, product.id, "admin-b", "Admin B", now=T0 + dt.timedelta(minutes=1))
    db.rollback()

    assert exc.value.status_code == 423
    body = exc.value.to_dict()
    assert body["lockedBy"] == "admin-a"
    assert body["lockedByName"] == "Admin A"
    assert body["lockExpiry"].endswith("Z")


def test_expired_lock_is_reclaimed(db, make_product):
    product = make_product()
    locking.acquire(db, product.id, "admin-a", "Admin A", now=T0)
    db.commit()

    reclaimed = locking.acquire(db, product.id, "admin-b", "Admin B", now=T0 + dt.timedelta(minutes=6))
    db.commit()

    assert reclaimed.locked_by == "admin-b"


def test_acquire_missing_product(db):
    with pytest.raises(NotFound):
        locking.acquire(db, 404, "admin-a", now=T0)


def test_release_errors(db, make_product):
    product = make_product()

    with pytest.raises(NotLocked):
        locking.release(db, product.id, "admin-a")

    locking.acquire(db, product.id, "admin-a", now=T0)
    db.commit()
    with pytest.raises(NotLockHolder):
        locking.release(db, product.id, "admin-b")

    released = locking.release(db, product.id, "admin-a")
    db.commit()
    assert not released.is_locked
    assert released.lock_expiry is None


def test_lock_product_logs_activity(db, make_product):
    product = make_product()

    locking.lock_product(db, product.id, "admin-a", "Admin A", A, now=T0)
    locking.unlock_product(db, product.id, "admin-a", A)

    actions = [row.action for row in db.query(ActivityLog).order_by(ActivityLog.id)]
    assert actions == ["lock", "unlock"]


def test_edit_conflict_then_edit_after_expiry(db, make_product):
    """Admin A locks; B's edit is refused while the lease is live and goes through after it lapses."""
    product = make_product(stock=10)
    locking.lock_product(db, product.id, "admin-a", "Admin A", A, now=T0)

    with pytest.raises(LockConflict):
        products.edit_product(
            db, product.id, {"total_stock": 20},
            holder_id="admin-b", holder_name="Admin B", actor=B, now=T0 + dt.timedelta(minutes=1),
        )
    assert stock_of(db, product.id) == 10

    edited = products.edit_product(
        db, product.id, {"total_stock": 20},
        holder_id="admin-b", holder_name="Admin B", actor=B, now=T0 + dt.timedelta(minutes=6),
    )
    assert edited.total_stock == 20
    assert not edited.is_locked


def test_holder_edit_releases_lock_and_records_diff(db, make_product):
    product = make_product(title="Lab Gown", price="250.00")
    locking.lock_product(db, product.id, "admin-1", "Ada Admin", ADMIN, now=T0)

    edited = products.edit_product(
        db, product.id, {"title": "Lab Gown (XL)", "price": 250},
        holder_id="admin-1", holder_name="Ada Admin", actor=ADMIN, now=T0,
    )

    assert edited.title == "Lab Gown (XL)"
    assert not edited.is_locked
    entry = db.query(ActivityLog).filter(ActivityLog.action == "edit").one()
    assert entry.changes["old"] == {"title": "Lab Gown"}
    assert entry.changes["new"] == {"title": "Lab Gown (XL)"}
