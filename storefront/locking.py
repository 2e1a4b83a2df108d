"""Product edit locks ("2PL" in the admin UI).

A lock is a single exclusive lease per product with an expiry. Acquiring it is
one conditional UPDATE (test-and-set), so two admins racing for the same
product cannot both win. Expired leases are reclaimed lazily by the next
acquire; nothing sweeps them.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .activity import log_activity
from .clock import as_utc, utcnow
from .config import PRODUCT_LOCK_DURATION_MINUTES
from .errors import LockConflict, NotFound, NotLocked, NotLockHolder
from .models import Product

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = dt.timedelta(minutes=PRODUCT_LOCK_DURATION_MINUTES)

_UNLOCKED = {
    Product.is_locked: False,
    Product.locked_by: None,
    Product.locked_by_name: None,
    Product.locked_at: None,
    Product.lock_expiry: None,
}


def _load(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).populate_existing().filter(Product.id == product_id).first()


def is_lock_active(product: Product, now: Optional[dt.datetime] = None) -> bool:
    if not product.is_locked or product.lock_expiry is None:
        return False
    return as_utc(product.lock_expiry) >= (now or utcnow())


def acquire(
    db: Session,
    product_id: int,
    holder_id: str,
    holder_name: Optional[str] = None,
    *,
    ttl: Optional[dt.timedelta] = None,
    now: Optional[dt.datetime] = None,
) -> Product:
    """Take or refresh the lease. Does not commit."""
    now = now or utcnow()
    expiry = now + (ttl or DEFAULT_LOCK_TTL)

    # The failed-update read can race a concurrent release; one retry settles it
    for _ in range(2):
        updated = (
            db.query(Product)
            .filter(
                Product.id == product_id,
                or_(
                    Product.is_locked.is_(False),
                    Product.lock_expiry < now,
                    Product.locked_by == holder_id,
                ),
            )
            .update(
                {
                    Product.is_locked: True,
                    Product.locked_by: holder_id,
                    Product.locked_by_name: holder_name or "Unknown User",
                    Product.locked_at: now,
                    Product.lock_expiry: expiry,
                },
                synchronize_session=False,
            )
        )
        product = _load(db, product_id)
        if product is None:
            raise NotFound("Product not found")
        if updated:
            return product
        if is_lock_active(product, now) and product.locked_by != holder_id:
            raise LockConflict(product.locked_by, product.locked_by_name, as_utc(product.lock_expiry))

    raise LockConflict(product.locked_by, product.locked_by_name, as_utc(product.lock_expiry))


def release(db: Session, product_id: int, holder_id: str) -> Product:
    """Drop the lease if ``holder_id`` owns it. Does not commit."""
    updated = (
        db.query(Product)
        .filter(
            Product.id == product_id,
            Product.is_locked.is_(True),
            Product.locked_by == holder_id,
        )
        .update(dict(_UNLOCKED), synchronize_session=False)
    )
    product = _load(db, product_id)
    if product is None:
        raise NotFound("Product not found")
    if updated:
        return product
    if not product.is_locked:
        raise NotLocked("Product is not locked")
    raise NotLockHolder("You do not own the lock on this product")


def clear_lock_fields(product: Product) -> None:
    product.is_locked = False
    product.locked_by = None
    product.locked_by_name = None
    product.locked_at = None
    product.lock_expiry = None


def lock_product(
    db: Session,
    product_id: int,
    holder_id: str,
    holder_name: Optional[str],
    actor: Dict[str, Any],
    *,
    ttl: Optional[dt.timedelta] = None,
    now: Optional[dt.datetime] = None,
) -> Product:
    try:
        product = acquire(db, product_id, holder_id, holder_name, ttl=ttl, now=now)
        log_activity(
            db,
            entity_type="product",
            entity_id=product.id,
            entity_title=product.title,
            actor=actor,
            action="lock",
            changes={"holderId": holder_id, "lockExpiry": product.lock_expiry.isoformat()},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    logger.info("Product %s locked by %s", product_id, holder_id)
    return product


def unlock_product(
    db: Session,
    product_id: int,
    holder_id: str,
    actor: Dict[str, Any],
) -> Product:
    try:
        product = release(db, product_id, holder_id)
        log_activity(
            db,
            entity_type="product",
            entity_id=product.id,
            entity_title=product.title,
            actor=actor,
            action="unlock",
            changes={"holderId": holder_id},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    logger.info("Product %s unlocked by %s", product_id, holder_id)
    return product
